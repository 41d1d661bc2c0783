"""
Provisioning context.

One ProvisionContext is created per run and passed by reference through the
dispatcher, the storage routines, the cleanup handler and the phase
coordinator. It owns every piece of mutable run state.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from stratum.config.settings import InstallSettings
from stratum.utils.command import CommandRunner
from stratum.utils.types import (
    BootMode, DiskTarget, EncryptedContainer, LabelType, Partition, RaidArray, VolumeGroup
)
from stratum.core.identity import IdentityRegistry
from stratum.core.mount import MountOrchestrator
from stratum.core.safety import SafetyGate
from stratum.core.scheme import StorageScheme

logger = logging.getLogger('stratum')


@dataclass
class ProvisionContext:
    """Run state shared by every provisioning layer"""
    settings: InstallSettings
    cmd_runner: CommandRunner
    gate: SafetyGate
    mounts: MountOrchestrator
    registry: IdentityRegistry = field(default_factory=IdentityRegistry)
    boot_mode: BootMode = BootMode.UEFI
    scheme: Optional[StorageScheme] = None

    disks: List[DiskTarget] = field(default_factory=list)
    labels: Dict[str, LabelType] = field(default_factory=dict)
    partitions: List[Partition] = field(default_factory=list)
    raid_arrays: List[RaidArray] = field(default_factory=list)
    containers: List[EncryptedContainer] = field(default_factory=list)
    volume_groups: List[VolumeGroup] = field(default_factory=list)
    raid_esp: Optional[str] = None

    # Resources that teardown must release, recorded as soon as they exist
    assembled_arrays: List[str] = field(default_factory=list)
    open_mappings: List[str] = field(default_factory=list)
    active_volume_groups: List[str] = field(default_factory=list)

    mdadm_conf_written: bool = False

    @classmethod
    def create(cls, settings: InstallSettings, cmd_runner: CommandRunner) -> "ProvisionContext":
        return cls(
            settings=settings,
            cmd_runner=cmd_runner,
            gate=SafetyGate(settings.confirm_wipe),
            mounts=MountOrchestrator(settings.target_root, cmd_runner)
        )

    def track_array(self, path: str) -> None:
        self.assembled_arrays.append(path)

    def track_mapping(self, name: str) -> None:
        self.open_mappings.append(name)

    def track_volume_group(self, name: str) -> None:
        self.active_volume_groups.append(name)

    def is_gpt_partition(self, device: str) -> bool:
        """Whether a device is a partition of a GPT-labelled disk from this run."""
        for partition in self.partitions:
            if partition.device == device:
                return self.labels.get(partition.disk) == "gpt"
        return False

    @property
    def primary_disk(self) -> DiskTarget:
        return self.disks[0]

    def features(self) -> List[str]:
        """Optional layout features requested by the configuration."""
        wanted = []
        if self.settings.swap:
            wanted.append("swap")
        if self.settings.separate_home:
            wanted.append("home")
        return wanted
