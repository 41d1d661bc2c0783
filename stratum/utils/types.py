"""
Type definitions for stratum.

This module provides the data model shared by the provisioning layers:
partition specifications, composed block devices, mounted filesystems and
captured device identities.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Literal


class BootMode(Enum):
    """Firmware boot mode of the machine being installed"""
    UEFI = "uefi"
    BIOS = "bios"


class PartitionType(Enum):
    """Partition roles with their GPT type GUID and legacy (DOS) type code"""
    EFI_SYSTEM = ("C12A7328-F81F-11D2-BA4B-00A0C93EC93B", "ef")
    LINUX = ("0FC63DAF-8483-4772-8E79-3D69D8477DE4", "83")
    SWAP = ("0657FD6D-A4AB-43C4-84E5-0933C84B4F4F", "82")
    LVM = ("E6D6D379-F507-44C2-A23C-238F2A3DF928", "8e")
    LUKS = ("CA7D7CCB-63ED-4C53-861C-1742536059CC", "83")
    XBOOTLDR = ("BC13C2FF-59E6-4262-A352-B275FD6F7172", "ea")
    BIOS_BOOT = ("21686148-6449-6E6F-744E-656564454649", "ef02")
    RAID = ("A19D880F-05FC-4D3B-A006-743F0F84911E", "fd")

    @property
    def gpt_guid(self) -> str:
        return self.value[0]

    @property
    def dos_code(self) -> str:
        return self.value[1]


LabelType = Literal["gpt", "dos"]


@dataclass(frozen=True)
class DiskTarget:
    """A whole disk selected for installation"""
    path: str
    size_bytes: int
    sector_size: int = 512
    rotational: bool = False
    bus: str = "unknown"
    model: str = ""


@dataclass(frozen=True)
class PartitionSpec:
    """
    One partition to carve.

    ``size_mib`` of None means "the rest of the disk" and is only accepted
    for the last partition of a table.
    """
    role: str
    ptype: PartitionType
    size_mib: Optional[int] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class Partition:
    """A partition that exists on disk"""
    role: str
    device: str
    disk: str
    index: int
    start_mib: int
    size_mib: Optional[int]
    ptype: PartitionType


@dataclass(frozen=True)
class RaidArray:
    """A software RAID array assembled from member partitions"""
    name: str
    path: str
    level: int
    members: Tuple[str, ...]


@dataclass(frozen=True)
class EncryptedContainer:
    """An opened LUKS container"""
    name: str
    backing_device: str
    uuid: str
    mapped_path: str
    # Unlocked by the kernel command line rather than crypttab
    unlocked_by_kernel: bool = True


@dataclass(frozen=True)
class LogicalVolumeSpec:
    """
    One entry of a declarative LVM layout.

    ``size`` is an lvcreate size (``8G``, ``2048M``) or ``100%FREE``.
    ``feature`` names the configuration switch that enables the entry;
    entries without a feature are always created.
    """
    name: str
    size: str
    mountpoint: Optional[str] = None
    filesystem: Optional[str] = None
    feature: Optional[str] = None

    @property
    def takes_remaining(self) -> bool:
        return self.size.upper().endswith("%FREE")


@dataclass(frozen=True)
class LogicalVolume:
    """A created logical volume"""
    name: str
    vg_name: str
    path: str
    spec: LogicalVolumeSpec


@dataclass
class VolumeGroup:
    """An LVM volume group on a single physical volume"""
    name: str
    physical_volume: str
    volumes: List[LogicalVolume] = field(default_factory=list)


@dataclass(frozen=True)
class MountedFilesystem:
    """A filesystem mounted (or swap enabled) in the target hierarchy"""
    device: str
    mountpoint: str
    host_path: str
    fstype: str
    options: str
    role: str


@dataclass(frozen=True)
class DeviceIdentity:
    """Identity captured for one logical role"""
    role: str
    device: str
    uuid: str
    partuuid: Optional[str] = None


class Passphrase:
    """
    Mutable holder for a secret so it can be cleared after use.

    The value is kept in a bytearray which ``wipe()`` overwrites in place.
    """
    def __init__(self, secret: str):
        self._buffer = bytearray(secret.encode("utf-8"))

    def reveal(self) -> str:
        return self._buffer.decode("utf-8")

    def copy(self) -> "Passphrase":
        """Return an independent holder for the same secret."""
        duplicate = Passphrase("")
        duplicate._buffer.extend(self._buffer)
        return duplicate

    def wipe(self) -> None:
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        del self._buffer[:]

    def __bool__(self) -> bool:
        return len(self._buffer) > 0

    def __repr__(self) -> str:
        return "Passphrase(***)"
