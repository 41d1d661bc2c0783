"""
LVM module.

This module creates a physical volume and volume group on one device and
carves logical volumes from a declarative, ordered layout.
"""
import logging
import subprocess
from dataclasses import replace
from typing import Callable, Iterable, List, Optional, Sequence

from stratum.utils.command import CommandRunner
from stratum.utils.format import TermColors, colorize, parse_size_spec
from stratum.utils.types import LogicalVolume, LogicalVolumeSpec, VolumeGroup
from stratum.core.partition import wait_for_device
from stratum.core.exceptions import DeviceNotReady, LvmFailure

logger = logging.getLogger('stratum')

REMAINING = "100%FREE"


def default_layout(swap_size: str, root_size: str, root_fs: str, home_fs: str) -> List[LogicalVolumeSpec]:
    """
    The static volume table. Entries carrying a feature are only created when
    that feature is requested.
    """
    return [
        LogicalVolumeSpec(name="swap", size=swap_size, filesystem="swap", feature="swap"),
        LogicalVolumeSpec(name="root", size=root_size, mountpoint="/", filesystem=root_fs),
        LogicalVolumeSpec(name="home", size=REMAINING, mountpoint="/home", filesystem=home_fs, feature="home"),
    ]


def select_layout(layout: Sequence[LogicalVolumeSpec], features: Iterable[str]) -> List[LogicalVolumeSpec]:
    """
    Filter a layout down to the entries the configuration asks for.

    When no remaining entry claims the free space, the last filesystem
    volume is grown to fill it.

    Raises:
        LvmFailure: If a volume other than the last takes the remaining space
    """
    wanted = set(features)
    selected = [spec for spec in layout if spec.feature is None or spec.feature in wanted]

    for position, spec in enumerate(selected):
        if spec.takes_remaining and position != len(selected) - 1:
            raise LvmFailure(f"Only the last logical volume may take the remaining space, not '{spec.name}'")

    if selected and not any(spec.takes_remaining for spec in selected):
        last = selected[-1]
        if last.filesystem != "swap":
            selected[-1] = replace(last, size=REMAINING)
    return selected


def lv_size_args(size: str) -> List[str]:
    """
    Translate a layout size into lvcreate arguments.

    Raises:
        LvmFailure: If the size cannot be parsed
    """
    if "%" in size:
        return ["-l", size.upper()]
    try:
        mib = parse_size_spec(size) // (1024 ** 2)
    except ValueError:
        raise LvmFailure(f"Invalid logical volume size '{size}'")
    if mib < 1:
        raise LvmFailure(f"Logical volume size '{size}' is below 1 MiB")
    return ["-L", f"{mib}M"]


def create_volume_group(
    name: str,
    physical_volume: str,
    cmd_runner: CommandRunner,
    on_created: Optional[Callable[[str], None]] = None
) -> VolumeGroup:
    """
    Create the physical volume and the volume group on one device.

    Args:
        name: Volume group name
        physical_volume: Partition, array or mapped device
        cmd_runner: CommandRunner instance for executing commands
        on_created: Called with the group name as soon as it exists

    Raises:
        LvmFailure: If pvcreate or vgcreate fails
    """
    logger.info(f"Creating volume group {name} on {physical_volume}")
    try:
        cmd_runner.run(["pvcreate", "-ff", "-y", physical_volume])
        cmd_runner.run(["vgcreate", name, physical_volume])
    except subprocess.CalledProcessError as e:
        raise LvmFailure(f"Failed to create volume group {name} on {physical_volume}: {e.stderr or e}")
    if on_created:
        on_created(name)
    return VolumeGroup(name=name, physical_volume=physical_volume)


def create_logical_volume(vg: VolumeGroup, spec: LogicalVolumeSpec, cmd_runner: CommandRunner) -> LogicalVolume:
    """
    Create one logical volume and wait for its node.

    Raises:
        LvmFailure: If lvcreate fails or the volume node does not appear
    """
    cmd = ["lvcreate", "-y", "-n", spec.name] + lv_size_args(spec.size) + [vg.name]
    try:
        cmd_runner.run(cmd)
    except subprocess.CalledProcessError as e:
        raise LvmFailure(f"Failed to create logical volume {vg.name}/{spec.name}: {e.stderr or e}")

    path = f"/dev/{vg.name}/{spec.name}"
    try:
        wait_for_device(path, cmd_runner)
    except DeviceNotReady as e:
        raise LvmFailure(f"Logical volume {path} did not appear: {e}")

    volume = LogicalVolume(name=spec.name, vg_name=vg.name, path=path, spec=spec)
    vg.volumes.append(volume)
    logger.info(colorize(f"Created logical volume {path} ({spec.size})", TermColors.SUCCESS, cmd_runner.colored_output))
    return volume


def deactivate_volume_group(name: str, cmd_runner: CommandRunner) -> bool:
    """
    Deactivate a volume group. Never raises.

    Returns:
        True if vgchange reported success
    """
    result = cmd_runner.run_unguarded(["vgchange", "-an", name])
    if result.returncode != 0:
        logger.warning(f"Could not deactivate volume group {name}: {result.stderr.strip()}")
        return False
    logger.info(f"Deactivated volume group {name}")
    return True
