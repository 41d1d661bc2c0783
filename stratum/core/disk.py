"""
Disk information and discovery module.

This module provides functions for querying disk characteristics, enumerating
candidate disks and naming partition device nodes.
"""
import os
import re
import logging
import stat
import subprocess
from typing import List, Optional

from stratum.utils.command import CommandRunner, SimulationMode
from stratum.utils.types import BootMode, DiskTarget
from stratum.utils.format import TermColors, colorize, bytes_to_human_readable
from stratum.core.exceptions import DeviceNotReady

logger = logging.getLogger('stratum')

EFI_VARS_PATH = "/sys/firmware/efi/efivars"

# Disks whose partitions are named <disk>p<N>
_P_SEPARATOR_RE = re.compile(r"(nvme\d+n\d+|mmcblk\d+|loop\d+)$")


def read_sysfs_value(path: str, default: Optional[str] = None) -> str:
    """
    Safely read a value from sysfs.

    Args:
        path: Path to the sysfs file
        default: Default value if file doesn't exist or can't be read

    Returns:
        Content of the file as string or default
    """
    try:
        if os.path.exists(path):
            with open(path, "r") as f:
                return f.read().strip()
    except OSError as e:
        logger.debug(f"Could not read {path}: {e}")

    return default or ""


def is_block_device(path: str, cmd_runner: CommandRunner) -> bool:
    """
    Check if the path exists and is a block device.

    In simulation mode every path is assumed to be a block device.
    """
    if cmd_runner.simulation_mode == SimulationMode.SIMULATE:
        return True
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def partition_device_name(disk: str, partition_number: int) -> str:
    """
    Generate the appropriate partition device name based on disk type.

    Args:
        disk: Path to the disk device
        partition_number: Partition number

    Returns:
        Partition device path
    """
    if _P_SEPARATOR_RE.search(disk):
        return f"{disk}p{partition_number}"
    return f"{disk}{partition_number}"


def detect_boot_mode(cmd_runner: CommandRunner) -> BootMode:
    """
    Detect the firmware boot mode of the running machine.

    Returns:
        BootMode.UEFI when EFI variables are exposed, BootMode.BIOS otherwise
    """
    if cmd_runner.simulation_mode == SimulationMode.SIMULATE:
        return BootMode(cmd_runner.simulation_params.get("firmware", "uefi"))
    return BootMode.UEFI if os.path.isdir(EFI_VARS_PATH) else BootMode.BIOS


def get_disk_info(disk: str, cmd_runner: CommandRunner) -> DiskTarget:
    """
    Get information about the disk.

    Symlinks such as /dev/disk/by-id entries are resolved first; the
    returned target always carries the kernel node path.

    Args:
        disk: Path to the disk device
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        DiskTarget describing the disk

    Raises:
        DeviceNotReady: If disk is not found or is not a block device
    """
    if not is_block_device(disk, cmd_runner):
        raise DeviceNotReady(f"Disk {disk} not found or is not a block device")

    node = os.path.realpath(disk)
    if node != disk:
        logger.info(f"Using {node} for {disk}")
        disk = node

    disk_name = os.path.basename(disk)

    try:
        result = cmd_runner.run(["blockdev", "--getsize64", disk])
        size_bytes = int(result.stdout.strip())
    except (subprocess.CalledProcessError, ValueError) as e:
        raise DeviceNotReady(f"Cannot read size of {disk}: {e}")

    try:
        result = cmd_runner.run(["blockdev", "--getss", disk])
        sector_size = int(result.stdout.strip())
    except (subprocess.CalledProcessError, ValueError) as e:
        raise DeviceNotReady(f"Cannot read sector size of {disk}: {e}")

    if cmd_runner.simulation_mode == SimulationMode.SIMULATE:
        rotational = bool(cmd_runner.simulation_params.get("rotational", False))
    else:
        rotational = read_sysfs_value(f"/sys/block/{disk_name}/queue/rotational", "1") == "1"

    if disk_name.startswith("nvme"):
        bus = "nvme"
    elif disk_name.startswith("mmcblk"):
        bus = "mmc"
    elif disk_name.startswith("vd"):
        bus = "virtio"
    else:
        bus = "sata" if disk_name.startswith("sd") else "unknown"

    result = cmd_runner.run(["lsblk", "-dno", "MODEL", disk], check=False)
    model = result.stdout.strip() or "Unknown"

    target = DiskTarget(
        path=disk,
        size_bytes=size_bytes,
        sector_size=sector_size,
        rotational=rotational,
        bus=bus,
        model=model
    )
    logger.info(colorize(
        f"Disk {disk}: {bytes_to_human_readable(size_bytes)}, "
        f"{'HDD' if rotational else 'SSD/NVMe'}, {sector_size}-byte sectors, model {model}",
        TermColors.INFO, cmd_runner.colored_output))
    return target


def list_disks(cmd_runner: CommandRunner) -> List[str]:
    """
    Enumerate whole disks visible to the kernel.

    Returns:
        Device paths of every block device of type "disk", in kernel order
    """
    result = cmd_runner.run(["lsblk", "-dpno", "NAME,TYPE"])
    disks = []
    for line in result.stdout.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1] == "disk":
            disks.append(parts[0])
    return disks


def release_disk(disk: str, cmd_runner: CommandRunner) -> None:
    """
    Unmount and swap off everything that lives on a disk before it is erased.

    Args:
        disk: Path to the disk device
        cmd_runner: CommandRunner instance for executing commands
    """
    result = cmd_runner.run(["lsblk", "-lnpo", "NAME,MOUNTPOINT", disk], check=False)
    for line in result.stdout.splitlines():
        parts = line.split(None, 1)
        if len(parts) != 2:
            continue
        device, mountpoint = parts[0], parts[1].strip()
        if mountpoint == "[SWAP]":
            logger.info(f"Disabling swap on {device}")
            cmd_runner.run(["swapoff", device], check=False)
        elif mountpoint:
            logger.info(f"Unmounting {device} from {mountpoint}")
            cmd_runner.run(["umount", "-R", mountpoint], check=False)
