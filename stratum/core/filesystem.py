"""
Filesystem creation and management module.

This module handles filesystem creation and btrfs subvolume setup.
"""
import logging
import os
import subprocess
import tempfile
from typing import Dict, List, Optional, Tuple

from stratum.utils.command import CommandRunner, SimulationMode
from stratum.core.exceptions import FormatFailure

logger = logging.getLogger('stratum')

SUPPORTED_FILESYSTEMS = ("ext4", "xfs", "btrfs", "fat32", "vfat", "swap")

# Subvolume name, mountpoint relative to the target root
BTRFS_SUBVOLUMES: Tuple[Tuple[str, str], ...] = (
    ("@", "/"),
    ("@home", "/home"),
    ("@var", "/var"),
    ("@tmp", "/tmp"),
    ("@snapshots", "/.snapshots"),
)

BTRFS_MOUNT_OPTIONS = "compress=zstd,noatime"


def mkfs_command(fstype: str, device: str, label: Optional[str] = None) -> List[str]:
    """
    Build the command that creates a filesystem.

    Raises:
        FormatFailure: If the filesystem type is not supported
    """
    if fstype == "ext4":
        cmd = ["mkfs.ext4", "-F"]
        if label:
            cmd += ["-L", label]
    elif fstype == "xfs":
        cmd = ["mkfs.xfs", "-f"]
        if label:
            cmd += ["-L", label]
    elif fstype == "btrfs":
        cmd = ["mkfs.btrfs", "-f"]
        if label:
            cmd += ["-L", label]
    elif fstype in ("fat32", "vfat"):
        cmd = ["mkfs.fat", "-F32"]
        if label:
            cmd += ["-n", label.upper()[:11]]
    elif fstype == "swap":
        cmd = ["mkswap"]
        if label:
            cmd += ["-L", label]
    else:
        raise FormatFailure(
            f"Unsupported filesystem type '{fstype}', expected one of: {', '.join(SUPPORTED_FILESYSTEMS)}"
        )
    return cmd + [device]


def format_device(device: str, fstype: str, cmd_runner: CommandRunner, label: Optional[str] = None) -> None:
    """
    Create a filesystem (or swap signature) on a device.

    Args:
        device: Device path to create filesystem on
        fstype: One of ext4, xfs, btrfs, fat32/vfat, swap
        cmd_runner: CommandRunner instance for executing commands
        label: Optional filesystem label

    Raises:
        FormatFailure: If the type is unknown or mkfs fails
    """
    cmd = mkfs_command(fstype, device, label)
    try:
        cmd_runner.run(cmd)
    except subprocess.CalledProcessError as e:
        raise FormatFailure(f"Failed to create {fstype} filesystem on {device}: {e.stderr or e}")
    logger.info(f"Created {fstype} filesystem on {device}")


def fstab_type(fstype: str) -> str:
    """Map a configured filesystem name to the name mount and fstab expect."""
    return "vfat" if fstype == "fat32" else fstype


def btrfs_subvolumes(with_home: bool) -> List[Tuple[str, str]]:
    """Subvolume layout, optionally without @home."""
    return [(name, path) for name, path in BTRFS_SUBVOLUMES if with_home or name != "@home"]


def create_btrfs_subvolumes(device: str, with_home: bool, cmd_runner: CommandRunner) -> List[Tuple[str, str]]:
    """
    Create the btrfs subvolume set on a freshly formatted device.

    Args:
        device: Device carrying the btrfs filesystem
        with_home: Whether to create @home
        cmd_runner: CommandRunner instance for executing commands

    Returns:
        List of (subvolume, mountpoint) pairs in mount order

    Raises:
        FormatFailure: If there's an error in subvolume creation
    """
    logger.info("Creating btrfs subvolumes")
    subvolumes = btrfs_subvolumes(with_home)

    # Create a temporary mount point
    if cmd_runner.simulation_mode == SimulationMode.SIMULATE:
        temp_dir = "/tmp/stratum-sim-mount"  # Simulated path
    else:
        temp_dir = tempfile.mkdtemp(prefix="stratum-btrfs-")

    mounted = False
    try:
        cmd_runner.run(["mount", device, temp_dir])
        mounted = True

        for subvol, _ in subvolumes:
            cmd_runner.run(["btrfs", "subvolume", "create", os.path.join(temp_dir, subvol)])
            logger.info(f"Created subvolume {subvol}")
    except subprocess.CalledProcessError as e:
        raise FormatFailure(f"Error creating btrfs subvolumes on {device}: {e.stderr or e}")
    finally:
        if mounted:
            cmd_runner.run_unguarded(["umount", temp_dir])
        if cmd_runner.simulation_mode != SimulationMode.SIMULATE:
            try:
                os.rmdir(temp_dir)
            except OSError as e:
                logger.warning(f"Could not remove temporary mount point {temp_dir}: {e}")

    return subvolumes


def subvolume_options(subvol: str, extra: Optional[str] = None) -> str:
    options = f"subvol={subvol},{BTRFS_MOUNT_OPTIONS}"
    if extra and extra != "defaults":
        options += f",{extra}"
    return options


# Default options per mountpoint for non-btrfs filesystems
MOUNT_OPTIONS: Dict[str, str] = {
    "/": "defaults,noatime",
    "/boot": "defaults,nodev,nosuid",
    "/efi": "umask=0077,nodev,nosuid,noexec",
    "/home": "defaults,nodev,nosuid",
}


def determine_mount_options(mountpoint: str, fstype: str, rotational: bool = False) -> str:
    """
    Choose mount options for a mountpoint.

    Args:
        mountpoint: Mountpoint relative to the target root
        fstype: Filesystem type
        rotational: Whether the backing disk is rotational

    Returns:
        Comma separated mount options
    """
    if fstype in ("fat32", "vfat"):
        return MOUNT_OPTIONS["/efi"]
    options = MOUNT_OPTIONS.get(mountpoint, "defaults")
    if not rotational and fstype in ("ext4", "xfs") and mountpoint == "/":
        options += ",discard"
    return options
