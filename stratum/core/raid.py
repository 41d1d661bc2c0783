"""
Software RAID module.

This module validates RAID member disks and assembles mdadm arrays, one at a
time, from matching-role member partitions.
"""
import logging
import subprocess
from typing import Callable, Dict, List, Optional, Sequence

from stratum.utils.command import CommandRunner
from stratum.utils.format import TermColors, colorize, bytes_to_human_readable
from stratum.utils.logging import advisory
from stratum.utils.types import DiskTarget, RaidArray
from stratum.core.partition import wait_for_device
from stratum.core.safety import SafetyGate
from stratum.core.exceptions import DeviceNotReady, InsufficientDisks, RaidAssemblyFailure, ValidationError

logger = logging.getLogger('stratum')

# Minimum member count per RAID level
RAID_MIN_MEMBERS: Dict[int, int] = {0: 2, 1: 2, 5: 3, 6: 4, 10: 4}

RAID_METADATA = "1.2"
CAPACITY_TOLERANCE = 0.10
MD_DIR = "/dev/md"


def default_raid_level(disk_count: int) -> int:
    """Mirror two disks, use parity from three disks on."""
    return 1 if disk_count <= 2 else 5


def check_member_count(level: int, count: int) -> None:
    """
    Raises:
        ValidationError: If the level is not supported
        InsufficientDisks: If there are fewer members than the level needs
    """
    if level not in RAID_MIN_MEMBERS:
        raise ValidationError(
            f"Unsupported RAID level {level}, expected one of: {', '.join(str(l) for l in sorted(RAID_MIN_MEMBERS))}"
        )
    needed = RAID_MIN_MEMBERS[level]
    if count < needed:
        raise InsufficientDisks(f"RAID{level} needs at least {needed} disks, got {count}")


def validate_raid_disks(disks: Sequence[DiskTarget], level: int, cmd_runner: CommandRunner) -> None:
    """
    Validate the disk set of a RAID scheme before anything is written.

    Member count and sector size are hard requirements. Capacity differences
    above 10% and existing RAID superblocks are reported as advisories.

    Args:
        disks: Member disks, primary target first
        level: RAID level of the data array
        cmd_runner: CommandRunner instance for executing commands

    Raises:
        InsufficientDisks: If the disk count is too small for the level
        ValidationError: If sector sizes differ or the level is unsupported
    """
    check_member_count(level, len(disks))

    sector_sizes = {disk.sector_size for disk in disks}
    if len(sector_sizes) > 1:
        details = ", ".join(f"{disk.path}={disk.sector_size}" for disk in disks)
        raise ValidationError(f"RAID member disks must share one sector size ({details})")

    smallest = min(disk.size_bytes for disk in disks)
    largest = max(disk.size_bytes for disk in disks)
    if largest and (largest - smallest) / largest > CAPACITY_TOLERANCE:
        advisory(logger,
                 f"RAID member capacities differ by more than {int(CAPACITY_TOLERANCE * 100)}% "
                 f"({bytes_to_human_readable(smallest)} vs {bytes_to_human_readable(largest)}); "
                 "the array will be limited by the smallest disk")

    for disk in disks:
        result = cmd_runner.run(["mdadm", "--examine", disk.path], check=False)
        if result.returncode == 0 and "Raid Level" in result.stdout:
            advisory(logger, f"{disk.path} carries an existing RAID superblock that will be destroyed")

    logger.info(f"RAID{level} member set validated: {', '.join(disk.path for disk in disks)}")


def create_array(
    name: str,
    level: int,
    members: Sequence[str],
    gate: SafetyGate,
    cmd_runner: CommandRunner,
    on_assembled: Optional[Callable[[str], None]] = None
) -> RaidArray:
    """
    Assemble one array from member partitions.

    Args:
        name: Array name, assembled at /dev/md/<name>
        level: RAID level
        members: Member partitions, one per disk, in disk order
        gate: SafetyGate that authorizes clearing the members
        cmd_runner: CommandRunner instance for executing commands
        on_assembled: Called with the array path as soon as the array exists

    Returns:
        The assembled RaidArray

    Raises:
        InsufficientDisks: If there are too few members
        RaidAssemblyFailure: If mdadm fails or the array node does not appear
    """
    check_member_count(level, len(members))
    path = f"{MD_DIR}/{name}"

    authorized: List[str] = []
    for member in members:
        device = gate.authorize("clear RAID metadata on", member)
        # A fresh partition has no superblock; mdadm exits non-zero then
        cmd_runner.run(["mdadm", "--zero-superblock", "--force", device], check=False)
        authorized.append(device)

    logger.info(f"Creating RAID{level} array {path} from {', '.join(authorized)}")
    try:
        cmd_runner.run([
            "mdadm", "--create", path,
            "--run", "--verbose",
            f"--level={level}",
            f"--raid-devices={len(authorized)}",
            f"--metadata={RAID_METADATA}",
            *authorized
        ])
    except subprocess.CalledProcessError as e:
        raise RaidAssemblyFailure(f"Failed to create RAID array {path}: {e.stderr or e}")

    if on_assembled:
        on_assembled(path)

    try:
        wait_for_device(path, cmd_runner)
    except DeviceNotReady as e:
        raise RaidAssemblyFailure(f"RAID array {path} did not appear: {e}")

    logger.info(colorize(f"RAID{level} array {path} assembled", TermColors.SUCCESS, cmd_runner.colored_output))
    return RaidArray(name=name, path=path, level=level, members=tuple(authorized))


def stop_array(path: str, cmd_runner: CommandRunner) -> bool:
    """
    Stop an assembled array. Never raises.

    Returns:
        True if mdadm reported success
    """
    result = cmd_runner.run_unguarded(["mdadm", "--stop", path])
    if result.returncode != 0:
        logger.warning(f"Could not stop RAID array {path}: {result.stderr.strip()}")
        return False
    logger.info(f"Stopped RAID array {path}")
    return True


def scan_arrays(cmd_runner: CommandRunner) -> str:
    """
    Describe every assembled array in mdadm.conf syntax.

    Raises:
        RaidAssemblyFailure: If mdadm cannot scan
    """
    try:
        result = cmd_runner.run(["mdadm", "--detail", "--scan"])
    except subprocess.CalledProcessError as e:
        raise RaidAssemblyFailure(f"Cannot scan RAID arrays: {e}")
    return result.stdout