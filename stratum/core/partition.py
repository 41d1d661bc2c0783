"""
Disk partitioning module.

This module wipes target disks and carves partitions with sfdisk, one
partition at a time in increasing offset order, waiting for each new device
node before continuing.
"""
import os
import stat
import logging
import subprocess
import time
from typing import List, Optional

from stratum.utils.command import CommandRunner, SimulationMode
from stratum.utils.format import MIB, TermColors, colorize, bytes_to_human_readable
from stratum.utils.logging import advisory
from stratum.utils.types import DiskTarget, LabelType, Partition, PartitionSpec
from stratum.core.disk import partition_device_name, release_disk
from stratum.core.safety import SafetyGate
from stratum.core.exceptions import DeviceNotReady, PartitioningError, ValidationError

logger = logging.getLogger('stratum')

# Constants
FIRST_PARTITION_OFFSET_MIB = 1
GPT_BACKUP_RESERVE_MIB = 1
WIPE_EDGE_MIB = 10
DEVICE_WAIT_TIMEOUT = 10.0
DEVICE_WAIT_INTERVAL = 0.2

WIPE_METHODS = ("auto", "quick", "secure")


def wait_for_device(
    device: str,
    cmd_runner: CommandRunner,
    timeout: float = DEVICE_WAIT_TIMEOUT,
    interval: float = DEVICE_WAIT_INTERVAL
) -> None:
    """
    Block until a device node exists and is a block device.

    Args:
        device: Device node to wait for
        cmd_runner: CommandRunner instance for executing commands
        timeout: Maximum time to wait in seconds
        interval: Delay between checks in seconds

    Raises:
        DeviceNotReady: If the node has not appeared within the timeout
    """
    if cmd_runner.simulation_mode == SimulationMode.SIMULATE:
        return

    deadline = time.monotonic() + timeout
    while True:
        try:
            if stat.S_ISBLK(os.stat(device).st_mode):
                return
        except OSError:
            pass
        if time.monotonic() >= deadline:
            raise DeviceNotReady(f"Device {device} did not appear within {timeout:.0f}s")
        cmd_runner.check_abort()
        time.sleep(interval)


def refresh_partitions(disk: str, cmd_runner: CommandRunner) -> None:
    """
    Ask the kernel to re-read a partition table and let udev catch up.
    """
    try:
        cmd_runner.run(["partprobe", disk])
    except subprocess.CalledProcessError as e:
        logger.warning(colorize(f"partprobe failed on {disk}, relying on udev: {e}",
                                TermColors.WARNING, cmd_runner.colored_output))
    cmd_runner.run(["udevadm", "settle"], check=False)


def wipe_disk(disk: DiskTarget, gate: SafetyGate, cmd_runner: CommandRunner, method: str = "auto") -> None:
    """
    Erase a disk before it is repartitioned.

    ``auto`` discards solid-state disks and zero-fills the first and last
    10 MiB of rotational ones; ``quick`` only removes signatures; ``secure``
    zero-fills the whole device. Signatures are always removed.

    Args:
        disk: Disk to wipe
        gate: SafetyGate that authorizes the wipe
        cmd_runner: CommandRunner instance for executing commands
        method: Wipe method

    Raises:
        ConfirmationMissing: If the wipe has not been confirmed
        UnsafeDevicePath: If the disk path is not an expected node
        ValidationError: If the method is unknown
        PartitioningError: If a wipe tool fails
    """
    if method not in WIPE_METHODS:
        raise ValidationError(f"Unknown wipe method '{method}', expected one of: {', '.join(WIPE_METHODS)}")

    device = gate.authorize("wipe", disk.path)
    logger.info(colorize(f"Wiping {device} ({method})", TermColors.WARNING, cmd_runner.colored_output))

    release_disk(device, cmd_runner)

    try:
        if method == "secure":
            cmd_runner.run(["dd", "if=/dev/zero", f"of={device}", "bs=1M", "oflag=direct",
                            "conv=fsync", "status=progress"], check=False)
        elif method == "auto" and not disk.rotational:
            result = cmd_runner.run(["blkdiscard", "-f", device], check=False)
            if result.returncode != 0:
                advisory(logger, f"TRIM discard of {device} failed, falling back to signature removal only")
        elif method == "auto":
            size_mib = disk.size_bytes // MIB
            cmd_runner.run(["dd", "if=/dev/zero", f"of={device}", "bs=1M",
                            f"count={WIPE_EDGE_MIB}", "conv=fsync"])
            if size_mib > 2 * WIPE_EDGE_MIB:
                cmd_runner.run(["dd", "if=/dev/zero", f"of={device}", "bs=1M",
                                f"count={WIPE_EDGE_MIB}", f"seek={size_mib - WIPE_EDGE_MIB}", "conv=fsync"])

        cmd_runner.run(["wipefs", "-a", device])
    except subprocess.CalledProcessError as e:
        raise PartitioningError(f"Failed to wipe {device}: {e}")

    refresh_partitions(device, cmd_runner)


class PartitionTableBuilder:
    """
    Writes a fresh partition table and appends partitions one by one.

    Offsets advance monotonically; a partition without a size takes the rest
    of the disk and must be the last one.
    """
    def __init__(
        self,
        disk: DiskTarget,
        label: LabelType,
        gate: SafetyGate,
        cmd_runner: CommandRunner,
        device_timeout: float = DEVICE_WAIT_TIMEOUT
    ):
        self.disk = disk
        self.label = label
        self.gate = gate
        self.cmd_runner = cmd_runner
        self.device_timeout = device_timeout
        self.partitions: List[Partition] = []
        self._next_offset_mib = FIRST_PARTITION_OFFSET_MIB
        self._closed = False
        self._table_created = False

    def create_table(self) -> None:
        """
        Replace the disk's partition table with an empty one.

        Raises:
            ConfirmationMissing: If table rewrites have not been confirmed
            UnsafeDevicePath: If the disk path is not an expected node
            PartitioningError: If sfdisk fails
        """
        device = self.gate.authorize("rewrite partition table of", self.disk.path)
        logger.info(f"Creating {self.label.upper()} partition table on {device}")
        try:
            self.cmd_runner.run(["sfdisk", "--wipe", "always", device], input=f"label: {self.label}\n")
        except subprocess.CalledProcessError as e:
            raise PartitioningError(f"Failed to create partition table on {device}: {e}")
        refresh_partitions(device, self.cmd_runner)
        self._table_created = True

    def add(self, spec: PartitionSpec) -> Partition:
        """
        Append one partition after the previous one.

        Args:
            spec: Partition to create

        Returns:
            The created Partition

        Raises:
            ValidationError: If the partition follows a remainder partition or does not fit
            PartitioningError: If sfdisk fails
            DeviceNotReady: If the partition node does not appear
        """
        if not self._table_created:
            raise PartitioningError(f"No partition table created on {self.disk.path} yet")
        if self._closed:
            raise ValidationError(
                f"Cannot add '{spec.role}' on {self.disk.path}: the previous partition already takes the remaining space"
            )

        start = self._next_offset_mib
        available = self.disk.size_bytes // MIB - GPT_BACKUP_RESERVE_MIB - start
        if spec.size_mib is not None and spec.size_mib > available:
            raise ValidationError(
                f"Partition '{spec.role}' ({spec.size_mib} MiB) does not fit on {self.disk.path}: "
                f"{bytes_to_human_readable(max(available, 0) * MIB)} left"
            )
        if spec.size_mib is None and available < 1:
            raise ValidationError(f"No space left on {self.disk.path} for partition '{spec.role}'")

        index = len(self.partitions) + 1
        line = f"start={start}MiB"
        if spec.size_mib is not None:
            line += f", size={spec.size_mib}MiB"
        if self.label == "gpt":
            line += f", type={spec.ptype.gpt_guid}"
            line += f', name="{spec.name or spec.role}"'
        else:
            line += f", type={spec.ptype.dos_code}"
            if index == 1:
                line += ", bootable"

        logger.info(f"Adding partition {index} ({spec.role}) on {self.disk.path}: {line}")
        try:
            self.cmd_runner.run(["sfdisk", "--append", self.disk.path], input=line + "\n")
        except subprocess.CalledProcessError as e:
            raise PartitioningError(f"Failed to create partition '{spec.role}' on {self.disk.path}: {e}")

        refresh_partitions(self.disk.path, self.cmd_runner)
        device = partition_device_name(self.disk.path, index)
        wait_for_device(device, self.cmd_runner, timeout=self.device_timeout)

        partition = Partition(
            role=spec.role,
            device=device,
            disk=self.disk.path,
            index=index,
            start_mib=start,
            size_mib=spec.size_mib,
            ptype=spec.ptype
        )
        self.partitions.append(partition)

        if spec.size_mib is None:
            self._closed = True
        else:
            self._next_offset_mib = start + spec.size_mib
        return partition

    def build(self, specs: List[PartitionSpec]) -> List[Partition]:
        """
        Create the table and every partition of a layout.

        The layout is checked completely before the disk is touched.

        Returns:
            Created partitions in order
        """
        check_layout(specs, self.disk)
        self.create_table()
        created = [self.add(spec) for spec in specs]
        logger.info(colorize(f"Partitioning of {self.disk.path} completed successfully",
                             TermColors.SUCCESS, self.cmd_runner.colored_output))
        return created

    def by_role(self, role: str) -> Optional[Partition]:
        for partition in self.partitions:
            if partition.role == role:
                return partition
        return None


def check_layout(specs: List[PartitionSpec], disk: DiskTarget) -> None:
    """
    Validate a layout against a disk without touching it.

    Raises:
        ValidationError: If a remainder partition is not last or the fixed sizes do not fit
    """
    for position, spec in enumerate(specs):
        if spec.size_mib is None and position != len(specs) - 1:
            raise ValidationError(f"Only the last partition may take the remaining space, not '{spec.role}'")
        if spec.size_mib is not None and spec.size_mib < 1:
            raise ValidationError(f"Partition '{spec.role}' must be at least 1 MiB")

    fixed = sum(spec.size_mib for spec in specs if spec.size_mib is not None)
    needed = fixed + FIRST_PARTITION_OFFSET_MIB + GPT_BACKUP_RESERVE_MIB
    if specs and specs[-1].size_mib is None:
        needed += 1
    if needed > disk.size_bytes // MIB:
        raise ValidationError(
            f"Layout needs {bytes_to_human_readable(needed * MIB)} but {disk.path} "
            f"has {bytes_to_human_readable(disk.size_bytes)}"
        )
