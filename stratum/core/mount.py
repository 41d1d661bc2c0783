"""
Filesystem mounting module.

This module mounts formatted devices into the target hierarchy and keeps the
record of what is mounted, so teardown and the mount table can use it.
"""
import os
import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from stratum.utils.command import CommandRunner, SimulationMode
from stratum.utils.format import TermColors, colorize
from stratum.utils.types import MountedFilesystem
from stratum.core.exceptions import MountFailure

logger = logging.getLogger('stratum')


def normalize_mountpoint(mountpoint: str) -> str:
    """Return a mountpoint relative to the target root, always starting with '/'."""
    return os.path.normpath("/" + mountpoint.strip().lstrip("/"))


def mountpoint_depth(mountpoint: str) -> int:
    return 0 if mountpoint == "/" else mountpoint.count("/")


class MountOrchestrator:
    """
    Mounts filesystems under a target root.

    The root filesystem must be mounted before anything below it. Mounting
    a path that is already mounted is a logged no-op.
    """
    def __init__(self, target_root: str, cmd_runner: CommandRunner):
        self.target_root = Path(target_root)
        self.cmd_runner = cmd_runner
        self.mounts: List[MountedFilesystem] = []
        self.swaps: List[MountedFilesystem] = []

    def host_path(self, mountpoint: str) -> Path:
        """Host path of a mountpoint inside the target."""
        relative = normalize_mountpoint(mountpoint).lstrip("/")
        return self.target_root / relative if relative else self.target_root

    def find(self, mountpoint: str) -> Optional[MountedFilesystem]:
        mountpoint = normalize_mountpoint(mountpoint)
        for entry in self.mounts:
            if entry.mountpoint == mountpoint:
                return entry
        return None

    @property
    def root_mounted(self) -> bool:
        return self.find("/") is not None

    def _is_mounted(self, mountpoint: str) -> bool:
        if self.find(mountpoint):
            return True
        if self.cmd_runner.simulation_mode == SimulationMode.SIMULATE:
            return False
        return os.path.ismount(str(self.host_path(mountpoint)))

    def _create_directory(self, path: Path) -> None:
        """
        Create directory if it doesn't exist or log that it would be created in simulation mode.
        """
        if self.cmd_runner.simulation_mode == SimulationMode.SIMULATE:
            logger.info(f"Would create directory: {path}")
            return
        try:
            path.mkdir(exist_ok=True, parents=True)
        except OSError as e:
            raise MountFailure(f"Cannot create mount point {path}: {e}")

    def mount(
        self,
        device: str,
        mountpoint: str,
        fstype: str,
        options: Optional[str] = None,
        role: Optional[str] = None
    ) -> MountedFilesystem:
        """
        Mount a device at a path inside the target.

        Args:
            device: Device path to mount
            mountpoint: Mountpoint relative to the target root
            fstype: Filesystem type, recorded for the mount table
            options: Mount options
            role: Logical role of the device

        Returns:
            The mount record (the existing one if the path was already mounted)

        Raises:
            MountFailure: If root is not mounted yet or mount fails
        """
        mountpoint = normalize_mountpoint(mountpoint)
        host_path = self.host_path(mountpoint)

        if mountpoint != "/" and not self.root_mounted:
            raise MountFailure(f"Cannot mount {device} at {mountpoint}: the root filesystem is not mounted yet")

        if self._is_mounted(mountpoint):
            existing = self.find(mountpoint)
            logger.info(f"{host_path} is already mounted, skipping")
            if existing:
                return existing
            # Mounted outside this run; record it so teardown knows about it
            entry = MountedFilesystem(device=device, mountpoint=mountpoint, host_path=str(host_path),
                                      fstype=fstype, options=options or "defaults", role=role or mountpoint)
            self.mounts.append(entry)
            return entry

        self._create_directory(host_path)

        cmd = ["mount"]
        if options:
            cmd += ["-o", options]
        cmd += [device, str(host_path)]
        try:
            self.cmd_runner.run(cmd)
        except subprocess.CalledProcessError as e:
            raise MountFailure(f"Failed to mount {device} to {host_path}: {e.stderr or e}")

        entry = MountedFilesystem(
            device=device,
            mountpoint=mountpoint,
            host_path=str(host_path),
            fstype=fstype,
            options=options or "defaults",
            role=role or mountpoint
        )
        self.mounts.append(entry)
        logger.info(colorize(f"Mounted {device} to {host_path}" + (f" with options: {options}" if options else ""),
                             TermColors.SUCCESS, self.cmd_runner.colored_output))
        return entry

    def enable_swap(self, device: str, role: str = "swap") -> MountedFilesystem:
        """
        Activate a swap device.

        Raises:
            MountFailure: If swapon fails
        """
        for entry in self.swaps:
            if entry.device == device:
                logger.info(f"Swap on {device} is already active, skipping")
                return entry
        try:
            self.cmd_runner.run(["swapon", device])
        except subprocess.CalledProcessError as e:
            raise MountFailure(f"Failed to enable swap on {device}: {e.stderr or e}")
        entry = MountedFilesystem(device=device, mountpoint="none", host_path="none",
                                  fstype="swap", options="defaults", role=role)
        self.swaps.append(entry)
        logger.info(f"Enabled swap on {device}")
        return entry

    def unmount_order(self) -> List[MountedFilesystem]:
        """Recorded mounts, deepest first, later mounts first at equal depth."""
        indexed = list(enumerate(self.mounts))
        indexed.sort(key=lambda item: (mountpoint_depth(item[1].mountpoint), item[0]), reverse=True)
        return [entry for _, entry in indexed]

    def release_all(self) -> List[str]:
        """
        Swap off and unmount everything this orchestrator mounted, deepest first.

        Failures are logged and do not stop the remaining steps.

        Returns:
            Descriptions of the steps that failed
        """
        failures: List[str] = []
        for entry in list(reversed(self.swaps)):
            result = self.cmd_runner.run_unguarded(["swapoff", entry.device])
            if result.returncode != 0:
                logger.warning(f"Could not disable swap on {entry.device}: {result.stderr.strip()}")
                failures.append(f"swapoff {entry.device}")
            self.swaps.remove(entry)

        for entry in self.unmount_order():
            result = self.cmd_runner.run_unguarded(["umount", entry.host_path])
            if result.returncode != 0:
                logger.warning(f"Could not unmount {entry.host_path}: {result.stderr.strip()}")
                failures.append(f"umount {entry.host_path}")
            else:
                logger.info(f"Unmounted {entry.host_path}")
            self.mounts.remove(entry)
        return failures
