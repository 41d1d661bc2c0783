"""
Install phase coordinator.

Runs the installation phases strictly forward. The first failing phase ends
the run: cleanup is triggered and the result names the phase. There is no
retry and no partial continuation.
"""
import logging
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from stratum.config.bootloader import write_kernel_cmdline
from stratum.config.crypttab import generate_crypttab
from stratum.config.fstab import generate_fstab
from stratum.config.mdadm import generate_mdadm_conf
from stratum.config.settings import CONFIRMATION_TOKEN, CONFIRMATION_VARIABLE
from stratum.utils.format import TermColors, colorize, size_to_mib
from stratum.utils.logging import advisory
from stratum.utils.types import BootMode
from stratum.core.cleanup import CleanupHandler
from stratum.core.context import ProvisionContext
from stratum.core.disk import detect_boot_mode, is_block_device
from stratum.core.partition import WIPE_METHODS
from stratum.core.scheme import parse_scheme_tag
from stratum.core.strategies import StrategyDispatcher
from stratum.core.target import TargetConfigurator
from stratum.core.exceptions import (
    BootstrapFailure, ConfirmationMissing, InstallAborted, StratumError, ValidationError
)

logger = logging.getLogger('stratum')

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_ABORTED = 130

NTP_SYNC_TIMEOUT = 60.0
NTP_POLL_INTERVAL = 2.0

# useradd-compatible: lowercase, no leading dash or digit, at most 32 characters
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
HOSTNAME_RE = re.compile(r"^(?!-)[a-zA-Z0-9-]{1,63}(?<!-)$")

# Tools every scheme needs, then the ones each layer adds
BASE_TOOLS = ("sfdisk", "partprobe", "udevadm", "wipefs", "blkid", "blockdev", "lsblk",
              "mount", "umount", "swapon", "mkswap", "mkfs.ext4", "mkfs.fat", "pacstrap", "arch-chroot")
LAYER_TOOLS = {
    "raid": ("mdadm",),
    "luks": ("cryptsetup",),
    "lvm": ("pvcreate", "vgcreate", "lvcreate", "vgchange"),
}
FILESYSTEM_TOOLS = {
    "xfs": ("mkfs.xfs",),
    "btrfs": ("mkfs.btrfs", "btrfs"),
}

BASE_PACKAGES = ("base", "linux-firmware")
LAYER_PACKAGES = {
    "raid": ("mdadm",),
    "luks": ("cryptsetup",),
    "lvm": ("lvm2",),
}
FILESYSTEM_PACKAGES = {
    "xfs": ("xfsprogs",),
    "btrfs": ("btrfs-progs",),
}


class Phase(Enum):
    VALIDATE = "validate"
    PREPARE = "prepare"
    DEPENDENCY_CHECK = "dependency-check"
    PROVISION_STORAGE = "provision-storage"
    BASE_BOOTSTRAP = "base-bootstrap"
    MOUNT_TABLE = "mount-table"
    IN_TARGET_CONFIGURE = "in-target-configure"
    FINALIZE = "finalize"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class InstallResult:
    """Outcome of one installation run"""
    status: Phase
    failed_phase: Optional[Phase] = None
    exit_code: int = EXIT_SUCCESS
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.status == Phase.COMPLETE


class InstallCoordinator:
    """
    Sequences the installation phases for one context. Single use.

    Usage:
        result = InstallCoordinator(ProvisionContext.create(settings, runner)).run()
    """
    def __init__(self, context: ProvisionContext):
        self.context = context
        self.cmd_runner = context.cmd_runner
        self.phase: Optional[Phase] = None
        self.cleanup: Optional[CleanupHandler] = None
        self._started = False

    def phases(self) -> List[Tuple[Phase, Callable[[], None]]]:
        return [
            (Phase.VALIDATE, self.validate),
            (Phase.PREPARE, self.prepare),
            (Phase.DEPENDENCY_CHECK, self.check_dependencies),
            (Phase.PROVISION_STORAGE, self.provision_storage),
            (Phase.BASE_BOOTSTRAP, self.bootstrap),
            (Phase.MOUNT_TABLE, self.generate_mount_table),
            (Phase.IN_TARGET_CONFIGURE, self.configure_target),
            (Phase.FINALIZE, self.finalize),
        ]

    def run(self) -> InstallResult:
        """
        Run every phase in order.

        Returns:
            InstallResult with the terminal status and exit code
        """
        if self._started:
            raise StratumError("An install coordinator can only run once")
        self._started = True

        with CleanupHandler(self.context) as cleanup:
            self.cleanup = cleanup
            try:
                for phase, action in self.phases():
                    self.phase = phase
                    self.cmd_runner.check_abort()
                    logger.info(colorize(f"=== Phase: {phase.value} ===", TermColors.INFO + TermColors.BOLD,
                                         self.cmd_runner.colored_output))
                    action()
            except Exception as e:
                return self._fail(e)

        self.phase = Phase.COMPLETE
        logger.info(colorize("Installation completed successfully", TermColors.SUCCESS, self.cmd_runner.colored_output))
        return InstallResult(status=Phase.COMPLETE)

    def _fail(self, error: Exception) -> InstallResult:
        failed = self.phase
        aborted = isinstance(error, InstallAborted) or self.cmd_runner.abort_requested is not None
        if aborted:
            logger.error(colorize(f"Installation aborted during phase {failed.value}",
                                  TermColors.ERROR, self.cmd_runner.colored_output))
        elif isinstance(error, StratumError):
            logger.error(colorize(f"Phase {failed.value} failed: {error}", TermColors.ERROR,
                                  self.cmd_runner.colored_output))
        else:
            logger.exception(f"Unexpected error in phase {failed.value}: {error}")

        self.cleanup.trigger()
        self.phase = Phase.FAILED
        return InstallResult(
            status=Phase.FAILED,
            failed_phase=failed,
            exit_code=EXIT_ABORTED if aborted else EXIT_FAILURE,
            error=error
        )

    # --- Validate ---

    def validate(self) -> None:
        """
        Raises:
            ValidationError: If a required field is missing or malformed
            UnknownScheme: If the scheme tag is unknown
            ConfirmationMissing: If the destructive confirmation is absent
        """
        ctx = self.context
        settings = ctx.settings

        required = {
            "INSTALL_DISK": settings.install_disk,
            "PARTITIONING_STRATEGY": settings.partitioning_strategy,
            "MAIN_USERNAME": settings.main_username,
            "MAIN_USER_PASSWORD": settings.main_user_password,
            "ROOT_PASSWORD": settings.root_password,
            "SYSTEM_HOSTNAME": settings.system_hostname,
        }
        missing = [key for key, value in required.items() if not value]
        if missing:
            raise ValidationError(f"Missing required configuration: {', '.join(missing)}")

        base, _ = parse_scheme_tag(settings.partitioning_strategy)

        if not USERNAME_RE.match(settings.main_username):
            raise ValidationError(f"Invalid MAIN_USERNAME '{settings.main_username}'")
        if not HOSTNAME_RE.match(settings.system_hostname):
            raise ValidationError(f"Invalid SYSTEM_HOSTNAME '{settings.system_hostname}'")

        if base.uses_luks and not settings.encryption_password:
            raise ValidationError(f"Scheme '{settings.partitioning_strategy}' requires ENCRYPTION_PASSWORD")

        for key, fstype in (("ROOT_FILESYSTEM", settings.root_filesystem),
                            ("HOME_FILESYSTEM", settings.home_filesystem)):
            if fstype not in ("ext4", "xfs", "btrfs"):
                raise ValidationError(f"{key} must be ext4, xfs or btrfs, got '{fstype}'")
        if settings.wipe_method not in WIPE_METHODS:
            raise ValidationError(f"WIPE_METHOD must be one of {', '.join(WIPE_METHODS)}, got '{settings.wipe_method}'")
        for key, value in (("SWAP_SIZE", settings.swap_size), ("ROOT_SIZE", settings.root_size)):
            try:
                size_to_mib(value)
            except ValueError as e:
                raise ValidationError(f"Invalid {key} '{value}': {e}")

        if not is_block_device(settings.install_disk, self.cmd_runner):
            raise ValidationError(f"INSTALL_DISK {settings.install_disk} is not a block device")

        detected = detect_boot_mode(self.cmd_runner)
        requested = settings.boot_mode.lower()
        if requested not in ("auto", BootMode.UEFI.value, BootMode.BIOS.value):
            raise ValidationError(f"BOOT_MODE must be auto, uefi or bios, got '{settings.boot_mode}'")
        if requested != "auto" and requested != detected.value:
            raise ValidationError(
                f"BOOT_MODE is {requested} but the machine booted in {detected.value.upper()} mode"
            )
        ctx.boot_mode = detected

        if not ctx.gate.confirmed:
            raise ConfirmationMissing(
                f"Refusing to erase {settings.install_disk}: set {CONFIRMATION_VARIABLE}={CONFIRMATION_TOKEN} to confirm"
            )
        logger.info(f"Configuration validated: {settings.partitioning_strategy} on {settings.install_disk} "
                    f"({detected.value.upper()})")

    # --- Prepare ---

    def prepare(self) -> None:
        """Enable time synchronisation and rank mirrors. Failures are advisory."""
        try:
            result = self.cmd_runner.run(["timedatectl", "set-ntp", "true"], check=False)
            if result.returncode != 0:
                advisory(logger, f"Could not enable NTP: {result.stderr.strip()}")
            else:
                self._wait_for_time_sync()
        except OSError as e:
            advisory(logger, f"Time synchronisation unavailable: {e}")

        country = self.context.settings.mirror_country
        cmd = ["reflector", "--protocol", "https", "--latest", "20", "--sort", "rate",
               "--save", "/etc/pacman.d/mirrorlist"]
        if country:
            cmd[1:1] = ["--country", country]
        try:
            self.cmd_runner.run(cmd)
        except (subprocess.CalledProcessError, OSError) as e:
            advisory(logger, f"Mirror ranking failed, keeping the existing mirror list: {e}")

    def _wait_for_time_sync(self) -> None:
        deadline = time.monotonic() + NTP_SYNC_TIMEOUT
        while True:
            result = self.cmd_runner.run(["timedatectl", "show", "-p", "NTPSynchronized", "--value"], check=False)
            if result.stdout.strip() == "yes":
                logger.info("System clock synchronised")
                return
            if time.monotonic() >= deadline:
                advisory(logger, f"Clock not synchronised after {NTP_SYNC_TIMEOUT:.0f}s, continuing")
                return
            time.sleep(NTP_POLL_INTERVAL)

    # --- Dependency check ---

    def required_tools(self) -> List[str]:
        settings = self.context.settings
        base, _ = parse_scheme_tag(settings.partitioning_strategy)
        tools = list(BASE_TOOLS)
        for layer in sorted(base.layers):
            tools.extend(LAYER_TOOLS.get(layer, ()))
        for fstype in {settings.root_filesystem, settings.home_filesystem}:
            tools.extend(FILESYSTEM_TOOLS.get(fstype, ()))
        return list(dict.fromkeys(tools))

    def check_dependencies(self) -> None:
        """
        Raises:
            ValidationError: If a required tool is missing or the run lacks root privileges
        """
        tools = self.required_tools()
        if self.cmd_runner.simulating:
            logger.info("Checking for required tools (simulated)")
            for tool in tools:
                logger.info(f"Tool '{tool}' would be checked")
        else:
            if os.geteuid() != 0:
                raise ValidationError("This installer must be run as root")
            missing = [tool for tool in tools if not shutil.which(tool)]
            if missing:
                raise ValidationError(f"Missing required tools: {', '.join(missing)}")

        if self.context.settings.skip_disk_health:
            logger.info("Disk health check skipped")
            return
        self._check_disk_health(self.context.settings.install_disk)
        for disk in self.context.settings.raid_devices:
            self._check_disk_health(disk)

    def _check_disk_health(self, disk: str) -> None:
        try:
            result = self.cmd_runner.run(["smartctl", "-H", disk], check=False)
        except OSError:
            advisory(logger, f"smartctl is not available, health of {disk} not checked")
            return
        if "PASSED" not in result.stdout and "OK" not in result.stdout:
            advisory(logger, f"SMART health check of {disk} did not pass; set SKIP_DISK_HEALTH=yes to silence")

    # --- Storage ---

    def provision_storage(self) -> None:
        StrategyDispatcher(self.context).dispatch()

    # --- Bootstrap ---

    def packages(self) -> List[str]:
        settings = self.context.settings
        packages = [BASE_PACKAGES[0], settings.kernel, *BASE_PACKAGES[1:]]
        for layer in sorted(self.context.scheme.base.layers):
            packages.extend(LAYER_PACKAGES.get(layer, ()))
        for fstype in (settings.root_filesystem, settings.home_filesystem):
            packages.extend(FILESYSTEM_PACKAGES.get(fstype, ()))
        if self.context.boot_mode == BootMode.UEFI:
            packages.append("dosfstools")
        return list(dict.fromkeys(packages))

    def bootstrap(self) -> None:
        """
        Raises:
            BootstrapFailure: If pacstrap fails
        """
        target = str(self.context.mounts.target_root)
        try:
            self.cmd_runner.run(["pacstrap", "-K", target, *self.packages()])
        except subprocess.CalledProcessError as e:
            raise BootstrapFailure(f"Base system bootstrap failed: {e.stderr or e}")

    # --- Mount table ---

    def generate_mount_table(self) -> None:
        generate_fstab(self.context)
        generate_crypttab(self.context)
        generate_mdadm_conf(self.context)
        write_kernel_cmdline(self.context)

    # --- In-target ---

    def configure_target(self) -> None:
        TargetConfigurator(self.context).configure()

    # --- Finalize ---

    def finalize(self) -> None:
        self.cmd_runner.run(["sync"], check=False)
        if self.context.settings.keep_mounted:
            logger.info(f"Target left mounted at {self.context.mounts.target_root}")
        else:
            failures = self.cleanup.teardown()
            if failures:
                advisory(logger, f"Some resources could not be released: {', '.join(failures)}")
        self.cleanup.mark_success()
