"""
Disk encryption module.

This module formats and opens LUKS2 containers. The passphrase is handed to
cryptsetup on stdin only and is wiped as soon as the container is open.
"""
import logging
import subprocess
from typing import Callable, List, Optional

from stratum.utils.command import CommandRunner
from stratum.utils.format import TermColors, colorize
from stratum.utils.types import EncryptedContainer, Passphrase
from stratum.core.safety import SafetyGate
from stratum.core.exceptions import EncryptionFailure

logger = logging.getLogger('stratum')

MAPPER_DIR = "/dev/mapper"


def run_cryptsetup_cmd(cmd: List[str], secret_input: str, cmd_runner: CommandRunner) -> subprocess.CompletedProcess:
    """
    Run a cryptsetup command with the provided secret input.

    Args:
        cmd: The cryptsetup command to run
        secret_input: Secret input to provide to the command
        cmd_runner: CommandRunner instance for executing commands

    Raises:
        EncryptionFailure: If the command fails
    """
    try:
        return cmd_runner.run(cmd, input=secret_input)
    except subprocess.CalledProcessError as e:
        raise EncryptionFailure(f"Cryptsetup command failed: {e.stderr if e.stderr else str(e)}")


def read_luks_uuid(device: str, cmd_runner: CommandRunner) -> str:
    """
    Read the header UUID of a LUKS device.

    Raises:
        EncryptionFailure: If the header cannot be read
    """
    try:
        result = cmd_runner.run(["cryptsetup", "luksUUID", device])
    except subprocess.CalledProcessError as e:
        raise EncryptionFailure(f"Cannot read LUKS header UUID of {device}: {e}")
    uuid = result.stdout.strip()
    if not uuid:
        raise EncryptionFailure(f"Empty LUKS header UUID on {device}")
    return uuid


def create_container(
    device: str,
    name: str,
    passphrase: Passphrase,
    gate: SafetyGate,
    cmd_runner: CommandRunner,
    unlocked_by_kernel: bool = True,
    on_open: Optional[Callable[[str], None]] = None
) -> EncryptedContainer:
    """
    Format a LUKS2 container on a device and open it.

    The passphrase is wiped before this function returns, on success and on
    failure alike.

    Args:
        device: Backing device (partition or RAID array)
        name: Mapped name under /dev/mapper
        passphrase: Passphrase, consumed by this call
        gate: SafetyGate that authorizes formatting the device
        cmd_runner: CommandRunner instance for executing commands
        unlocked_by_kernel: Whether the kernel command line unlocks this container
        on_open: Called with the mapped name as soon as the mapping exists

    Returns:
        The opened EncryptedContainer

    Raises:
        EncryptionFailure: If formatting, opening or reading the header fails
    """
    try:
        if not passphrase:
            raise EncryptionFailure(f"Refusing to encrypt {device} with an empty passphrase")

        target = gate.authorize("format LUKS container on", device)
        logger.info(f"Setting up LUKS2 encryption on {target}")

        run_cryptsetup_cmd(
            ["cryptsetup", "luksFormat", "--type", "luks2", "--batch-mode", "--key-file=-", target],
            passphrase.reveal(),
            cmd_runner
        )
        run_cryptsetup_cmd(
            ["cryptsetup", "open", "--key-file=-", target, name],
            passphrase.reveal(),
            cmd_runner
        )
        if on_open:
            on_open(name)
    finally:
        passphrase.wipe()

    mapped_path = f"{MAPPER_DIR}/{name}"
    container = EncryptedContainer(
        name=name,
        backing_device=device,
        uuid=read_luks_uuid(device, cmd_runner),
        mapped_path=mapped_path,
        unlocked_by_kernel=unlocked_by_kernel
    )
    logger.info(colorize(f"Opened {device} as {mapped_path}", TermColors.SUCCESS, cmd_runner.colored_output))
    return container


def close_container(name: str, cmd_runner: CommandRunner) -> bool:
    """
    Close an open mapping. Never raises.

    Returns:
        True if cryptsetup reported success
    """
    result = cmd_runner.run_unguarded(["cryptsetup", "close", name])
    if result.returncode != 0:
        logger.warning(f"Could not close encryption mapping {name}: {result.stderr.strip()}")
        return False
    logger.info(f"Closed encryption mapping {name}")
    return True
