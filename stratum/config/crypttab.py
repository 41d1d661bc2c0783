"""
Crypttab generation.

Containers that the kernel command line does not unlock are listed in the
target's /etc/crypttab so systemd opens them at boot.
"""
import logging
from typing import List

from stratum.config import create_etc_directory, write_target_file
from stratum.core.context import ProvisionContext
from stratum.core.exceptions import BootstrapFailure

logger = logging.getLogger('stratum')

CRYPTTAB_HEADER = "# <name>\t<device>\t<password>\t<options>\n"


def crypttab_lines(ctx: ProvisionContext) -> List[str]:
    return [
        f"{container.name}\tUUID={container.uuid}\tnone\tluks"
        for container in ctx.containers
        if not container.unlocked_by_kernel
    ]


def generate_crypttab(ctx: ProvisionContext) -> bool:
    """
    Write /etc/crypttab when at least one container needs it.

    Returns:
        True if a crypttab was written

    Raises:
        BootstrapFailure: If the file cannot be written
    """
    lines = crypttab_lines(ctx)
    if not lines:
        logger.debug("No containers need a crypttab entry")
        return False

    logger.info("Generating crypttab")
    etc_path = create_etc_directory(ctx.mounts.target_root, ctx.cmd_runner)
    try:
        write_target_file(etc_path / "crypttab", CRYPTTAB_HEADER + "\n".join(lines) + "\n",
                          ctx.cmd_runner, mode=0o600)
    except OSError as e:
        raise BootstrapFailure(f"Failed to write crypttab: {e}")
    return True
