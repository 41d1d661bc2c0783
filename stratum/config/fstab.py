"""
Fstab generation.

Builds the target's /etc/fstab from the mounts and swap devices activated
during provisioning, keyed by the UUIDs in the identity registry.
"""
import logging
from typing import List

from stratum.config import create_etc_directory, write_target_file
from stratum.utils.types import MountedFilesystem
from stratum.core.context import ProvisionContext
from stratum.core.exceptions import BootstrapFailure, IdentityError

logger = logging.getLogger('stratum')

FSTAB_HEADER = "# /etc/fstab: static file system information.\n#\n# <file system>\t<mount point>\t<type>\t<options>\t<dump>\t<pass>\n"

# Filesystems that are never checked at boot
NO_FSCK_TYPES = ("vfat", "btrfs", "swap")


def fsck_pass(entry: MountedFilesystem) -> int:
    if entry.fstype in NO_FSCK_TYPES:
        return 0
    return 1 if entry.mountpoint == "/" else 2


def _uuid_for(ctx: ProvisionContext, entry: MountedFilesystem) -> str:
    """
    Find the UUID of a mounted device through the registry.

    Raises:
        IdentityError: If the device was never recorded
    """
    for identity in ctx.registry.as_mapping().values():
        if identity.device == entry.device:
            return identity.uuid
    raise IdentityError(f"No identity recorded for {entry.device} mounted at {entry.mountpoint}")


def fstab_lines(ctx: ProvisionContext) -> List[str]:
    """
    One line per mounted filesystem in mount order (root first), then swap.
    """
    lines = []
    for entry in ctx.mounts.mounts:
        uuid = _uuid_for(ctx, entry)
        lines.append(f"UUID={uuid}\t{entry.mountpoint}\t{entry.fstype}\t{entry.options}\t0\t{fsck_pass(entry)}")
    for entry in ctx.mounts.swaps:
        uuid = _uuid_for(ctx, entry)
        lines.append(f"UUID={uuid}\tnone\tswap\tdefaults\t0\t0")
    return lines


def generate_fstab(ctx: ProvisionContext) -> str:
    """
    Write /etc/fstab into the target.

    Returns:
        The generated content

    Raises:
        BootstrapFailure: If the root is not mounted or a mount has no identity
    """
    if not ctx.mounts.root_mounted:
        raise BootstrapFailure("Cannot generate fstab: the root filesystem is not mounted")
    logger.info("Generating fstab")

    try:
        content = FSTAB_HEADER + "\n".join(fstab_lines(ctx)) + "\n"
    except IdentityError as e:
        raise BootstrapFailure(f"Cannot generate fstab: {e}")

    etc_path = create_etc_directory(ctx.mounts.target_root, ctx.cmd_runner)
    try:
        write_target_file(etc_path / "fstab", content, ctx.cmd_runner)
    except OSError as e:
        raise BootstrapFailure(f"Failed to write fstab: {e}")
    logger.info(f"Fstab written to {etc_path / 'fstab'}")
    return content
