"""
Kernel command line and initramfs hook generation.

Both are derived from the identity registry and the layers the resolved
scheme stacked, so the bootloader and mkinitcpio steps inside the target
only have to consume them.
"""
import logging
from typing import List

from stratum.config import create_etc_directory, write_target_file
from stratum.core.context import ProvisionContext
from stratum.core.exceptions import BootstrapFailure, IdentityError

logger = logging.getLogger('stratum')

BASE_HOOKS = ("base", "udev", "autodetect", "microcode", "modconf", "kms",
              "keyboard", "keymap", "consolefont", "block")
TAIL_HOOKS = ("filesystems", "fsck")


def kernel_cmdline(ctx: ProvisionContext) -> str:
    """
    Build the kernel command line for the installed system.

    Raises:
        BootstrapFailure: If the root identity is missing
    """
    try:
        root = ctx.registry.get("root")
    except IdentityError as e:
        raise BootstrapFailure(f"Cannot build kernel command line: {e}")

    params = [f"root=UUID={root.uuid}", "rw"]
    if ctx.settings.root_filesystem == "btrfs":
        params.append("rootflags=subvol=@")

    for container in ctx.containers:
        if container.unlocked_by_kernel:
            params.append(f"cryptdevice=UUID={container.uuid}:{container.name}")
    for vg in ctx.volume_groups:
        params.append(f"rd.lvm.vg={vg.name}")
    if "swap" in ctx.registry:
        params.append(f"resume=UUID={ctx.registry.get('swap').uuid}")
    return " ".join(params)


def initramfs_hooks(ctx: ProvisionContext) -> List[str]:
    """mkinitcpio HOOKS for the stacked layers, in boot order."""
    hooks = list(BASE_HOOKS)
    if ctx.raid_arrays:
        hooks.append("mdadm_udev")
    if any(container.unlocked_by_kernel for container in ctx.containers):
        hooks.append("encrypt")
    if ctx.volume_groups:
        hooks.append("lvm2")
    if "swap" in ctx.registry:
        hooks.append("resume")
    hooks.extend(TAIL_HOOKS)
    return hooks


def write_kernel_cmdline(ctx: ProvisionContext) -> str:
    """
    Write /etc/kernel/cmdline into the target.

    Returns:
        The command line

    Raises:
        BootstrapFailure: If the command line cannot be built or written
    """
    cmdline = kernel_cmdline(ctx)
    etc_path = create_etc_directory(ctx.mounts.target_root, ctx.cmd_runner)
    try:
        write_target_file(etc_path / "kernel" / "cmdline", cmdline + "\n", ctx.cmd_runner)
    except OSError as e:
        raise BootstrapFailure(f"Failed to write kernel command line: {e}")
    logger.info(f"Kernel command line: {cmdline}")
    return cmdline
