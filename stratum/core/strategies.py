"""
Storage provisioning strategies.

The StrategyDispatcher maps a scheme tag to exactly one provisioning routine.
Each routine partitions the target disk(s), stacks the RAID, encryption and
LVM layers its scheme needs, then formats, records and mounts the leaf
devices under the target root.
"""
import logging
import os
from typing import Callable, Dict, List, Optional

from stratum.utils.format import TermColors, colorize, size_to_mib
from stratum.utils.logging import advisory
from stratum.utils.types import (
    BootMode, DiskTarget, EncryptedContainer, LabelType, Partition, PartitionSpec, PartitionType,
    RaidArray, VolumeGroup
)
from stratum.core.context import ProvisionContext
from stratum.core.disk import get_disk_info, list_disks
from stratum.core.encryption import create_container
from stratum.core.filesystem import (
    BTRFS_MOUNT_OPTIONS, create_btrfs_subvolumes, determine_mount_options, format_device,
    fstab_type, subvolume_options
)
from stratum.core.lvm import create_logical_volume, create_volume_group, default_layout, select_layout
from stratum.core.partition import PartitionTableBuilder, check_layout, wipe_disk
from stratum.core.raid import create_array, default_raid_level, validate_raid_disks
from stratum.core.scheme import BaseStrategy, StorageScheme, parse_scheme_tag
from stratum.core.exceptions import InsufficientDisks, StratumError, UnknownScheme, ValidationError

logger = logging.getLogger('stratum')

# Partition sizes in MiB
ESP_SIZE_MIB = 512
BOOT_SIZE_MIB = 1024
BIOS_BOOT_SIZE_MIB = 1

# BIOS installs switch from a DOS label to GPT above this size
DOS_LABEL_LIMIT_BYTES = 2 * 1024 ** 4

BOOT_ARRAY_NAME = "boot"
DATA_ARRAY_NAME = "data"
HOME_MAPPER_NAME = "crypthome"


# --- Shared building blocks ---

def _mib(value: str, key: str) -> int:
    try:
        return size_to_mib(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {key} '{value}': {e}")


def partition_label(ctx: ProvisionContext, disk: DiskTarget) -> LabelType:
    if ctx.boot_mode == BootMode.UEFI or disk.size_bytes > DOS_LABEL_LIMIT_BYTES:
        return "gpt"
    return "dos"


def firmware_specs(ctx: ProvisionContext, disk: DiskTarget, with_boot: bool,
                   boot_type: PartitionType = PartitionType.XBOOTLDR) -> List[PartitionSpec]:
    """
    Leading partitions that the firmware and bootloader need.

    UEFI gets an ESP, preceded by a boot partition when ``with_boot`` is set.
    BIOS always gets a boot partition, preceded by a BIOS-boot partition on
    GPT-labelled disks.
    """
    if ctx.boot_mode == BootMode.UEFI:
        specs = []
        if with_boot:
            specs.append(PartitionSpec("boot", boot_type, BOOT_SIZE_MIB, "Linux boot"))
        specs.append(PartitionSpec("efi", PartitionType.EFI_SYSTEM, ESP_SIZE_MIB, "EFI System"))
        return specs

    specs = []
    if partition_label(ctx, disk) == "gpt":
        specs.append(PartitionSpec("bios_boot", PartitionType.BIOS_BOOT, BIOS_BOOT_SIZE_MIB, "BIOS boot"))
    linux_boot = PartitionType.LINUX if boot_type == PartitionType.XBOOTLDR else boot_type
    specs.append(PartitionSpec("boot", linux_boot, BOOT_SIZE_MIB, "Linux boot"))
    return specs


def partition_disk(ctx: ProvisionContext, disk: DiskTarget, specs: List[PartitionSpec]) -> Dict[str, Partition]:
    """
    Wipe one disk and carve a layout on it.

    Returns:
        Created partitions keyed by role
    """
    check_layout(specs, disk)
    label = partition_label(ctx, disk)
    ctx.labels[disk.path] = label

    wipe_disk(disk, ctx.gate, ctx.cmd_runner, ctx.settings.wipe_method)
    builder = PartitionTableBuilder(disk, label, ctx.gate, ctx.cmd_runner)
    partitions = builder.build(specs)
    ctx.partitions.extend(partitions)
    return {partition.role: partition for partition in partitions}


def make_filesystem(ctx: ProvisionContext, device: str, fstype: str, role: str) -> None:
    """Format a device and record its identity under a role."""
    format_device(device, fstype, ctx.cmd_runner, label=role)
    ctx.registry.set(role, device, ctx.cmd_runner, gpt_backed=ctx.is_gpt_partition(device))


def mount_root(ctx: ProvisionContext, device: str, with_home_subvolume: bool) -> None:
    """
    Format the root device and mount it at the target root.

    Btrfs roots get their subvolume set, each mounted at its own path.
    """
    fstype = ctx.settings.root_filesystem
    make_filesystem(ctx, device, fstype, "root")

    if fstype == "btrfs":
        for subvol, mountpoint in create_btrfs_subvolumes(device, with_home_subvolume, ctx.cmd_runner):
            ctx.mounts.mount(device, mountpoint, "btrfs", subvolume_options(subvol), role="root")
        return

    options = determine_mount_options("/", fstype, ctx.primary_disk.rotational)
    ctx.mounts.mount(device, "/", fstab_type(fstype), options, role="root")


def mount_filesystem(ctx: ProvisionContext, device: str, fstype: str, mountpoint: str, role: str) -> None:
    """Format a device, record its identity and mount it below the root."""
    make_filesystem(ctx, device, fstype, role)
    if fstype == "btrfs":
        options = BTRFS_MOUNT_OPTIONS
    else:
        options = determine_mount_options(mountpoint, fstype, ctx.primary_disk.rotational)
    ctx.mounts.mount(device, mountpoint, fstab_type(fstype), options, role=role)


def enable_swap(ctx: ProvisionContext, device: str) -> None:
    make_filesystem(ctx, device, "swap", "swap")
    ctx.mounts.enable_swap(device)


def mount_boot(ctx: ProvisionContext, efi: Optional[str], boot: Optional[str]) -> None:
    """
    Mount the boot partition at /boot and the ESP at /efi, or the ESP at
    /boot when there is no separate boot partition.
    """
    if boot:
        mount_filesystem(ctx, boot, "ext4", "/boot", "boot")
    if efi:
        mount_filesystem(ctx, efi, "fat32", "/efi" if boot else "/boot", "efi")


def open_container(ctx: ProvisionContext, device: str, name: str, role: str,
                   unlocked_by_kernel: bool = True) -> EncryptedContainer:
    """Encrypt a device, open it and record the header identity."""
    container = create_container(
        device,
        name,
        ctx.settings.encryption_password.copy(),
        ctx.gate,
        ctx.cmd_runner,
        unlocked_by_kernel=unlocked_by_kernel,
        on_open=ctx.track_mapping
    )
    ctx.containers.append(container)
    ctx.registry.set(role, device, ctx.cmd_runner, gpt_backed=ctx.is_gpt_partition(device))
    return container


def populate_volume_group(ctx: ProvisionContext, physical_volume: str) -> VolumeGroup:
    """
    Create the volume group and its logical volumes, then format, record and
    mount (or swap-enable) each volume in table order.
    """
    settings = ctx.settings
    layout = select_layout(
        default_layout(settings.swap_size, settings.root_size, settings.root_filesystem, settings.home_filesystem),
        ctx.features()
    )
    vg = create_volume_group(settings.volume_group, physical_volume, ctx.cmd_runner,
                             on_created=ctx.track_volume_group)
    ctx.volume_groups.append(vg)

    for spec in layout:
        volume = create_logical_volume(vg, spec, ctx.cmd_runner)
        if spec.filesystem == "swap":
            enable_swap(ctx, volume.path)
        elif spec.mountpoint == "/":
            mount_root(ctx, volume.path, with_home_subvolume=not settings.separate_home)
        elif spec.mountpoint:
            mount_filesystem(ctx, volume.path, spec.filesystem or "ext4", spec.mountpoint, spec.name)
    return vg


def data_specs(ctx: ProvisionContext, container_type: PartitionType) -> List[PartitionSpec]:
    """
    Swap, root and home partitions of a non-LVM layout.

    Root takes ROOT_SIZE when a home partition follows, otherwise the rest.
    """
    settings = ctx.settings
    specs = []
    if settings.swap:
        specs.append(PartitionSpec("swap", PartitionType.SWAP, _mib(settings.swap_size, "SWAP_SIZE"), "Linux swap"))
    root_role = "luks" if container_type == PartitionType.LUKS else "root"
    if settings.separate_home:
        home_role = "luks_home" if container_type == PartitionType.LUKS else "home"
        specs.append(PartitionSpec(root_role, container_type, _mib(settings.root_size, "ROOT_SIZE"), "Linux root"))
        specs.append(PartitionSpec(home_role, container_type, None, "Linux home"))
    else:
        specs.append(PartitionSpec(root_role, container_type, None, "Linux root"))
    return specs


# --- Single-disk routines ---

def provision_simple(ctx: ProvisionContext) -> None:
    """Plain partitions: ESP (or boot), optional swap, root, optional home."""
    settings = ctx.settings
    disk = ctx.primary_disk
    specs = firmware_specs(ctx, disk, with_boot=False) + data_specs(ctx, PartitionType.LINUX)
    parts = partition_disk(ctx, disk, specs)

    mount_root(ctx, parts["root"].device, with_home_subvolume=not settings.separate_home)
    if "home" in parts:
        mount_filesystem(ctx, parts["home"].device, settings.home_filesystem, "/home", "home")
    mount_boot(ctx, efi=_device(parts, "efi"), boot=_device(parts, "boot"))
    if "swap" in parts:
        enable_swap(ctx, parts["swap"].device)


def provision_luks(ctx: ProvisionContext) -> None:
    """Boot and ESP in the clear, root (and home) inside LUKS containers."""
    settings = ctx.settings
    disk = ctx.primary_disk
    specs = firmware_specs(ctx, disk, with_boot=True) + data_specs(ctx, PartitionType.LUKS)
    parts = partition_disk(ctx, disk, specs)

    root = open_container(ctx, parts["luks"].device, settings.luks_mapper_name, "luks")
    mount_root(ctx, root.mapped_path, with_home_subvolume=not settings.separate_home)
    if "luks_home" in parts:
        home = open_container(ctx, parts["luks_home"].device, HOME_MAPPER_NAME, "luks_home",
                              unlocked_by_kernel=False)
        mount_filesystem(ctx, home.mapped_path, settings.home_filesystem, "/home", "home")
    mount_boot(ctx, efi=_device(parts, "efi"), boot=_device(parts, "boot"))
    if "swap" in parts:
        enable_swap(ctx, parts["swap"].device)


def provision_lvm(ctx: ProvisionContext) -> None:
    """ESP (or boot) plus one LVM physical volume holding every volume."""
    disk = ctx.primary_disk
    specs = firmware_specs(ctx, disk, with_boot=False)
    specs.append(PartitionSpec("lvm", PartitionType.LVM, None, "Linux LVM"))
    parts = partition_disk(ctx, disk, specs)

    populate_volume_group(ctx, parts["lvm"].device)
    mount_boot(ctx, efi=_device(parts, "efi"), boot=_device(parts, "boot"))


def provision_luks_lvm(ctx: ProvisionContext) -> None:
    """Boot, ESP and one LUKS container holding the volume group."""
    disk = ctx.primary_disk
    specs = firmware_specs(ctx, disk, with_boot=True)
    specs.append(PartitionSpec("luks", PartitionType.LUKS, None, "Linux LUKS"))
    parts = partition_disk(ctx, disk, specs)

    container = open_container(ctx, parts["luks"].device, ctx.settings.luks_mapper_name, "luks")
    populate_volume_group(ctx, container.mapped_path)
    mount_boot(ctx, efi=_device(parts, "efi"), boot=_device(parts, "boot"))


# --- RAID routines ---

def raid_member_specs(ctx: ProvisionContext, disk: DiskTarget) -> List[PartitionSpec]:
    """Identical layout for every member disk: firmware partition, boot member, data member."""
    specs: List[PartitionSpec] = []
    if ctx.boot_mode == BootMode.UEFI:
        specs.append(PartitionSpec("efi", PartitionType.EFI_SYSTEM, ESP_SIZE_MIB, "EFI System"))
    elif partition_label(ctx, disk) == "gpt":
        specs.append(PartitionSpec("bios_boot", PartitionType.BIOS_BOOT, BIOS_BOOT_SIZE_MIB, "BIOS boot"))
    specs.append(PartitionSpec("boot_member", PartitionType.RAID, BOOT_SIZE_MIB, "RAID boot member"))
    specs.append(PartitionSpec("data_member", PartitionType.RAID, None, "RAID data member"))
    return specs


def assemble_raid(ctx: ProvisionContext) -> Dict[str, RaidArray]:
    """
    Partition every member disk identically, then assemble the boot array
    (always RAID1) and the data array, one after the other.

    Returns:
        Arrays keyed by "boot" and "data"
    """
    layouts = [(disk, raid_member_specs(ctx, disk)) for disk in ctx.disks]
    for disk, specs in layouts:
        check_layout(specs, disk)

    per_disk = [partition_disk(ctx, disk, specs) for disk, specs in layouts]

    level = ctx.scheme.raid_level
    boot = create_array(BOOT_ARRAY_NAME, 1, [parts["boot_member"].device for parts in per_disk],
                        ctx.gate, ctx.cmd_runner, on_assembled=ctx.track_array)
    ctx.raid_arrays.append(boot)
    data = create_array(DATA_ARRAY_NAME, level, [parts["data_member"].device for parts in per_disk],
                        ctx.gate, ctx.cmd_runner, on_assembled=ctx.track_array)
    ctx.raid_arrays.append(data)

    # Spare ESPs are formatted so they can be synced later; only the first is mounted
    for parts in per_disk[1:]:
        if "efi" in parts:
            format_device(parts["efi"].device, "fat32", ctx.cmd_runner, label="efi")

    ctx.raid_esp = _device(per_disk[0], "efi")
    return {"boot": boot, "data": data}


def _warn_unlayered_features(ctx: ProvisionContext) -> None:
    if ctx.settings.swap or ctx.settings.separate_home:
        advisory(logger, "swap and separate home volumes need an LVM layer on RAID; "
                         "use raid+lvm or raid+lvm+luks to get them")


def provision_raid(ctx: ProvisionContext) -> None:
    """Root filesystem directly on the data array."""
    _warn_unlayered_features(ctx)
    arrays = assemble_raid(ctx)
    mount_root(ctx, arrays["data"].path, with_home_subvolume=True)
    mount_boot(ctx, efi=ctx.raid_esp, boot=arrays["boot"].path)


def provision_raid_luks(ctx: ProvisionContext) -> None:
    """Root filesystem inside a LUKS container on the data array."""
    _warn_unlayered_features(ctx)
    arrays = assemble_raid(ctx)
    container = open_container(ctx, arrays["data"].path, ctx.settings.luks_mapper_name, "luks")
    mount_root(ctx, container.mapped_path, with_home_subvolume=True)
    mount_boot(ctx, efi=ctx.raid_esp, boot=arrays["boot"].path)


def provision_raid_lvm(ctx: ProvisionContext) -> None:
    """Volume group directly on the data array."""
    arrays = assemble_raid(ctx)
    populate_volume_group(ctx, arrays["data"].path)
    mount_boot(ctx, efi=ctx.raid_esp, boot=arrays["boot"].path)


def provision_raid_lvm_luks(ctx: ProvisionContext) -> None:
    """Volume group inside a LUKS container on the data array."""
    arrays = assemble_raid(ctx)
    container = open_container(ctx, arrays["data"].path, ctx.settings.luks_mapper_name, "luks")
    populate_volume_group(ctx, container.mapped_path)
    mount_boot(ctx, efi=ctx.raid_esp, boot=arrays["boot"].path)


def _device(parts: Dict[str, Partition], role: str) -> Optional[str]:
    partition = parts.get(role)
    return partition.device if partition else None


ROUTINES: Dict[BaseStrategy, Callable[[ProvisionContext], None]] = {
    BaseStrategy.SIMPLE: provision_simple,
    BaseStrategy.LUKS: provision_luks,
    BaseStrategy.LVM: provision_lvm,
    BaseStrategy.LUKS_LVM: provision_luks_lvm,
    BaseStrategy.RAID: provision_raid,
    BaseStrategy.RAID_LUKS: provision_raid_luks,
    BaseStrategy.RAID_LVM: provision_raid_lvm,
    BaseStrategy.RAID_LVM_LUKS: provision_raid_lvm_luks,
}


# --- Dispatcher ---

class StrategyDispatcher:
    """
    Resolves the configured scheme and runs its routine, once.

    Failures inside the routine propagate unchanged and are never retried.
    """
    def __init__(self, context: ProvisionContext):
        self.context = context
        self._dispatched = False

    def dispatch(self, tag: Optional[str] = None) -> StorageScheme:
        """
        Provision storage for a scheme tag.

        Args:
            tag: Scheme tag, defaults to PARTITIONING_STRATEGY

        Returns:
            The resolved StorageScheme

        Raises:
            UnknownScheme: If the tag is unknown; nothing has been touched then
            InsufficientDisks: If a RAID scheme finds fewer than two disks
            StratumError: Any failure of the routine itself
        """
        if self._dispatched:
            raise StratumError("The strategy dispatcher can only run once per installation")
        self._dispatched = True

        try:
            return self._provision(tag)
        finally:
            # The passphrase is not needed once every container is open
            self.context.settings.encryption_password.wipe()

    def _provision(self, tag: Optional[str]) -> StorageScheme:
        ctx = self.context
        tag = tag if tag is not None else ctx.settings.partitioning_strategy
        base, level = parse_scheme_tag(tag)
        routine = ROUTINES.get(base)
        if routine is None:
            raise UnknownScheme(f"No provisioning routine for scheme '{tag}'")

        ctx.disks = self.resolve_disks(base)
        if base.uses_raid:
            if level is None:
                level = default_raid_level(len(ctx.disks))
            validate_raid_disks(ctx.disks, level, ctx.cmd_runner)

        ctx.scheme = StorageScheme(base=base, raid_level=level, boot_mode=ctx.boot_mode)
        logger.info(colorize(
            f"Provisioning storage with scheme {ctx.scheme.tag} ({ctx.boot_mode.value.upper()}) "
            f"on {', '.join(disk.path for disk in ctx.disks)}",
            TermColors.INFO, ctx.cmd_runner.colored_output))

        routine(ctx)

        logger.info(colorize("Storage provisioning completed successfully",
                             TermColors.SUCCESS, ctx.cmd_runner.colored_output))
        return ctx.scheme

    def resolve_disks(self, base: BaseStrategy) -> List[DiskTarget]:
        """
        Determine the disks a scheme uses, primary target first.

        RAID schemes use RAID_DEVICES when given, otherwise every other disk
        the kernel reports.

        Raises:
            InsufficientDisks: If a RAID scheme ends up with fewer than two disks
        """
        ctx = self.context
        primary = ctx.settings.install_disk
        if not base.uses_raid:
            return [get_disk_info(primary, ctx.cmd_runner)]

        if ctx.settings.raid_devices:
            candidates = list(ctx.settings.raid_devices)
        else:
            candidates = [disk for disk in list_disks(ctx.cmd_runner)
                          if not os.path.basename(disk).startswith(("zram", "sr"))]
            logger.info(f"Discovered disks for RAID: {', '.join(candidates) or 'none'}")

        paths = [os.path.realpath(primary)]
        for candidate in candidates:
            node = os.path.realpath(candidate)
            if node not in paths:
                paths.append(node)

        if len(paths) < 2:
            raise InsufficientDisks(
                f"RAID schemes need at least 2 disks, found {len(paths)} ({', '.join(paths)})"
            )
        return [get_disk_info(path, ctx.cmd_runner) for path in paths]
