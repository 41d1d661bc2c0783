"""
End-to-end storage provisioning through the dispatcher, in simulation mode.
"""
import pytest

from stratum.core.exceptions import ConfirmationMissing, FormatFailure, InsufficientDisks
from stratum.core.strategies import StrategyDispatcher, partition_label
from stratum.utils.types import BootMode, DiskTarget, PartitionType

from conftest import FailingRunner, make_context, make_settings, sim_runner


def provision(runner=None, **overrides):
    runner = runner or sim_runner()
    context = make_context(make_settings(**overrides), runner)
    StrategyDispatcher(context).dispatch()
    return context


def mounted(context):
    return {entry.mountpoint: entry for entry in context.mounts.mounts}


def appended_partitions(context, disk="/dev/sda"):
    return [cmd for cmd in context.cmd_runner.executed("sfdisk") if cmd == ["sfdisk", "--append", disk]]


# --- Scenario A ---

def test_simple_uefi_without_swap_or_home():
    context = provision(partitioning_strategy="simple")

    assert len(appended_partitions(context)) == 2
    assert [(p.role, p.ptype) for p in context.partitions] == [
        ("efi", PartitionType.EFI_SYSTEM),
        ("root", PartitionType.LINUX),
    ]
    mounts = mounted(context)
    assert mounts["/"].device == "/dev/sda2"
    assert mounts["/"].host_path == "/mnt/target"
    assert mounts["/boot"].device == "/dev/sda1"
    assert mounts["/boot"].fstype == "vfat"
    assert set(context.registry.roles()) == {"efi", "root"}


def test_simple_with_swap_and_home_sizes_root():
    context = provision(partitioning_strategy="simple", swap="yes", separate_home="yes",
                        swap_size="4G", root_size="40G")

    sizes = {p.role: p.size_mib for p in context.partitions}
    assert sizes == {"efi": 512, "swap": 4096, "root": 40960, "home": None}
    assert "/home" in mounted(context)
    assert context.mounts.swaps[0].device == "/dev/sda2"
    assert set(context.registry.roles()) == {"efi", "root", "home", "swap"}


def test_simple_btrfs_mounts_subvolumes():
    context = provision(partitioning_strategy="simple", root_filesystem="btrfs")

    subvolumes = [cmd[-1].rsplit("/", 1)[-1] for cmd in context.cmd_runner.executed("btrfs")]
    assert subvolumes == ["@", "@home", "@var", "@tmp", "@snapshots"]
    mounts = mounted(context)
    assert mounts["/"].options.startswith("subvol=@,")
    assert mounts["/home"].options.startswith("subvol=@home,")
    assert mounts["/home"].device == mounts["/"].device


def test_simple_bios_uses_dos_label():
    context = provision(runner=sim_runner(firmware="bios"), partitioning_strategy="simple")

    assert context.labels["/dev/sda"] == "dos"
    assert [p.role for p in context.partitions] == ["boot", "root"]
    assert mounted(context)["/boot"].fstype == "ext4"


def test_bios_large_disk_uses_gpt_with_bios_boot():
    context = make_context(make_settings(), sim_runner(firmware="bios"))
    big = DiskTarget(path="/dev/sda", size_bytes=3 * 1024 ** 4)
    assert partition_label(context, big) == "gpt"
    context = provision(runner=sim_runner(firmware="bios", disk_size="3T"), partitioning_strategy="lvm")
    assert [p.role for p in context.partitions] == ["bios_boot", "boot", "lvm"]


def test_symlinked_install_disk_uses_kernel_node(tmp_path):
    link = tmp_path / "ata-DISK"
    link.symlink_to("/dev/sda")
    context = provision(install_disk=str(link))

    assert context.primary_disk.path == "/dev/sda"
    assert [p.device for p in context.partitions] == ["/dev/sda1", "/dev/sda2"]
    appends = [cmd for cmd in context.cmd_runner.executed("sfdisk") if "--append" in cmd]
    assert appends and all(cmd[-1] == "/dev/sda" for cmd in appends)
    assert mounted(context)["/"].device == "/dev/sda2"
    assert context.registry.get("root").device == "/dev/sda2"


# --- Scenario B ---

def test_luks_lvm_layout_and_stacking():
    context = provision(partitioning_strategy="luks+lvm", swap="yes", separate_home="yes")

    assert [p.role for p in context.partitions] == ["boot", "efi", "luks"]
    assert [p.ptype for p in context.partitions] == [
        PartitionType.XBOOTLDR, PartitionType.EFI_SYSTEM, PartitionType.LUKS,
    ]

    runner = context.cmd_runner
    opens = [cmd for cmd in runner.executed("cryptsetup") if "open" in cmd]
    assert opens == [["cryptsetup", "open", "--key-file=-", "/dev/sda3", "cryptroot"]]
    assert runner.executed("pvcreate") == [["pvcreate", "-ff", "-y", "/dev/mapper/cryptroot"]]
    assert runner.executed("vgcreate") == [["vgcreate", "vg0", "/dev/mapper/cryptroot"]]
    assert [cmd[3] for cmd in runner.executed("lvcreate")] == ["swap", "root", "home"]

    mounts = mounted(context)
    assert mounts["/"].device == "/dev/vg0/root"
    assert mounts["/home"].device == "/dev/vg0/home"
    assert mounts["/boot"].device == "/dev/sda1"
    assert mounts["/efi"].device == "/dev/sda2"
    assert context.open_mappings == ["cryptroot"]
    assert context.active_volume_groups == ["vg0"]
    assert context.registry.get("luks").uuid == context.containers[0].uuid


def test_luks_lvm_skips_unwanted_volumes():
    context = provision(partitioning_strategy="luks+lvm", swap="no", separate_home="no")

    lvcreate = context.cmd_runner.executed("lvcreate")
    assert lvcreate == [["lvcreate", "-y", "-n", "root", "-l", "100%FREE", "vg0"]]
    assert "swap" not in context.registry


def test_passphrase_never_reaches_argv():
    context = provision(partitioning_strategy="luks", encryption_password="hunter2-secret")
    for cmd in context.cmd_runner.executed():
        assert not any("hunter2-secret" in arg for arg in cmd)


def test_passphrase_is_wiped_after_provisioning():
    context = provision(partitioning_strategy="luks", separate_home="yes", encryption_password="hunter2-secret")

    stdin = [cmd for cmd in context.cmd_runner.executed("cryptsetup") if "--key-file=-" in cmd]
    assert len(stdin) == 4
    assert not context.settings.encryption_password
    assert "hunter2" not in repr(context.settings)


def test_luks_separate_home_goes_to_crypttab_container():
    context = provision(partitioning_strategy="luks", separate_home="yes")

    names = [(c.name, c.unlocked_by_kernel) for c in context.containers]
    assert names == [("cryptroot", True), ("crypthome", False)]
    assert mounted(context)["/home"].device == "/dev/mapper/crypthome"


# --- Scenario C ---

def test_raid1_two_disks_identical_members():
    runner = sim_runner(disks=["/dev/sda", "/dev/sdb"])
    context = provision(runner=runner, partitioning_strategy="raid1", raid_devices="/dev/sdb")

    by_disk = {}
    for partition in context.partitions:
        by_disk.setdefault(partition.disk, []).append((partition.role, partition.size_mib, partition.ptype))
    assert by_disk["/dev/sda"] == by_disk["/dev/sdb"]
    assert [role for role, _, _ in by_disk["/dev/sda"]] == ["efi", "boot_member", "data_member"]

    assert context.assembled_arrays == ["/dev/md/boot", "/dev/md/data"]
    assert [(a.level, a.members) for a in context.raid_arrays] == [
        (1, ("/dev/sda2", "/dev/sdb2")),
        (1, ("/dev/sda3", "/dev/sdb3")),
    ]
    mounts = mounted(context)
    assert mounts["/"].device == "/dev/md/data"
    assert mounts["/boot"].device == "/dev/md/boot"
    assert mounts["/efi"].device == "/dev/sda1"
    assert ["mkfs.fat", "-F32", "-n", "EFI", "/dev/sdb1"] in runner.executed("mkfs.fat")
    assert context.registry.get("root").partuuid is None


def test_raid_with_one_disk_fails_before_partitioning():
    runner = sim_runner(disks=["/dev/sda"])
    context = make_context(make_settings(partitioning_strategy="raid1"), runner)

    with pytest.raises(InsufficientDisks):
        StrategyDispatcher(context).dispatch()
    for tool in ("sfdisk", "wipefs", "blkdiscard", "mdadm"):
        assert runner.executed(tool) == []


def test_raid_discovers_disks_and_defaults_to_raid5():
    runner = sim_runner(disks=["/dev/sda", "/dev/sdb", "/dev/sdc", "/dev/zram0"])
    context = provision(runner=runner, partitioning_strategy="raid+lvm+luks", swap="yes")

    assert [disk.path for disk in context.disks] == ["/dev/sda", "/dev/sdb", "/dev/sdc"]
    assert context.scheme.raid_level == 5
    data = context.raid_arrays[1]
    assert data.level == 5 and len(data.members) == 3
    assert context.containers[0].backing_device == "/dev/md/data"
    assert context.volume_groups[0].physical_volume == "/dev/mapper/cryptroot"


def test_raid_member_aliases_are_listed_once(tmp_path):
    primary = tmp_path / "ata-PRIMARY"
    primary.symlink_to("/dev/sda")
    member = tmp_path / "ata-MEMBER"
    member.symlink_to("/dev/sdb")
    runner = sim_runner(disks=["/dev/sda", "/dev/sdb"])
    context = provision(runner=runner, partitioning_strategy="raid1", install_disk=str(primary),
                        raid_devices=f"{member} /dev/sdb /dev/sda")

    assert [disk.path for disk in context.disks] == ["/dev/sda", "/dev/sdb"]
    assert context.raid_arrays[1].members == ("/dev/sda3", "/dev/sdb3")


def test_raid_without_lvm_warns_about_swap(caplog):
    runner = sim_runner(disks=["/dev/sda", "/dev/sdb"])
    provision(runner=runner, partitioning_strategy="raid", swap="yes")
    assert "ADVISORY" in caplog.text


# --- Scenario D ---

def test_missing_confirmation_wipes_nothing():
    runner = sim_runner()
    context = make_context(make_settings(confirm_wipe="no"), runner)

    with pytest.raises(ConfirmationMissing, match="CONFIRM_WIPE"):
        StrategyDispatcher(context).dispatch()
    for tool in ("wipefs", "blkdiscard", "dd", "sfdisk"):
        assert runner.executed(tool) == []


# --- Failure propagation ---

def test_format_failure_propagates_with_resources_recorded():
    runner = FailingRunner(lambda cmd: cmd[0] == "mkfs.ext4")
    runner.set_simulation_params({"disks": ["/dev/sda"]})
    context = make_context(make_settings(partitioning_strategy="luks"), runner)

    with pytest.raises(FormatFailure):
        StrategyDispatcher(context).dispatch()
    assert context.open_mappings == ["cryptroot"]
    assert context.mounts.mounts == []
    assert not context.settings.encryption_password


def test_uefi_is_default_boot_mode(context):
    assert context.boot_mode == BootMode.UEFI
