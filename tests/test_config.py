"""
Tests for settings loading and the boot-time artifacts generated from a
provisioned context.
"""
import json

import pytest

from stratum.config import write_target_file
from stratum.config.bootloader import initramfs_hooks, kernel_cmdline
from stratum.config.crypttab import crypttab_lines, generate_crypttab
from stratum.config.fstab import fstab_lines, generate_fstab
from stratum.config.mdadm import generate_mdadm_conf
from stratum.config.settings import InstallSettings, parse_bool
from stratum.core.exceptions import BootstrapFailure, ValidationError
from stratum.core.strategies import StrategyDispatcher
from stratum.core.target import build_context_record, render_context
from stratum.utils.command import CommandRunner, SimulationMode

from conftest import make_context, make_settings, sim_runner


def provisioned(runner=None, **overrides):
    context = make_context(make_settings(**overrides), runner or sim_runner())
    StrategyDispatcher(context).dispatch()
    return context


# --- Settings ---

def test_settings_from_environ():
    settings = InstallSettings.from_environ({
        "INSTALL_DISK": "/dev/nvme0n1",
        "PARTITIONING_STRATEGY": "luks+lvm",
        "SWAP": "No",
        "RAID_DEVICES": "/dev/sdb, /dev/sdc",
        "UNRELATED": "ignored",
    })
    assert settings.install_disk == "/dev/nvme0n1"
    assert settings.swap is False
    assert settings.raid_devices == ("/dev/sdb", "/dev/sdc")
    assert settings.luks_mapper_name == "cryptroot"


def test_environment_carries_downstream_keys():
    settings = InstallSettings.load(environ={
        "INSTALL_DISK": "/dev/sda",
        "LOCALE": "de_DE.UTF-8",
        "TIMEZONE": "Europe/Berlin",
        "HOME": "/root",
    })

    assert dict(settings.passthrough) == {"LOCALE": "de_DE.UTF-8", "TIMEZONE": "Europe/Berlin"}
    record = settings.export_record()
    assert record["LOCALE"] == "de_DE.UTF-8"
    assert "HOME" not in record


def test_file_overrides_environment(tmp_path):
    config = tmp_path / "install.json"
    config.write_text(json.dumps({"install_disk": "/dev/vda", "locale": "fr_FR.UTF-8", "separate_home": True}))

    settings = InstallSettings.load(str(config), environ={"INSTALL_DISK": "/dev/sda", "SWAP_SIZE": "8G"})

    assert settings.install_disk == "/dev/vda"
    assert settings.swap_size == "8G"
    assert settings.separate_home is True
    assert settings.passthrough["LOCALE"] == "fr_FR.UTF-8"


@pytest.mark.parametrize("content", ["not json", "[1, 2]"])
def test_invalid_config_file(tmp_path, content):
    config = tmp_path / "install.json"
    config.write_text(content)
    with pytest.raises(ValidationError):
        InstallSettings.load(str(config), environ={})


def test_parse_bool_rejects_unknown_words():
    assert parse_bool("Yes") is True
    with pytest.raises(ValidationError):
        parse_bool("maybe", "SWAP")


def test_export_record_leaves_out_secrets():
    record = make_settings(passthrough_key="x").export_record()
    assert "ENCRYPTION_PASSWORD" not in record
    assert "CONFIRM_WIPE" not in record
    assert record["SWAP"] == "no"
    assert record["PASSTHROUGH_KEY"] == "x"


def test_settings_repr_hides_passwords():
    assert "correct horse" not in repr(make_settings())


# --- fstab ---

def test_fstab_for_simple_layout():
    context = provisioned(swap="yes")
    lines = fstab_lines(context)
    root_uuid = context.registry.get("root").uuid
    efi_uuid = context.registry.get("efi").uuid
    swap_uuid = context.registry.get("swap").uuid

    assert lines[0] == f"UUID={root_uuid}\t/\text4\tdefaults,noatime,discard\t0\t1"
    assert lines[1] == f"UUID={efi_uuid}\t/boot\tvfat\tumask=0077,nodev,nosuid,noexec\t0\t0"
    assert lines[2] == f"UUID={swap_uuid}\tnone\tswap\tdefaults\t0\t0"


def test_fstab_lists_btrfs_subvolumes_without_fsck():
    context = provisioned(root_filesystem="btrfs")
    root_uuid = context.registry.get("root").uuid
    btrfs = [line.split("\t") for line in fstab_lines(context) if "\tbtrfs\t" in line]

    assert [fields[1] for fields in btrfs] == ["/", "/home", "/var", "/tmp", "/.snapshots"]
    assert all(fields[0] == f"UUID={root_uuid}" and fields[5] == "0" for fields in btrfs)


def test_fstab_requires_root(context):
    with pytest.raises(BootstrapFailure):
        generate_fstab(context)


def test_generate_fstab_returns_written_content():
    context = provisioned()
    content = generate_fstab(context)
    assert content.startswith("# /etc/fstab")
    assert content.count("UUID=") == 2


# --- crypttab ---

def test_crypttab_only_lists_containers_not_unlocked_by_kernel():
    context = provisioned(partitioning_strategy="luks", separate_home="yes")
    home = context.containers[1]
    assert crypttab_lines(context) == [f"crypthome\tUUID={home.uuid}\tnone\tluks"]
    assert generate_crypttab(context) is True


def test_no_crypttab_without_containers():
    assert generate_crypttab(provisioned()) is False


# --- mdadm.conf ---

def test_mdadm_conf_written_once():
    runner = sim_runner(disks=["/dev/sda", "/dev/sdb"])
    context = provisioned(runner=runner, partitioning_strategy="raid1", raid_devices="/dev/sdb")

    assert generate_mdadm_conf(context) is True
    assert generate_mdadm_conf(context) is False
    scans = [cmd for cmd in runner.executed("mdadm") if "--scan" in cmd]
    assert len(scans) == 1


def test_no_mdadm_conf_without_arrays():
    assert generate_mdadm_conf(provisioned()) is False


# --- kernel command line and hooks ---

def test_cmdline_for_luks_lvm():
    context = provisioned(partitioning_strategy="luks+lvm", swap="yes")
    root = context.registry.get("root").uuid
    luks = context.containers[0].uuid
    swap = context.registry.get("swap").uuid

    assert kernel_cmdline(context) == (
        f"root=UUID={root} rw cryptdevice=UUID={luks}:cryptroot rd.lvm.vg=vg0 resume=UUID={swap}"
    )
    hooks = initramfs_hooks(context)
    assert hooks.index("encrypt") < hooks.index("lvm2") < hooks.index("filesystems")
    assert "mdadm_udev" not in hooks


def test_cmdline_for_raid_btrfs():
    runner = sim_runner(disks=["/dev/sda", "/dev/sdb"])
    context = provisioned(runner=runner, partitioning_strategy="raid", raid_devices="/dev/sdb",
                          root_filesystem="btrfs")
    assert "rootflags=subvol=@" in kernel_cmdline(context)
    assert "mdadm_udev" in initramfs_hooks(context)


def test_cmdline_requires_root(context):
    with pytest.raises(BootstrapFailure):
        kernel_cmdline(context)


# --- in-target context artifact ---

def test_context_record_contents():
    context = provisioned(partitioning_strategy="luks", locale="fr_FR.UTF-8")
    record = build_context_record(context)

    assert record["ROOT_UUID"] == context.registry.get("root").uuid
    assert record["LUKS_DEVICE"] == "/dev/sda3"
    assert record["LOCALE"] == "fr_FR.UTF-8"
    assert record["KERNEL_CMDLINE"].startswith("root=UUID=")
    for secret in ("ENCRYPTION_PASSWORD", "CONFIRM_WIPE", "ROOT_PASSWORD", "MAIN_USER_PASSWORD"):
        assert secret not in record


def test_render_context_quotes_values():
    rendered = render_context({"SYSTEM_HOSTNAME": "box", "KERNEL_CMDLINE": "root=UUID=x rw"})
    assert rendered == "export KERNEL_CMDLINE='root=UUID=x rw'\nexport SYSTEM_HOSTNAME=box\n"


def test_write_target_file_applies_mode(tmp_path):
    runner = CommandRunner(SimulationMode.DISABLED, colored_output=False)
    path = tmp_path / "root" / "stratum-install.env"
    write_target_file(path, "export A=1\n", runner, mode=0o600)

    assert path.read_text() == "export A=1\n"
    assert path.stat().st_mode & 0o777 == 0o600
