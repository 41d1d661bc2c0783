"""
Tests for the declarative LVM layout.
"""
import pytest

from stratum.core.exceptions import LvmFailure
from stratum.core.lvm import (
    REMAINING, create_logical_volume, create_volume_group, default_layout, lv_size_args, select_layout
)
from stratum.utils.types import LogicalVolumeSpec

from conftest import FailingRunner


def layout():
    return default_layout("2G", "50G", "ext4", "xfs")


def test_all_features_keep_table_order():
    selected = select_layout(layout(), ["swap", "home"])
    assert [spec.name for spec in selected] == ["swap", "root", "home"]
    assert selected[-1].size == REMAINING


def test_unwanted_roles_are_skipped_and_root_grows():
    selected = select_layout(layout(), [])
    assert [spec.name for spec in selected] == ["root"]
    assert selected[0].size == REMAINING


def test_swap_without_home():
    selected = select_layout(layout(), ["swap"])
    assert [(spec.name, spec.size) for spec in selected] == [("swap", "2G"), ("root", REMAINING)]


def test_remaining_must_be_last():
    bad = [LogicalVolumeSpec("data", REMAINING, "/srv", "ext4"), LogicalVolumeSpec("root", "10G", "/", "ext4")]
    with pytest.raises(LvmFailure):
        select_layout(bad, [])


@pytest.mark.parametrize("size, expected", [
    ("100%FREE", ["-l", "100%FREE"]),
    ("2G", ["-L", "2048M"]),
    ("512M", ["-L", "512M"]),
    ("1GB", ["-L", "953M"]),
])
def test_lv_size_args(size, expected):
    assert lv_size_args(size) == expected


def test_lv_size_args_rejects_garbage():
    with pytest.raises(LvmFailure):
        lv_size_args("lots")


def test_volume_group_records_itself_before_volumes(runner):
    created = []
    vg = create_volume_group("vg0", "/dev/mapper/cryptroot", runner, on_created=created.append)
    volume = create_logical_volume(vg, LogicalVolumeSpec("root", "20G", "/", "ext4"), runner)

    assert created == ["vg0"]
    assert volume.path == "/dev/vg0/root"
    assert vg.volumes == [volume]
    assert runner.executed("pvcreate") == [["pvcreate", "-ff", "-y", "/dev/mapper/cryptroot"]]
    assert runner.executed("lvcreate") == [["lvcreate", "-y", "-n", "root", "-L", "20480M", "vg0"]]


def test_vgcreate_failure_is_lvm_failure():
    runner = FailingRunner(lambda cmd: cmd[0] == "vgcreate")
    created = []
    with pytest.raises(LvmFailure):
        create_volume_group("vg0", "/dev/sda2", runner, on_created=created.append)
    assert created == []
