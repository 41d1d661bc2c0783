"""
Tests for RAID member validation and array assembly.
"""
import pytest

from stratum.core.exceptions import InsufficientDisks, RaidAssemblyFailure, ValidationError
from stratum.core.raid import create_array, default_raid_level, scan_arrays, validate_raid_disks
from stratum.core.safety import SafetyGate
from stratum.utils.types import DiskTarget

from conftest import FailingRunner

GIB = 1024 ** 3


def disks(*sizes_gib, sector_size=512):
    return [DiskTarget(path=f"/dev/sd{chr(ord('a') + i)}", size_bytes=size * GIB, sector_size=sector_size)
            for i, size in enumerate(sizes_gib)]


@pytest.mark.parametrize("count, level", [(2, 1), (3, 5), (4, 5)])
def test_default_level(count, level):
    assert default_raid_level(count) == level


@pytest.mark.parametrize("level, count", [(1, 1), (5, 2), (6, 3), (10, 3), (0, 1)])
def test_too_few_members(runner, level, count):
    with pytest.raises(InsufficientDisks):
        validate_raid_disks(disks(*[100] * count), level, runner)


def test_unsupported_level(runner):
    with pytest.raises(ValidationError):
        validate_raid_disks(disks(100, 100, 100), 4, runner)


def test_sector_sizes_must_match(runner):
    members = disks(100, 100)
    members[1] = DiskTarget(path="/dev/sdb", size_bytes=100 * GIB, sector_size=4096)
    with pytest.raises(ValidationError, match="sector size"):
        validate_raid_disks(members, 1, runner)


def test_capacity_mismatch_is_advisory(runner, caplog):
    validate_raid_disks(disks(100, 200), 1, runner)
    assert "ADVISORY" in caplog.text


def test_create_array_tracks_and_returns(runner):
    tracked = []
    array = create_array("data", 1, ["/dev/sda3", "/dev/sdb3"], SafetyGate("yes"), runner, on_assembled=tracked.append)

    assert array.path == "/dev/md/data"
    assert array.members == ("/dev/sda3", "/dev/sdb3")
    assert tracked == ["/dev/md/data"]
    create = [cmd for cmd in runner.executed("mdadm") if "--create" in cmd]
    assert create == [[
        "mdadm", "--create", "/dev/md/data", "--run", "--verbose",
        "--level=1", "--raid-devices=2", "--metadata=1.2", "/dev/sda3", "/dev/sdb3",
    ]]


def test_failed_create_is_not_tracked():
    runner = FailingRunner(lambda cmd: "--create" in cmd)
    tracked = []
    with pytest.raises(RaidAssemblyFailure):
        create_array("data", 1, ["/dev/sda3", "/dev/sdb3"], SafetyGate("yes"), runner, on_assembled=tracked.append)
    assert tracked == []


def test_scan_lists_created_arrays(runner):
    create_array("boot", 1, ["/dev/sda2", "/dev/sdb2"], SafetyGate("yes"), runner)
    scan = scan_arrays(runner)
    assert scan.startswith("ARRAY /dev/md/boot metadata=1.2")
