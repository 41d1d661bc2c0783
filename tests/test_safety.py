"""
Tests for the destructive-operation safety gate.
"""
import pytest

from stratum.core.exceptions import ConfirmationMissing, UnsafeDevicePath
from stratum.core.partition import wipe_disk
from stratum.core.safety import SafetyGate
from stratum.utils.types import DiskTarget


@pytest.mark.parametrize("token", ["", "no", "YES", "y", "true", " yes"])
def test_only_exact_token_confirms(token):
    assert not SafetyGate(token).confirmed


def test_refusal_names_the_token():
    with pytest.raises(ConfirmationMissing, match="CONFIRM_WIPE=yes"):
        SafetyGate("").authorize("wipe", "/dev/sda")


@pytest.mark.parametrize("path", [
    "/dev/sda", "/dev/sdb3", "/dev/vda", "/dev/nvme0n1", "/dev/nvme0n1p2",
    "/dev/mmcblk0p1", "/dev/md/data", "/dev/md127", "/dev/mapper/cryptroot",
])
def test_expected_nodes_are_allowed(path):
    assert SafetyGate("yes").authorize("wipe", path) == path


@pytest.mark.parametrize("path", ["/etc/passwd", "/dev/null", "/tmp/disk.img", "/dev/sda; rm -rf /", "sda"])
def test_unexpected_paths_are_refused(path):
    with pytest.raises(UnsafeDevicePath):
        SafetyGate("yes").canonical_device(path)


def test_symlinks_are_resolved_before_checking(tmp_path):
    link = tmp_path / "disk"
    link.symlink_to("/etc/hostname")
    with pytest.raises(UnsafeDevicePath, match="resolves to"):
        SafetyGate("yes").canonical_device(str(link))


def test_missing_confirmation_invokes_no_wipe_tool(runner):
    disk = DiskTarget(path="/dev/sda", size_bytes=500 * 1024 ** 3)
    with pytest.raises(ConfirmationMissing):
        wipe_disk(disk, SafetyGate(""), runner)
    for tool in ("wipefs", "blkdiscard", "dd", "sfdisk"):
        assert runner.executed(tool) == []
