"""
Tests for the install phase coordinator and the command-line entry point.
"""
import pytest

from stratum.cli import main
from stratum.core.exceptions import BootstrapFailure, ConfirmationMissing, InstallAborted, ValidationError
from stratum.core.phases import InstallCoordinator, Phase

from conftest import (
    BASE_CONFIG, FailingRunner, InterruptingRunner, MissingToolRunner, make_context, make_settings, sim_runner
)


def run_install(runner=None, **overrides):
    context = make_context(make_settings(**overrides), runner or sim_runner())
    coordinator = InstallCoordinator(context)
    return coordinator, coordinator.run()


def test_simulated_install_completes():
    coordinator, result = run_install(partitioning_strategy="luks+lvm", swap="yes")
    runner = coordinator.cmd_runner

    assert result.succeeded
    assert result.exit_code == 0
    assert coordinator.phase == Phase.COMPLETE
    assert runner.executed("pacstrap")[0][:3] == ["pacstrap", "-K", "/mnt/target"]
    assert {"cryptsetup", "lvm2"} <= set(runner.executed("pacstrap")[0])
    # Finalize releases the target
    assert ["umount", "/mnt/target"] in runner.executed("umount")
    assert ["cryptsetup", "close", "cryptroot"] in runner.executed("cryptsetup")


def test_secrets_never_appear_in_argv():
    coordinator, result = run_install(partitioning_strategy="luks")
    assert result.succeeded
    for cmd in coordinator.cmd_runner.executed():
        joined = " ".join(cmd)
        for secret in ("alice-secret", "root-secret", "correct horse"):
            assert secret not in joined


def test_keep_mounted_leaves_target_mounted():
    coordinator, result = run_install(keep_mounted="yes")
    assert result.succeeded
    assert coordinator.cmd_runner.executed("umount") == []
    assert coordinator.context.mounts.root_mounted


def test_phases_run_in_order():
    coordinator, _ = run_install()
    assert [phase for phase, _ in coordinator.phases()] == [
        Phase.VALIDATE, Phase.PREPARE, Phase.DEPENDENCY_CHECK, Phase.PROVISION_STORAGE,
        Phase.BASE_BOOTSTRAP, Phase.MOUNT_TABLE, Phase.IN_TARGET_CONFIGURE, Phase.FINALIZE,
    ]


def test_coordinator_is_single_use():
    coordinator, _ = run_install()
    with pytest.raises(Exception, match="only run once"):
        coordinator.run()


@pytest.mark.parametrize("overrides, error", [
    ({"system_hostname": ""}, ValidationError),
    ({"main_username": "bad user"}, ValidationError),
    ({"main_username": "-o"}, ValidationError),
    ({"main_username": "-rf"}, ValidationError),
    ({"main_username": "123"}, ValidationError),
    ({"main_username": "Alice"}, ValidationError),
    ({"main_username": "a" * 33}, ValidationError),
    ({"system_hostname": "-bad-"}, ValidationError),
    ({"partitioning_strategy": "luks", "encryption_password": ""}, ValidationError),
    ({"boot_mode": "bios"}, ValidationError),
    ({"root_filesystem": "ntfs"}, ValidationError),
    ({"swap_size": "big"}, ValidationError),
    ({"confirm_wipe": ""}, ConfirmationMissing),
])
def test_validation_failures_stop_before_any_change(overrides, error):
    coordinator, result = run_install(**overrides)

    assert result.failed_phase == Phase.VALIDATE
    assert result.exit_code == 1
    assert isinstance(result.error, error)
    assert coordinator.cmd_runner.executed() == []


def test_missing_fields_are_named():
    _, result = run_install(main_user_password="", root_password="")
    assert "MAIN_USER_PASSWORD" in str(result.error)
    assert "ROOT_PASSWORD" in str(result.error)


def test_failure_after_provisioning_triggers_cleanup():
    runner = FailingRunner(lambda cmd: cmd[0] == "pacstrap")
    runner.set_simulation_params({"disks": ["/dev/sda"]})
    coordinator, result = run_install(runner=runner, partitioning_strategy="luks")

    assert result.failed_phase == Phase.BASE_BOOTSTRAP
    assert result.exit_code == 1
    assert isinstance(result.error, BootstrapFailure)
    assert ["umount", "/mnt/target"] in runner.executed("umount")
    assert ["cryptsetup", "close", "cryptroot"] in runner.executed("cryptsetup")


def test_advisories_do_not_fail_the_run(caplog):
    runner = FailingRunner(lambda cmd: cmd[0] in ("reflector", "timedatectl"))
    runner.set_simulation_params({"disks": ["/dev/sda"]})
    _, result = run_install(runner=runner)

    assert result.succeeded
    assert caplog.text.count("ADVISORY") >= 2


@pytest.mark.parametrize("username", ["alice", "_svc", "build-bot", "user_01"])
def test_valid_usernames_pass_validation(username):
    _, result = run_install(main_username=username)
    assert result.succeeded


def test_missing_timedatectl_is_advisory(caplog):
    runner = MissingToolRunner(["timedatectl", "reflector"])
    runner.set_simulation_params({"disks": ["/dev/sda"]})
    _, result = run_install(runner=runner)

    assert result.succeeded
    assert "Time synchronisation unavailable" in caplog.text


# --- Scenario E ---

def test_interrupt_during_provisioning_unwinds_everything():
    runner = InterruptingRunner(lambda cmd: cmd[0] == "mount" and cmd[-1] == "/mnt/target")
    runner.set_simulation_params({"disks": ["/dev/sda", "/dev/sdb"]})
    coordinator, result = run_install(runner=runner, partitioning_strategy="raid+luks", raid_devices="/dev/sdb")

    assert result.exit_code == 130
    assert result.failed_phase == Phase.PROVISION_STORAGE
    assert isinstance(result.error, InstallAborted)

    executed = runner.executed()
    teardown = executed[executed.index(["umount", "/mnt/target"]):]
    assert teardown == [
        ["umount", "/mnt/target"],
        ["cryptsetup", "close", "cryptroot"],
        ["mdadm", "--stop", "/dev/md/data"],
        ["mdadm", "--stop", "/dev/md/boot"],
    ]
    context = coordinator.context
    assert context.mounts.mounts == []
    assert context.open_mappings == [] and context.assembled_arrays == []


# --- CLI ---

@pytest.fixture
def install_environ(monkeypatch):
    for key, value in BASE_CONFIG.items():
        monkeypatch.setenv(key, value)
    return monkeypatch


def test_cli_simulation_succeeds(install_environ, tmp_path, capsys):
    code = main(["--simulate", "--no-color", "--log-file", str(tmp_path / "install.log")])
    assert code == 0
    assert "SIMULATION COMPLETE" in capsys.readouterr().out


def test_cli_reports_validation_failure(install_environ, tmp_path):
    install_environ.setenv("CONFIRM_WIPE", "no")
    assert main(["--simulate", "--no-color", "--log-file", str(tmp_path / "install.log")]) == 1


def test_cli_rejects_unreadable_config(install_environ, tmp_path):
    code = main(["--simulate", "--config", str(tmp_path / "missing.json"),
                 "--log-file", str(tmp_path / "install.log")])
    assert code == 1
