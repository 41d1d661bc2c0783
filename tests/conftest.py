import os
import subprocess
from typing import Callable, List, Optional

import pytest

from stratum.config.settings import InstallSettings
from stratum.core.context import ProvisionContext
from stratum.core.disk import detect_boot_mode
from stratum.utils.command import CommandRunner, SimulationMode


BASE_CONFIG = {
    "INSTALL_DISK": "/dev/sda",
    "PARTITIONING_STRATEGY": "simple",
    "CONFIRM_WIPE": "yes",
    "SWAP": "no",
    "SEPARATE_HOME": "no",
    "ENCRYPTION_PASSWORD": "correct horse battery staple",
    "MAIN_USERNAME": "alice",
    "MAIN_USER_PASSWORD": "alice-secret",
    "ROOT_PASSWORD": "root-secret",
    "SYSTEM_HOSTNAME": "stratum-test",
    "TARGET_ROOT": "/mnt/target",
    "SKIP_DISK_HEALTH": "yes",
    "KEEP_MOUNTED": "no",
}


class FailingRunner(CommandRunner):
    """
    Simulation runner that fails commands matching a predicate.

    Checked calls raise CalledProcessError, unchecked calls return status 1.
    """
    def __init__(self, fail_on: Callable[[List[str]], bool]):
        super().__init__(SimulationMode.SIMULATE, colored_output=False)
        self.fail_on = fail_on

    def _simulate_command(self, cmd, check=True, **kwargs):
        if self.fail_on(cmd):
            if check:
                raise subprocess.CalledProcessError(1, cmd, output="", stderr="injected failure")
            return subprocess.CompletedProcess(args=cmd, returncode=1, stdout="", stderr="injected failure")
        return super()._simulate_command(cmd, check, **kwargs)


class MissingToolRunner(CommandRunner):
    """Simulation runner on a system where some tools are not installed."""
    def __init__(self, missing: List[str]):
        super().__init__(SimulationMode.SIMULATE, colored_output=False)
        self.missing = missing

    def _simulate_command(self, cmd, check=True, **kwargs):
        if os.path.basename(cmd[0]) in self.missing:
            raise FileNotFoundError(2, "No such file or directory", cmd[0])
        return super()._simulate_command(cmd, check, **kwargs)


class InterruptingRunner(CommandRunner):
    """
    Simulation runner that receives SIGINT while a matching command runs.

    The matching command completes; the next command start aborts.
    """
    def __init__(self, interrupt_on: Callable[[List[str]], bool]):
        super().__init__(SimulationMode.SIMULATE, colored_output=False)
        self.interrupt_on = interrupt_on

    def _simulate_command(self, cmd, check=True, **kwargs):
        result = super()._simulate_command(cmd, check, **kwargs)
        if self.abort_requested is None and self.interrupt_on(cmd):
            self.request_abort(2)
        return result


def sim_runner(disks: Optional[List[str]] = None, **params) -> CommandRunner:
    runner = CommandRunner(SimulationMode.SIMULATE, colored_output=False)
    runner.set_simulation_params({"disks": disks or ["/dev/sda"], **params})
    return runner


def make_settings(**overrides) -> InstallSettings:
    record = dict(BASE_CONFIG)
    record.update({key.upper(): value for key, value in overrides.items()})
    return InstallSettings.from_mapping(record)


def make_context(settings: InstallSettings, runner: CommandRunner) -> ProvisionContext:
    context = ProvisionContext.create(settings, runner)
    context.boot_mode = detect_boot_mode(runner)
    return context


@pytest.fixture
def runner() -> CommandRunner:
    return sim_runner()


@pytest.fixture
def settings() -> InstallSettings:
    return make_settings()


@pytest.fixture
def context(settings, runner) -> ProvisionContext:
    return make_context(settings, runner)
