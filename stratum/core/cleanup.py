"""
Teardown of partially provisioned storage.

The CleanupHandler is installed once per run. Interrupt and termination
signals only flag an abort on the command runner; the next command start
raises InstallAborted, the run unwinds and the handler releases everything
the context recorded: swap and mounts (deepest first), volume groups,
encryption mappings and RAID arrays.
"""
import atexit
import logging
import signal
from typing import Any, Callable, Dict, List

from stratum.utils.format import TermColors, colorize
from stratum.core.context import ProvisionContext
from stratum.core.encryption import close_container
from stratum.core.lvm import deactivate_volume_group
from stratum.core.raid import stop_array

logger = logging.getLogger('stratum')

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CleanupHandler:
    """
    Best-effort, idempotent teardown bound to one ProvisionContext.

    Usage:
        with CleanupHandler(context) as cleanup:
            ...
            cleanup.mark_success()
    """
    def __init__(self, context: ProvisionContext):
        self.context = context
        self.succeeded = False
        self._installed = False
        self._previous_handlers: Dict[int, Any] = {}

    def install(self) -> None:
        """Install signal handlers and the exit hook."""
        if self._installed:
            return
        for signum in HANDLED_SIGNALS:
            try:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
            except ValueError:
                # Signal handlers can only be set from the main thread
                logger.debug(f"Cannot install handler for signal {signum} outside the main thread")
        atexit.register(self.trigger)
        self._installed = True

    def uninstall(self) -> None:
        """Restore the previous signal handlers and drop the exit hook."""
        if not self._installed:
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
        atexit.unregister(self.trigger)
        self._installed = False

    def __enter__(self) -> "CleanupHandler":
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is not None:
                self.trigger()
        finally:
            self.uninstall()
        return False

    def _handle_signal(self, signum: int, frame: Any) -> None:
        logger.warning(colorize(
            f"Received signal {signum}, aborting after the current operation",
            TermColors.WARNING, self.context.cmd_runner.colored_output))
        self.context.cmd_runner.request_abort(signum)

    def mark_success(self) -> None:
        self.succeeded = True

    def trigger(self) -> List[str]:
        """
        Run teardown unless the run already succeeded. Never raises.

        Returns:
            Descriptions of the steps that failed
        """
        if self.succeeded:
            return []
        return self.teardown()

    def teardown(self) -> List[str]:
        """
        Release every recorded resource, continuing past failures. Never raises.

        Returns:
            Descriptions of the steps that failed
        """
        context = self.context
        failures: List[str] = []

        if not (context.mounts.mounts or context.mounts.swaps or context.active_volume_groups
                or context.open_mappings or context.assembled_arrays):
            return failures

        logger.info(colorize("Releasing storage resources", TermColors.WARNING, context.cmd_runner.colored_output))

        self._step("unmount target hierarchy", context.mounts.release_all, failures)

        for name in list(reversed(context.active_volume_groups)):
            self._step(f"deactivate volume group {name}",
                       lambda: deactivate_volume_group(name, context.cmd_runner), failures)
            context.active_volume_groups.remove(name)

        for name in list(reversed(context.open_mappings)):
            self._step(f"close mapping {name}",
                       lambda: close_container(name, context.cmd_runner), failures)
            context.open_mappings.remove(name)

        for path in list(reversed(context.assembled_arrays)):
            self._step(f"stop array {path}",
                       lambda: stop_array(path, context.cmd_runner), failures)
            context.assembled_arrays.remove(path)

        if failures:
            logger.warning(f"Teardown finished with {len(failures)} failed step(s): {', '.join(failures)}")
        else:
            logger.info("Teardown finished")
        return failures

    @staticmethod
    def _step(description: str, action: Callable[[], Any], failures: List[str]) -> None:
        """Run one teardown step, logging instead of raising."""
        try:
            outcome = action()
        except Exception as e:
            logger.warning(f"Teardown step '{description}' failed: {e}")
            failures.append(description)
            return
        if outcome is False:
            failures.append(description)
        elif isinstance(outcome, list):
            failures.extend(outcome)
