"""
Safety gate for destructive operations.

Every irreversible call (wipe, table rewrite, array creation over existing
members) asks the gate first. The gate checks the confirmation token and
canonicalizes the device path against the node names we expect to erase.
"""
import os
import re
import logging

from stratum.config.settings import CONFIRMATION_TOKEN, CONFIRMATION_VARIABLE
from stratum.core.exceptions import ConfirmationMissing, UnsafeDevicePath

logger = logging.getLogger('stratum')

ALLOWED_DEVICE_RE = re.compile(
    r"^/dev/("
    r"(sd|vd|xvd|hd)[a-z]+\d*"
    r"|nvme\d+n\d+(p\d+)?"
    r"|mmcblk\d+(p\d+)?"
    r"|loop\d+(p\d+)?"
    r"|md\d+(p\d+)?"
    r"|md/[A-Za-z0-9_.-]+"
    r"|dm-\d+"
    r"|mapper/[A-Za-z0-9_.+-]+"
    r")$"
)


class SafetyGate:
    """
    Gatekeeper consulted before each destructive call.

    The gate holds no lock; it is checked once per call.
    """
    def __init__(self, confirmation: str):
        self._confirmation = confirmation

    @property
    def confirmed(self) -> bool:
        return self._confirmation == CONFIRMATION_TOKEN

    def require_confirmation(self, action: str) -> None:
        """
        Raises:
            ConfirmationMissing: If the confirmation token is not exactly right
        """
        if not self.confirmed:
            raise ConfirmationMissing(
                f"Refusing to {action}: destructive operations require "
                f"{CONFIRMATION_VARIABLE}={CONFIRMATION_TOKEN}"
            )

    def canonical_device(self, path: str) -> str:
        """
        Resolve symlinks and check the node name against the allow-list.

        Returns:
            Canonical device path

        Raises:
            UnsafeDevicePath: If the resolved path is not an expected node name
        """
        canonical = os.path.realpath(path)
        if not ALLOWED_DEVICE_RE.match(canonical):
            raise UnsafeDevicePath(
                f"Refusing to operate on {path} (resolves to {canonical}): "
                "not a recognised disk, partition, array or mapping node"
            )
        if canonical != path:
            logger.debug(f"{path} resolves to {canonical}")
        return canonical

    def authorize(self, action: str, path: str) -> str:
        """
        Authorize one destructive call against one device.

        Args:
            action: Human readable description of the operation
            path: Device the operation targets

        Returns:
            Canonical device path to pass to the tool

        Raises:
            ConfirmationMissing: If the confirmation token is absent or wrong
            UnsafeDevicePath: If the device path is not allowed
        """
        self.require_confirmation(f"{action} {path}")
        canonical = self.canonical_device(path)
        logger.debug(f"Authorized: {action} {canonical}")
        return canonical
