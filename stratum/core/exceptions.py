"""
Base exceptions for stratum.

This module defines the hierarchy of exceptions used by stratum. Every class
here is fatal to an installation run; advisory conditions are only logged.
"""
from typing import Optional


class StratumError(Exception):
    """Base exception for stratum errors"""
    pass


class ValidationError(StratumError):
    """Exception raised when configuration or hardware validation fails"""
    pass


class UnknownScheme(StratumError):
    """Exception raised when a scheme tag does not name a known strategy"""
    pass


class InsufficientDisks(StratumError):
    """Exception raised when a RAID scheme has fewer disks than it needs"""
    pass


class DeviceNotReady(StratumError):
    """Exception raised when a device node does not appear in time or is not a block device"""
    pass


class PartitioningError(StratumError):
    """Exception raised when the partition table cannot be written"""
    pass


class FormatFailure(StratumError):
    """Exception raised when there's an error creating a filesystem"""
    pass


class EncryptionFailure(StratumError):
    """Exception raised when there's an error in encryption setup"""
    pass


class RaidAssemblyFailure(StratumError):
    """Exception raised when a RAID array cannot be assembled"""
    pass


class LvmFailure(StratumError):
    """Exception raised when there's an error in LVM setup"""
    pass


class MountFailure(StratumError):
    """Exception raised when there's an error in mounting"""
    pass


class ConfirmationMissing(StratumError):
    """Exception raised when a destructive call lacks the affirmative confirmation token"""
    pass


class UnsafeDevicePath(StratumError):
    """Exception raised when a destructive call targets an unexpected device node"""
    pass


class IdentityError(StratumError):
    """Exception raised when the device identity registry contract is violated"""
    pass


class BootstrapFailure(StratumError):
    """Exception raised when bootstrapping or configuring the target fails"""
    pass


class InstallAborted(StratumError):
    """Exception raised once an interrupt or termination signal has been received"""

    def __init__(self, signum: Optional[int] = None, message: Optional[str] = None):
        self.signum = signum
        super().__init__(message or f"Installation aborted by signal {signum}")
