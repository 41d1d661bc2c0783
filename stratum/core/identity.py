"""
Device identity registry.

Captures UUID and PARTUUID per logical role once the role's device exists,
and exposes them read-only to the boot-configuration generators.
"""
import logging
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional

from stratum.utils.command import CommandRunner
from stratum.utils.types import DeviceIdentity
from stratum.core.disk import is_block_device
from stratum.core.exceptions import DeviceNotReady, IdentityError

logger = logging.getLogger('stratum')


def read_blkid_value(device: str, tag: str, cmd_runner: CommandRunner) -> str:
    """
    Read one blkid tag of a device.

    Returns:
        The tag value, or an empty string when blkid has none
    """
    result = cmd_runner.run(["blkid", "-s", tag, "-o", "value", device], check=False)
    return result.stdout.strip()


class IdentityRegistry:
    """
    Write-once map of role to DeviceIdentity.

    Usage:
        registry.set("root", "/dev/sda2", cmd_runner)
        registry.get("root").uuid
    """
    def __init__(self):
        self._identities: Dict[str, DeviceIdentity] = {}

    def set(self, role: str, device: str, cmd_runner: CommandRunner,
            gpt_backed: bool = True) -> DeviceIdentity:
        """
        Capture the identity of a role's device.

        Args:
            role: Logical role (root, efi, boot, home, swap, luks, ...)
            device: Device whose filesystem or header already exists
            cmd_runner: CommandRunner instance for executing commands
            gpt_backed: Whether a PARTUUID should be read as well

        Returns:
            The captured DeviceIdentity

        Raises:
            IdentityError: If the role is already written or blkid returns no UUID
            DeviceNotReady: If the device is not a block device
        """
        if role in self._identities:
            raise IdentityError(
                f"Identity for role '{role}' is already set to {self._identities[role].device}"
            )
        if not is_block_device(device, cmd_runner):
            raise DeviceNotReady(f"Cannot capture identity of {role}: {device} is not a block device")

        uuid = read_blkid_value(device, "UUID", cmd_runner)
        if not uuid:
            raise IdentityError(f"No UUID found on {device} for role '{role}'")

        partuuid: Optional[str] = None
        if gpt_backed:
            partuuid = read_blkid_value(device, "PARTUUID", cmd_runner) or None

        identity = DeviceIdentity(role=role, device=device, uuid=uuid, partuuid=partuuid)
        self._identities[role] = identity
        logger.info(f"Captured {role} identity: UUID={uuid}" + (f" PARTUUID={partuuid}" if partuuid else ""))
        return identity

    def get(self, role: str) -> DeviceIdentity:
        """
        Raises:
            IdentityError: If the role was never written
        """
        try:
            return self._identities[role]
        except KeyError:
            raise IdentityError(f"No identity recorded for role '{role}'") from None

    def __contains__(self, role: str) -> bool:
        return role in self._identities

    def __iter__(self) -> Iterator[str]:
        return iter(self._identities)

    def __len__(self) -> int:
        return len(self._identities)

    def roles(self):
        return list(self._identities)

    def as_mapping(self) -> Mapping[str, DeviceIdentity]:
        """Read-only view of every captured identity."""
        return MappingProxyType(self._identities)

    def export_record(self) -> Dict[str, str]:
        """
        Flatten identities into ``<ROLE>_UUID``/``_PARTUUID``/``_DEVICE`` keys.
        """
        record: Dict[str, str] = {}
        for role, identity in self._identities.items():
            prefix = role.upper().replace("-", "_")
            record[f"{prefix}_UUID"] = identity.uuid
            record[f"{prefix}_PARTUUID"] = identity.partuuid or ""
            record[f"{prefix}_DEVICE"] = identity.device
        return record
