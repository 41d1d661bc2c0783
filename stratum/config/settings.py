"""
Installation settings.

This module turns the flat key/value configuration record into a frozen
``InstallSettings`` object. Values come from the environment and may be
overridden by a JSON file whose keys are the lowercase variable names.
"""
import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from stratum.core.exceptions import ValidationError
from stratum.utils.types import Passphrase

logger = logging.getLogger('stratum')

# Exact value CONFIRM_WIPE must carry before anything is erased
CONFIRMATION_TOKEN = "yes"
CONFIRMATION_VARIABLE = "CONFIRM_WIPE"

DEFAULT_TARGET = "/mnt"

_TRUE_VALUES = ("yes", "y", "true", "on", "1")
_FALSE_VALUES = ("no", "n", "false", "off", "0", "")

# Keys never exported to the in-target context
SECRET_KEYS = ("ENCRYPTION_PASSWORD", "CONFIRM_WIPE")

# Downstream environment keys carried through untouched to the in-target context
DOWNSTREAM_KEYS = (
    "LOCALE", "KEYMAP", "TIMEZONE", "TIMEZONE_REGION", "TIME_SYNC",
    "DESKTOP_ENVIRONMENT", "DISPLAY_MANAGER", "GPU_DRIVERS",
    "BASE_PACKAGES", "ADDITIONAL_PACKAGES", "ADDITIONAL_AUR_PACKAGES", "AUR_HELPER",
    "MULTILIB", "FLATPAK", "PLYMOUTH", "PLYMOUTH_THEME", "GRUB_THEME", "NUMLOCK_ON_BOOT",
)


def parse_bool(value: Any, key: str = "value") -> bool:
    """
    Interpret a Yes/No style configuration value.

    Raises:
        ValidationError: If the value is not a recognised boolean word
    """
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValidationError(f"{key} must be yes or no, got '{value}'")


@dataclass(frozen=True)
class InstallSettings:
    """Resolved configuration for one installation run"""
    install_disk: str = ""
    partitioning_strategy: str = ""
    boot_mode: str = "auto"
    root_filesystem: str = "ext4"
    home_filesystem: str = "ext4"
    swap: bool = True
    swap_size: str = "2G"
    separate_home: bool = False
    root_size: str = "100G"
    # Wiped once storage provisioning has opened every container
    encryption_password: Passphrase = field(default_factory=lambda: Passphrase(""), repr=False, compare=False)
    luks_mapper_name: str = "cryptroot"
    volume_group: str = "vg0"
    raid_devices: Tuple[str, ...] = ()
    main_username: str = ""
    main_user_password: str = field(default="", repr=False)
    root_password: str = field(default="", repr=False)
    system_hostname: str = ""
    target_root: str = DEFAULT_TARGET
    confirm_wipe: str = ""
    wipe_method: str = "auto"
    kernel: str = "linux"
    bootloader: str = "grub"
    chroot_script: str = ""
    skip_disk_health: bool = False
    keep_mounted: bool = False
    mirror_country: str = ""
    # Downstream keys this package does not interpret
    passthrough: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}), repr=False)

    @classmethod
    def known_keys(cls) -> Tuple[str, ...]:
        return tuple(f.name.upper() for f in fields(cls) if f.name != "passthrough")

    @classmethod
    def from_mapping(cls, record: Mapping[str, Any]) -> "InstallSettings":
        """
        Build settings from a flat record with upper- or lowercase keys.

        Args:
            record: Key/value configuration record

        Returns:
            Frozen InstallSettings

        Raises:
            ValidationError: If a value cannot be interpreted
        """
        known = set(cls.known_keys())
        values: Dict[str, Any] = {}
        passthrough: Dict[str, str] = {}

        for raw_key, raw_value in record.items():
            key = str(raw_key).upper()
            if key not in known:
                passthrough[key] = "" if raw_value is None else str(raw_value)
                continue
            name = key.lower()
            if name in ("swap", "separate_home", "skip_disk_health", "keep_mounted"):
                values[name] = parse_bool(raw_value, key)
            elif name == "raid_devices":
                values[name] = _parse_device_list(raw_value)
            elif name == "encryption_password":
                values[name] = raw_value if isinstance(raw_value, Passphrase) else Passphrase(
                    "" if raw_value is None else str(raw_value))
            else:
                values[name] = "" if raw_value is None else str(raw_value).strip()

        values["passthrough"] = MappingProxyType(passthrough)
        return cls(**values)

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> "InstallSettings":
        """Build settings from the known and downstream keys present in the environment."""
        return cls.from_mapping(cls._environ_record(environ))

    @classmethod
    def _environ_record(cls, environ: Optional[Mapping[str, str]]) -> Dict[str, Any]:
        environ = os.environ if environ is None else environ
        wanted = cls.known_keys() + DOWNSTREAM_KEYS
        return {key: environ[key] for key in wanted if key in environ}

    @classmethod
    def load(cls, config_file: Optional[str] = None,
             environ: Optional[Mapping[str, str]] = None) -> "InstallSettings":
        """
        Load settings from the environment, overridden by an optional JSON file.

        Raises:
            ValidationError: If the file cannot be read or is not a JSON object
        """
        record = cls._environ_record(environ)

        if config_file:
            try:
                with open(config_file, "r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except OSError as e:
                raise ValidationError(f"Cannot read configuration file {config_file}: {e}")
            except json.JSONDecodeError as e:
                raise ValidationError(f"Invalid JSON in configuration file {config_file}: {e}")
            if not isinstance(data, dict):
                raise ValidationError(f"Configuration file {config_file} must contain a JSON object")
            logger.info(f"Loaded configuration from {config_file}")
            for key, value in data.items():
                record[str(key).upper()] = value

        return cls.from_mapping(record)

    def with_overrides(self, **changes: Any) -> "InstallSettings":
        return replace(self, **changes)

    @property
    def confirmed(self) -> bool:
        return self.confirm_wipe == CONFIRMATION_TOKEN

    def export_record(self) -> Dict[str, str]:
        """
        Flatten the settings for the in-target context.

        Secrets used only by storage provisioning are left out.
        """
        record: Dict[str, str] = dict(self.passthrough)
        for f in fields(self):
            if f.name == "passthrough":
                continue
            key = f.name.upper()
            if key in SECRET_KEYS:
                continue
            value = getattr(self, f.name)
            if isinstance(value, bool):
                record[key] = "yes" if value else "no"
            elif isinstance(value, tuple):
                record[key] = " ".join(value)
            else:
                record[key] = str(value)
        return record


def _parse_device_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(item).strip() for item in value if str(item).strip())
    return tuple(part for part in str(value).replace(",", " ").split() if part)
