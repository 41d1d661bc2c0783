"""
Storage scheme catalogue.

A scheme tag such as ``luks+lvm``, ``auto_raid_luks`` or ``lvm_raid5`` is
parsed into a closed set of base strategies plus an optional RAID level.
"""
import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from stratum.utils.types import BootMode
from stratum.core.exceptions import UnknownScheme

logger = logging.getLogger('stratum')

SUPPORTED_RAID_LEVELS = (0, 1, 5, 6, 10)

_RAID_SUFFIX_RE = re.compile(r"^(?P<base>.*?)(?:^|[_:+-])raid(?P<level>\d+)$")
_SEPARATORS_RE = re.compile(r"[_+\-]")


class BaseStrategy(Enum):
    """Every provisioning routine the dispatcher knows"""
    SIMPLE = "simple"
    LUKS = "luks"
    LVM = "lvm"
    LUKS_LVM = "luks+lvm"
    RAID = "raid"
    RAID_LUKS = "raid+luks"
    RAID_LVM = "raid+lvm"
    RAID_LVM_LUKS = "raid+lvm+luks"

    @property
    def layers(self) -> FrozenSet[str]:
        return frozenset(self.value.split("+")) - {"simple"}

    @property
    def uses_raid(self) -> bool:
        return "raid" in self.layers

    @property
    def uses_luks(self) -> bool:
        return "luks" in self.layers

    @property
    def uses_lvm(self) -> bool:
        return "lvm" in self.layers


_BY_LAYERS = {strategy.layers: strategy for strategy in BaseStrategy}


@dataclass(frozen=True)
class StorageScheme:
    """Resolved scheme for one run"""
    base: BaseStrategy
    raid_level: Optional[int]
    boot_mode: BootMode

    @property
    def tag(self) -> str:
        if self.raid_level is None:
            return self.base.value
        return f"{self.base.value}:raid{self.raid_level}"


def parse_scheme_tag(tag: str) -> Tuple[BaseStrategy, Optional[int]]:
    """
    Parse a scheme tag.

    Accepts ``+``, ``_`` and ``-`` as layer separators, an ``auto_`` prefix,
    and a ``_raidN`` or ``:raidN`` suffix. A RAID suffix on a non-RAID base
    selects the RAID variant of that base.

    Args:
        tag: Scheme tag from the configuration

    Returns:
        Tuple of (base strategy, explicit RAID level or None)

    Raises:
        UnknownScheme: If the tag does not name a known strategy or RAID level
    """
    original = tag
    normalized = (tag or "").strip().lower()
    if normalized.startswith("auto_"):
        normalized = normalized[len("auto_"):]

    level: Optional[int] = None
    match = _RAID_SUFFIX_RE.match(normalized)
    if match:
        level = int(match.group("level"))
        if level not in SUPPORTED_RAID_LEVELS:
            raise UnknownScheme(
                f"Unsupported RAID level {level} in scheme '{original}', "
                f"expected one of: {', '.join(str(l) for l in SUPPORTED_RAID_LEVELS)}"
            )
        normalized = match.group("base") or "raid"

    parts = frozenset(part for part in _SEPARATORS_RE.split(normalized) if part)
    if not parts:
        raise UnknownScheme(f"Unknown partitioning scheme '{original}'")
    layers = parts - {"simple"}
    if level is not None:
        layers = layers | {"raid"}

    strategy = _BY_LAYERS.get(layers)
    if strategy is None:
        raise UnknownScheme(f"Unknown partitioning scheme '{original}'")
    return strategy, level
