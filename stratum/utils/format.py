"""
Formatting utilities.

This module provides functions for formatting sizes, parsing size specifications,
and consistent terminal output formatting.
"""
import re

MIB = 1024 ** 2


# ANSI Terminal Colors
class TermColors:
    """ANSI color codes for terminal output"""
    INFO = '\033[94m'     # Blue for informational messages
    SUCCESS = '\033[92m'  # Green for success messages
    WARNING = '\033[93m'  # Yellow for warnings
    ERROR = '\033[91m'    # Red for errors
    SIM = '\033[96m'      # Cyan for simulation messages
    BOLD = '\033[1m'      # Bold text
    ENDC = '\033[0m'      # End color


def colorize(message: str, color: str, enabled: bool = True) -> str:
    """
    Add color to a message if color output is enabled.
    
    Args:
        message: The message to colorize
        color: The color to use (from TermColors)
        enabled: Whether colorization is enabled
        
    Returns:
        Colorized message or original message if colors disabled
    """
    if not enabled:
        return message
    return f"{color}{message}{TermColors.ENDC}"


def bytes_to_human_readable(size_bytes: int) -> str:
    """
    Convert bytes to human readable format using binary units (KiB, MiB, GiB, TiB).
    
    Args:
        size_bytes: Size in bytes
        
    Returns:
        Human readable size string with proper binary unit
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    
    size = float(size_bytes)
    for unit in ['KiB', 'MiB', 'GiB', 'TiB', 'PiB']:
        size /= 1024
        if size < 1024:
            return f"{size:.2f} {unit}"
    
    return f"{size:.2f} PiB"


_BINARY_UNITS = {"K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}
_DECIMAL_UNITS = {"KB": 1000, "MB": 1000 ** 2, "GB": 1000 ** 3, "TB": 1000 ** 4}


def parse_size_spec(spec: str, total_bytes: int = 0) -> int:
    """
    Parse a size specification, which can be absolute or a percentage.

    Bare unit letters and the ``iB`` suffix are binary; ``KB``/``MB``/``GB``/``TB``
    are decimal, so a SWAP_SIZE of "2GB" means 2 * 10^9 bytes.
    
    Args:
        spec: Size specification (e.g., "100G", "100GB", "100GiB", "10%")
        total_bytes: Reference size in bytes for percentages
        
    Returns:
        Size in bytes

    Raises:
        ValueError: If the specification cannot be parsed
    """
    spec = spec.strip()
    if spec.endswith("%"):
        percentage = float(spec.rstrip("%"))
        return int(total_bytes * percentage / 100)
    
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([KMGT](?:i?B)?|B)?$", spec, re.IGNORECASE)
    if not match:
        raise ValueError(f"Invalid size specification: {spec}")
    
    value, unit = match.groups()
    number = float(value)
    
    if not unit or unit.upper() == "B":
        return int(number)

    unit = unit.upper()
    if unit in _DECIMAL_UNITS:
        return int(number * _DECIMAL_UNITS[unit])
    return int(number * _BINARY_UNITS[unit[0]])


def size_to_mib(spec: str) -> int:
    """
    Convert an absolute size specification to whole MiB.

    Raises:
        ValueError: If the specification is a percentage, invalid, or below 1 MiB
    """
    if spec.strip().endswith("%"):
        raise ValueError(f"Percentage not allowed here: {spec}")
    mib = parse_size_spec(spec) // MIB
    if mib < 1:
        raise ValueError(f"Size must be at least 1 MiB: {spec}")
    return mib
