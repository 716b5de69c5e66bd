"""
Utility helpers for size math and option handling used by the EBS backend.
"""

import re
from typing import Dict, Mapping

from ebs_backend.errors import MissingOptionError, ValidationError

# EBS sizes are expressed in whole GiB.
GB = 1024 * 1024 * 1024

# /sys/block/<dev>/size always reports 512-byte sectors, whatever the
# logical block size of the device is.
SECTOR_SIZE = 512

_SIZE_UNITS = {
    "": 1,
    "k": 1024,
    "m": 1024 ** 2,
    "g": 1024 ** 3,
    "t": 1024 ** 4,
}

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([kmgt]?)(?:i?b)?\s*$", re.IGNORECASE)


def parse_size(size: str) -> int:
    """
    Convert a human readable size into bytes.

    Example:
        "4G"    -> 4294967296
        "512m"  -> 536870912
        "1024"  -> 1024
    """
    match = _SIZE_RE.match(str(size))
    if match is None:
        raise ValidationError(f"Invalid size {size!r}", error_code="INVALID_SIZE")
    value, unit = match.groups()
    return int(value) * _SIZE_UNITS[unit.lower()]


def round_up_to_gib(size: int) -> int:
    """
    Number of GiB needed to hold `size` bytes.

    Example:
        size = 1
        GB   = 1073741824
        result = 1
    """
    gib = size // GB
    if size % GB > 0:
        gib += 1
    return gib


def get_field_from_opts(key: str, opts: Mapping[str, str]) -> str:
    """Return a required option, raising MissingOptionError naming the key."""
    value = opts.get(key, "")
    if value == "":
        raise MissingOptionError(key)
    return value


def parse_bool(value: str) -> bool:
    # Anything else, including "", is false.
    return str(value).strip().lower() in ("1", "t", "true")


def parse_kv_pairs(pairs) -> Dict[str, str]:
    """Turn ["Size=8G", "VolumeType=gp2"] into a dict."""
    result: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValidationError(f"Expected KEY=VALUE, got {pair!r}")
        result[key] = value
    return result
