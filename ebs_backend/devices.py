"""
Host block-device negotiation.

EC2 lets the caller ask for a device name on attach (/dev/sdf ...), but the
guest kernel is free to expose the disk under another name, e.g. nvme1n1 on
Nitro instances. So the device name is only used as a request, and the real
OS device is found afterwards by diffing /sys/block and matching capacity:

    before = list_block_devices()
    ... attach, wait for "attached" ...
    path = diff_attached_device(before, expected_size)
"""

import logging
import os
from typing import Iterable, Optional, Set

from ebs_backend.errors import AmbiguousDeviceError, DeviceNotFoundError, NoFreeDeviceError
from ebs_backend.util import SECTOR_SIZE

logger = logging.getLogger(__name__)

SYS_BLOCK = "/sys/block"

# Device names AWS recommends for EBS volumes on Linux instances.
RECOMMENDED_DEVICES = tuple(f"/dev/sd{c}" for c in "fghijklmnop")


def find_free_device(attached: Iterable[str], instance_id: str = "") -> str:
    """
    Pick the first recommended device that no volume of this instance uses.

    Args:
        attached: device names currently attached to the instance, as
                  reported by EC2 (e.g. "/dev/sdf", "/dev/xvda").
        instance_id: only used for the error message.
    """
    in_use = set(attached)
    for dev in RECOMMENDED_DEVICES:
        if dev not in in_use:
            return dev
    raise NoFreeDeviceError(instance_id)


def list_block_devices(sys_block: str = SYS_BLOCK) -> Set[str]:
    return set(os.listdir(sys_block))


def device_size(name: str, sys_block: str = SYS_BLOCK) -> int:
    """Size in bytes of /sys/block/<name>."""
    with open(os.path.join(sys_block, name, "size"), "r") as f:
        sectors = int(f.read().strip())
    return sectors * SECTOR_SIZE


def diff_attached_device(before: Set[str], expected_size: int, sys_block: str = SYS_BLOCK) -> str:
    """
    Find the block device that appeared since `before` with the given size.

    Returns:
        "/dev/<name>" of the only new device of `expected_size` bytes.

    Raises:
        AmbiguousDeviceError: more than one new device has that size.
        DeviceNotFoundError: no new device has that size.
    """
    attached: Optional[str] = None

    for name in sorted(list_block_devices(sys_block) - set(before)):
        size = device_size(name, sys_block)
        if size != expected_size:
            logger.debug("New device %s has size %d, want %d", name, size, expected_size)
            continue
        if attached is not None:
            raise AmbiguousDeviceError(attached, name, expected_size)
        attached = name

    if attached is None:
        raise DeviceNotFoundError(expected_size)
    return "/dev/" + attached
