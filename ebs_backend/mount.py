"""
Host mount/umount/mkfs wrappers.
"""

import logging
import os
import subprocess
from typing import List, Optional

from ebs_backend.errors import CommandError

logger = logging.getLogger(__name__)

MOUNT_BINARY = "mount"
UMOUNT_BINARY = "umount"
MKFS_BINARY = "mkfs"
PROC_MOUNTS = "/proc/mounts"


class HostMounter:
    """Runs the OS commands needed to format and (un)mount block devices."""

    def __init__(self, proc_mounts: str = PROC_MOUNTS):
        self.proc_mounts = proc_mounts

    def _run(self, cmd: List[str]) -> str:
        logger.debug("Executing %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            raise CommandError(cmd, (e.stderr or e.stdout or str(e)).strip()) from e
        except OSError as e:
            raise CommandError(cmd, str(e)) from e
        return result.stdout

    def is_mounted(self, mount_point: str) -> bool:
        target = os.path.realpath(mount_point)
        try:
            with open(self.proc_mounts, "r") as f:
                for line in f:
                    fields = line.split()
                    if len(fields) >= 2 and fields[1] == target:
                        return True
        except FileNotFoundError:
            logger.warning("%s not found, assuming %s is not mounted", self.proc_mounts, mount_point)
        return False

    def mount(self, device: str, mount_point: str, options: Optional[List[str]] = None) -> None:
        os.makedirs(mount_point, exist_ok=True)
        cmd = [MOUNT_BINARY]
        if options:
            cmd += ["-o", ",".join(options)]
        self._run(cmd + [device, mount_point])
        logger.info("Mounted %s at %s", device, mount_point)

    def umount(self, mount_point: str) -> None:
        self._run([UMOUNT_BINARY, mount_point])
        logger.info("Unmounted %s", mount_point)

    def mkfs(self, device: str, fstype: str) -> None:
        logger.info("Creating %s filesystem on %s", fstype, device)
        self._run([MKFS_BINARY, "-t", fstype, device])
