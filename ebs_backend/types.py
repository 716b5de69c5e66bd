from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict

# Name this backend is known by to the outside world.
DRIVER_NAME = "ebs"

# Record key of the Device (backend defaults) record.
DRIVER_CONFIG_FILE = "ebs.cfg"

# Volume records are stored as <CFG_PREFIX><VOLUME_CFG_PREFIX><name><CFG_POSTFIX>.
CFG_PREFIX = DRIVER_NAME + "_"
VOLUME_CFG_PREFIX = "volume_"
CFG_POSTFIX = ".json"

MOUNTS_DIR = "mounts"

DEFAULT_VOLUME_SIZE = "4G"
DEFAULT_VOLUME_TYPE = "gp2"
DEFAULT_FILESYSTEM = "ext4"

VALID_VOLUME_TYPES = ("gp2", "io1", "standard", "st1", "sc1")

# Only this volume type takes provisioned IOPS.
PROVISIONED_IOPS_TYPE = "io1"


def volume_record_key(name: str) -> str:
    return CFG_PREFIX + VOLUME_CFG_PREFIX + name + CFG_POSTFIX


@dataclass
class Device:
    """Backend-wide defaults, created once per root directory."""

    root: str
    default_volume_size: int = 0
    default_volume_type: str = DEFAULT_VOLUME_TYPE
    default_kms_key_id: str = ""

    def to_record(self) -> Dict[str, Any]:
        return {
            "Root": self.root,
            "DefaultVolumeSize": self.default_volume_size,
            "DefaultVolumeType": self.default_volume_type,
            "DefaultKmsKeyID": self.default_kms_key_id,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Device":
        return cls(
            root=record.get("Root", ""),
            default_volume_size=int(record.get("DefaultVolumeSize", 0)),
            default_volume_type=record.get("DefaultVolumeType", DEFAULT_VOLUME_TYPE),
            default_kms_key_id=record.get("DefaultKmsKeyID", ""),
        )


@dataclass
class Snapshot:
    name: str
    volume_name: str
    ebs_id: str

    def to_record(self) -> Dict[str, Any]:
        return {
            "Name": self.name,
            "VolumeName": self.volume_name,
            "EBSID": self.ebs_id,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Snapshot":
        return cls(
            name=record.get("Name", ""),
            volume_name=record.get("VolumeName", ""),
            ebs_id=record.get("EBSID", ""),
        )


@dataclass
class Volume:
    """
    One managed EBS volume.

    `device` is the OS path the volume showed up as after attach, which is
    not necessarily the device name requested from EC2. An empty
    `mount_point` means the volume is not mounted.
    """

    name: str
    ebs_id: str = ""
    device: str = ""
    mount_point: str = ""
    snapshots: Dict[str, Snapshot] = field(default_factory=dict)

    @property
    def record_key(self) -> str:
        return volume_record_key(self.name)

    def default_mount_point(self, root: str) -> str:
        return os.path.join(root, MOUNTS_DIR, self.name)

    def to_record(self) -> Dict[str, Any]:
        return {
            "Name": self.name,
            "EBSID": self.ebs_id,
            "Device": self.device,
            "MountPoint": self.mount_point,
            "Snapshots": {k: s.to_record() for k, s in self.snapshots.items()},
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Volume":
        snapshots = record.get("Snapshots") or {}
        return cls(
            name=record.get("Name", ""),
            ebs_id=record.get("EBSID", ""),
            device=record.get("Device", ""),
            mount_point=record.get("MountPoint", ""),
            snapshots={k: Snapshot.from_record(v) for k, v in snapshots.items()},
        )
