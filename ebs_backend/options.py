"""
Option keys accepted by the EBS executors, and their typed forms.

Requests carry options as a flat string map; each executor turns the map
into one of the dataclasses below before calling into the driver.
"""

from dataclasses import dataclass
from typing import Mapping, Optional

from ebs_backend.errors import ValidationError
from ebs_backend.util import get_field_from_opts, parse_bool, parse_size

OPT_MOUNT_POINT = "MountPoint"
OPT_SIZE = "Size"
OPT_VOLUME_NAME = "VolumeName"
OPT_VOLUME_DRIVER_ID = "VolumeDriverID"
OPT_VOLUME_TYPE = "VolumeType"
OPT_VOLUME_IOPS = "VolumeIOPS"
OPT_VOLUME_CREATED_TIME = "VolumeCreatedAt"
OPT_SNAPSHOT_NAME = "SnapshotName"
OPT_SNAPSHOT_CREATED_TIME = "SnapshotCreatedAt"
OPT_BACKUP_URL = "BackupURL"
OPT_REFERENCE_ONLY = "ReferenceOnly"


def _parse_iops(value: str) -> int:
    if not value:
        return 0
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"Invalid {OPT_VOLUME_IOPS} {value!r}", error_code="INVALID_IOPS") from None


def _parse_optional_size(value: str) -> Optional[int]:
    # "0" means "use the default", like an absent size.
    if value in ("", "0"):
        return None
    return parse_size(value)


@dataclass
class CreateVolumeOptions:
    size: Optional[int] = None
    volume_id: str = ""
    backup_url: str = ""
    volume_type: str = ""
    iops: int = 0

    @classmethod
    def from_options(cls, opts: Mapping[str, str]) -> "CreateVolumeOptions":
        return cls(
            size=_parse_optional_size(opts.get(OPT_SIZE, "")),
            volume_id=opts.get(OPT_VOLUME_DRIVER_ID, ""),
            backup_url=opts.get(OPT_BACKUP_URL, ""),
            volume_type=opts.get(OPT_VOLUME_TYPE, ""),
            iops=_parse_iops(opts.get(OPT_VOLUME_IOPS, "")),
        )


@dataclass
class MountOptions:
    mount_point: str = ""

    @classmethod
    def from_options(cls, opts: Mapping[str, str]) -> "MountOptions":
        return cls(mount_point=opts.get(OPT_MOUNT_POINT, ""))


@dataclass
class RemoveVolumeOptions:
    reference_only: bool = False

    @classmethod
    def from_options(cls, opts: Mapping[str, str]) -> "RemoveVolumeOptions":
        return cls(reference_only=parse_bool(opts.get(OPT_REFERENCE_ONLY, "")))


@dataclass
class SnapshotOptions:
    volume_name: str

    @classmethod
    def from_options(cls, opts: Mapping[str, str]) -> "SnapshotOptions":
        return cls(volume_name=get_field_from_opts(OPT_VOLUME_NAME, opts))


@dataclass
class BackupCreateOptions:
    volume_name: str
    snapshot_name: str

    @classmethod
    def from_options(cls, opts: Mapping[str, str]) -> "BackupCreateOptions":
        return cls(
            volume_name=get_field_from_opts(OPT_VOLUME_NAME, opts),
            snapshot_name=get_field_from_opts(OPT_SNAPSHOT_NAME, opts),
        )


@dataclass
class BackupOptions:
    backup_url: str

    @classmethod
    def from_options(cls, opts: Mapping[str, str]) -> "BackupOptions":
        return cls(backup_url=get_field_from_opts(OPT_BACKUP_URL, opts))
