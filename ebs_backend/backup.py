"""
Backup references.

A backup of an EBS volume is just a completed EBS snapshot. It is referred to
by an URL of the form:

    ebs://<region>/<snapshot-id>

which is all that is needed to restore a volume from it later on, possibly
from another process.
"""

import re
from typing import Tuple
from urllib.parse import urlparse

from ebs_backend.errors import InvalidBackupURLError
from ebs_backend.types import DRIVER_NAME

_SNAPSHOT_ID_RE = re.compile(r"^snap-[0-9a-z]+$")


def is_valid_snapshot_id(snapshot_id: str) -> bool:
    return bool(_SNAPSHOT_ID_RE.match(snapshot_id))


def encode_url(region: str, snapshot_id: str) -> str:
    return f"{DRIVER_NAME}://{region}/{snapshot_id}"


def decode_url(backup_url: str) -> Tuple[str, str]:
    """
    Split a backup URL into (region, snapshot_id).

    Raises:
        InvalidBackupURLError: wrong scheme, or a snapshot id that is not
            of the form snap-<lowercase alphanumerics>.
    """
    try:
        u = urlparse(backup_url)
    except ValueError as e:
        raise InvalidBackupURLError(backup_url, str(e)) from e

    if u.scheme != DRIVER_NAME:
        raise InvalidBackupURLError(
            backup_url, f"scheme '{u.scheme}' cannot be dispatched to '{DRIVER_NAME}'"
        )

    region = u.netloc
    snapshot_id = u.path.strip("/")
    if not is_valid_snapshot_id(snapshot_id):
        raise InvalidBackupURLError(backup_url, f"invalid EBS snapshot id '{snapshot_id}'")

    return region, snapshot_id
