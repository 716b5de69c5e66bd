"""
EC2 instance metadata lookup.

The backend needs to know which instance it runs on (to attach volumes and
to find devices already in use), its region (for backup URLs) and its
availability zone (volumes must be created in the instance's AZ).
"""

import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional

from ebs_backend.errors import ProviderError

logger = logging.getLogger(__name__)

METADATA_URL = "http://169.254.169.254/latest"
TOKEN_TTL_SECONDS = 21600


@dataclass
class InstanceIdentity:
    instance_id: str
    region: str
    availability_zone: str


def _fetch_token(base_url: str, timeout: float) -> Optional[str]:
    req = urllib.request.Request(
        f"{base_url}/api/token",
        method="PUT",
        headers={"X-aws-ec2-metadata-token-ttl-seconds": str(TOKEN_TTL_SECONDS)},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.read().decode("utf-8").strip()
    except (urllib.error.URLError, OSError) as e:
        # IMDSv1-only endpoints (and EBS-compatible emulators) have no token API.
        logger.debug("IMDSv2 token unavailable at %s: %s", base_url, e)
        return None


def _get(base_url: str, path: str, token: Optional[str], timeout: float) -> str:
    headers = {"X-aws-ec2-metadata-token": token} if token else {}
    req = urllib.request.Request(f"{base_url}/meta-data/{path}", headers=headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.read().decode("utf-8").strip()
    except (urllib.error.URLError, OSError) as e:
        raise ProviderError("GetMetadata", f"{path}: {e}", details={"url": base_url}) from e


def fetch_instance_identity(base_url: str = METADATA_URL, timeout: float = 5.0) -> InstanceIdentity:
    token = _fetch_token(base_url, timeout)
    instance_id = _get(base_url, "instance-id", token, timeout)
    zone = _get(base_url, "placement/availability-zone", token, timeout)
    try:
        region = _get(base_url, "placement/region", token, timeout)
    except ProviderError:
        # Older metadata services have no placement/region; derive it from the AZ.
        region = zone[:-1]

    logger.info("Running on instance %s in %s (%s)", instance_id, region, zone)
    return InstanceIdentity(instance_id=instance_id, region=region, availability_zone=zone)
