import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ebs_backend.devices import SYS_BLOCK, diff_attached_device, find_free_device, list_block_devices
from ebs_backend.errors import ConsistencyError, ProviderError, ValidationError, WaitCancelledError, WaitTimeoutError
from ebs_backend.metadata import METADATA_URL, fetch_instance_identity
from ebs_backend.types import PROVISIONED_IOPS_TYPE, VALID_VOLUME_TYPES
from ebs_backend.util import GB, round_up_to_gib

logger = logging.getLogger(__name__)

# Seconds to sleep before each state check while waiting for a transition.
RETRY_INTERVAL = 5

VOLUME_STATE_CREATING = "creating"
VOLUME_STATE_AVAILABLE = "available"
VOLUME_STATE_IN_USE = "in-use"
ATTACHMENT_STATE_ATTACHING = "attaching"
ATTACHMENT_STATE_ATTACHED = "attached"
SNAPSHOT_STATE_PENDING = "pending"
SNAPSHOT_STATE_ERROR = "error"


def check_volume_type(volume_type: str) -> None:
    if volume_type not in VALID_VOLUME_TYPES:
        raise ValidationError(f"Invalid volume type {volume_type}", error_code="INVALID_VOLUME_TYPE")


def check_type_and_iops(volume_type: str, iops: int) -> None:
    """
    Provisioned IOPS go with io1 and only with io1.

    An empty volume_type leaves the choice to EC2, which never provisions IOPS.
    """
    if volume_type:
        check_volume_type(volume_type)
    if volume_type == PROVISIONED_IOPS_TYPE and iops <= 0:
        raise ValidationError(f"Invalid IOPS for volume type {PROVISIONED_IOPS_TYPE}", error_code="INVALID_IOPS")
    if volume_type != PROVISIONED_IOPS_TYPE and iops != 0:
        raise ValidationError(f"IOPS only valid for volume type {PROVISIONED_IOPS_TYPE}", error_code="INVALID_IOPS")


def _provider_error(operation: str, err: Exception, params: Dict[str, Any]) -> ProviderError:
    if isinstance(err, ClientError):
        error = err.response.get("Error", {})
        meta = err.response.get("ResponseMetadata", {})
        details = {
            "params": params,
            "code": error.get("Code", ""),
            "status_code": meta.get("HTTPStatusCode"),
            "request_id": meta.get("RequestId", ""),
        }
        return ProviderError(operation, f"{details['code']}: {error.get('Message', '')}", details=details)
    return ProviderError(operation, str(err), details={"params": params})


class EBSClient:
    """
    Thin façade over the EC2 API for one instance.

    All calls are synchronous. The wait_* helpers block until the resource
    reaches its target state, sleeping `retry_interval` seconds before each
    check. They poll forever unless `wait_timeout` is set or `cancel_event`
    gets set from another thread.
    """

    def __init__(
            self,
            ec2_client,
            instance_id: str,
            region: str,
            availability_zone: str,
            retry_interval: float = RETRY_INTERVAL,
            wait_timeout: Optional[float] = None,
            cancel_event: Optional[threading.Event] = None,
            sys_block: str = SYS_BLOCK,
            client_factory: Optional[Callable[[str], Any]] = None,
            sleep: Callable[[float], None] = time.sleep,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            ec2_client: boto3 EC2 client bound to `region`.
            instance_id / region / availability_zone: identity of this host.
            retry_interval: seconds slept before each state check.
            wait_timeout: optional deadline in seconds for any single wait.
            cancel_event: optional event aborting waits once set.
            sys_block: directory listing the host's block devices.
            client_factory: builds an EC2 client for another region.
        """
        self.ec2 = ec2_client
        self.instance_id = instance_id
        self.region = region
        self.availability_zone = availability_zone
        self.retry_interval = retry_interval
        self.wait_timeout = wait_timeout
        self.cancel_event = cancel_event
        self.sys_block = sys_block

        self._client_factory = client_factory or (lambda r: boto3.client("ec2", region_name=r))
        self._regional_clients = {region: ec2_client}
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_instance_metadata(
            cls,
            endpoint_url: Optional[str] = None,
            metadata_url: str = METADATA_URL,
            **kwargs,
    ) -> "EBSClient":
        """
        Build a client for the instance we are running on.

        endpoint_url overrides the EC2 endpoint, for EBS-compatible control
        planes that are not AWS.
        """
        identity = fetch_instance_identity(metadata_url)
        ec2 = boto3.client("ec2", region_name=identity.region, endpoint_url=endpoint_url)
        return cls(
            ec2,
            instance_id=identity.instance_id,
            region=identity.region,
            availability_zone=identity.availability_zone,
            **kwargs,
        )

    # ------------------------
    # Internal helpers
    # ------------------------

    def _call(self, operation: str, client=None, **params):
        client = client or self.ec2
        try:
            return getattr(client, operation)(**params)
        except (ClientError, BotoCoreError) as e:
            raise _provider_error(operation, e, params) from e

    def _client_for_region(self, region: str):
        if region not in self._regional_clients:
            logger.debug("Creating EC2 client for region %s", region)
            self._regional_clients[region] = self._client_factory(region)
        return self._regional_clients[region]

    def _poll(self, resource_id: str, target: str, describe, done):
        """
        Call describe() until done(resource) is true and return that resource.
        """
        deadline = None
        if self.wait_timeout is not None:
            deadline = self._clock() + self.wait_timeout

        while True:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise WaitCancelledError(resource_id, target)
            if deadline is not None and self._clock() >= deadline:
                raise WaitTimeoutError(resource_id, target, self.wait_timeout)

            self._sleep(self.retry_interval)
            resource = describe()
            if done(resource):
                return resource

    def _wait_for_volume_transition(self, volume_id: str, start: str, end: str) -> None:
        def done(volume):
            if volume["State"] == start:
                logger.debug("Waiting for volume %s state transiting from %s to %s", volume_id, start, end)
                return False
            return True

        volume = self._poll(volume_id, end, lambda: self.get_volume(volume_id), done)
        if volume["State"] != end:
            raise ProviderError(
                "WaitVolumeState",
                f"cannot finish volume {volume_id} transition from {start} to {end}, final state {volume['State']}",
                details={"volume_id": volume_id, "state": volume["State"]},
            )

    def _wait_for_volume_attaching(self, volume_id: str) -> None:
        seen_attachment = False

        def done(volume):
            nonlocal seen_attachment
            attachments = volume.get("Attachments") or []
            if not attachments:
                if seen_attachment:
                    raise ProviderError("WaitVolumeAttached", f"attaching failed for {volume_id}")
                logger.debug("Retry to get attachment of volume %s", volume_id)
                return False
            seen_attachment = True
            if attachments[0]["State"] == ATTACHMENT_STATE_ATTACHING:
                logger.debug("Waiting for volume %s attaching", volume_id)
                return False
            return True

        volume = self._poll(volume_id, ATTACHMENT_STATE_ATTACHED, lambda: self.get_volume(volume_id), done)
        state = volume["Attachments"][0]["State"]
        if state != ATTACHMENT_STATE_ATTACHED:
            raise ProviderError(
                "WaitVolumeAttached",
                f"cannot attach volume {volume_id}, final state {state}",
                details={"volume_id": volume_id, "state": state},
            )

    # ------------------------
    # Volumes
    # ------------------------

    def create_volume(
            self,
            size: int,
            iops: int = 0,
            snapshot_id: str = "",
            volume_type: str = "",
            kms_key_id: str = "",
            tags: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Create a volume of at least `size` bytes and wait until it is available.

        If the volume never becomes available it is deleted again (best
        effort) before the failure is raised.
        """
        check_type_and_iops(volume_type, iops)

        params: Dict[str, Any] = {
            "AvailabilityZone": self.availability_zone,
            "Size": round_up_to_gib(size),
        }
        if snapshot_id:
            params["SnapshotId"] = snapshot_id
        elif kms_key_id:
            params["KmsKeyId"] = kms_key_id
            params["Encrypted"] = True
        if volume_type:
            params["VolumeType"] = volume_type
        if iops:
            params["Iops"] = iops

        volume_id = self._call("create_volume", **params)["VolumeId"]

        try:
            self._wait_for_volume_transition(volume_id, VOLUME_STATE_CREATING, VOLUME_STATE_AVAILABLE)
        except Exception:
            logger.debug("Volume %s did not become available, deleting it", volume_id)
            try:
                self.delete_volume(volume_id)
            except ProviderError as e:
                logger.error("Failed deleting volume %s: %s", volume_id, e)
            raise

        if tags:
            try:
                self.add_tags(volume_id, tags)
            except ProviderError as e:
                logger.warning("Unable to tag %s with %s, but continue: %s", volume_id, tags, e)

        return volume_id

    def delete_volume(self, volume_id: str) -> None:
        self._call("delete_volume", VolumeId=volume_id)

    def get_volume(self, volume_id: str) -> Dict[str, Any]:
        resp = self._call("describe_volumes", VolumeIds=[volume_id])
        volumes = resp.get("Volumes", [])
        if len(volumes) != 1:
            raise ConsistencyError(
                f"Expected exactly one volume {volume_id}, got {len(volumes)}",
                details={"volume_id": volume_id},
            )
        return volumes[0]

    def instance_devices(self) -> List[str]:
        """Device names of every volume attached to this instance."""
        resp = self._call(
            "describe_volumes",
            Filters=[{"Name": "attachment.instance-id", "Values": [self.instance_id]}],
        )
        devices = []
        for volume in resp.get("Volumes", []):
            for attachment in volume.get("Attachments") or []:
                if attachment.get("InstanceId", self.instance_id) == self.instance_id:
                    devices.append(attachment["Device"])
        return devices

    def find_free_device_for_attach(self) -> str:
        return find_free_device(self.instance_devices(), self.instance_id)

    def attach_volume(self, volume_id: str, size: int) -> str:
        """
        Attach a volume to this instance.

        Returns:
            The OS device path the volume appeared as, which may differ from
            the device name requested from EC2.
        """
        dev = self.find_free_device_for_attach()
        logger.debug("Attaching %s to %s's %s", volume_id, self.instance_id, dev)

        before = list_block_devices(self.sys_block)

        self._call("attach_volume", Device=dev, InstanceId=self.instance_id, VolumeId=volume_id)
        self._wait_for_volume_attaching(volume_id)

        return diff_attached_device(before, size, self.sys_block)

    def detach_volume(self, volume_id: str) -> None:
        self._call("detach_volume", VolumeId=volume_id, InstanceId=self.instance_id)
        self._wait_for_volume_transition(volume_id, VOLUME_STATE_IN_USE, VOLUME_STATE_AVAILABLE)

    # ------------------------
    # Snapshots
    # ------------------------

    def create_snapshot(self, volume_id: str, description: str, tags: Optional[Dict[str, str]] = None) -> str:
        resp = self._call("create_snapshot", VolumeId=volume_id, Description=description)
        snapshot_id = resp["SnapshotId"]
        if tags:
            try:
                self.add_tags(snapshot_id, tags)
            except ProviderError as e:
                logger.warning("Unable to tag %s with %s, but continue: %s", snapshot_id, tags, e)
        return snapshot_id

    def get_snapshot_with_region(self, snapshot_id: str, region: str) -> Dict[str, Any]:
        client = self._client_for_region(region)
        resp = self._call("describe_snapshots", client=client, SnapshotIds=[snapshot_id])
        snapshots = resp.get("Snapshots", [])
        if len(snapshots) != 1:
            raise ConsistencyError(
                f"Expected exactly one snapshot {snapshot_id}, got {len(snapshots)}",
                details={"snapshot_id": snapshot_id, "region": region},
            )
        return snapshots[0]

    def get_snapshot(self, snapshot_id: str) -> Dict[str, Any]:
        return self.get_snapshot_with_region(snapshot_id, self.region)

    def wait_for_snapshot_complete(self, snapshot_id: str) -> Dict[str, Any]:
        """
        Block until the snapshot is no longer pending.

        Raises ProviderError if it ended up in the "error" state.
        """
        def done(snapshot):
            if snapshot["State"] == SNAPSHOT_STATE_PENDING:
                logger.debug("Snapshot %s progress %s", snapshot_id, snapshot.get("Progress", ""))
                return False
            return True

        snapshot = self._poll(snapshot_id, "completed", lambda: self.get_snapshot(snapshot_id), done)
        if snapshot["State"] == SNAPSHOT_STATE_ERROR:
            raise ProviderError(
                "WaitSnapshotCompleted",
                f"snapshot {snapshot_id} failed: {snapshot.get('StateMessage', '')}",
                details={"snapshot_id": snapshot_id},
            )
        return snapshot

    def delete_snapshot_with_region(self, snapshot_id: str, region: str) -> None:
        client = self._client_for_region(region)
        self._call("delete_snapshot", client=client, SnapshotId=snapshot_id)

    def delete_snapshot(self, snapshot_id: str) -> None:
        self.delete_snapshot_with_region(snapshot_id, self.region)

    def copy_snapshot(self, snapshot_id: str, source_region: str) -> str:
        """Copy a snapshot from source_region into this client's region."""
        resp = self._call("copy_snapshot", SourceRegion=source_region, SourceSnapshotId=snapshot_id)
        return resp["SnapshotId"]

    # ------------------------
    # Tags
    # ------------------------

    def add_tags(self, resource_id: str, tags: Dict[str, str]) -> None:
        if not tags:
            return
        logger.debug("Adding tags for %s, as %s", resource_id, tags)
        self._call(
            "create_tags",
            Resources=[resource_id],
            Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
        )

    def get_tags(self, resource_id: str) -> Dict[str, str]:
        resp = self._call(
            "describe_tags",
            Filters=[{"Name": "resource-id", "Values": [resource_id]}],
        )
        result = {}
        for tag in resp.get("Tags") or []:
            if tag["ResourceId"] != resource_id:
                raise ConsistencyError(
                    f"Tag query for {resource_id} returned a tag of {tag['ResourceId']}",
                    details={"resource_id": resource_id},
                )
            result[tag["Key"]] = tag["Value"]
        return result


def volume_size_bytes(resource: Dict[str, Any], key: str = "Size") -> int:
    """EC2 reports sizes in GiB; the backend works in bytes."""
    return int(resource[key]) * GB
