"""
Shared fixtures: an in-memory EC2 control plane and a fake host mounter.

FakeEC2 implements the handful of boto3 EC2 client calls the backend uses.
Resources go through the same transient states as in EC2 ("creating",
"attaching", "pending", ...) for `transition_delay` describe calls, and an
attached volume shows up as /sys/block/nvme<N>n1 under a temporary
directory, under a name that has nothing to do with the requested device.
"""

import copy
import os
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from ebs_backend import ebs_driver
from ebs_backend.ebs_client import EBSClient
from ebs_backend.util import GB, SECTOR_SIZE

REGION = "us-east-1"
AZ = "us-east-1a"
INSTANCE_ID = "i-0123456789abcdef0"
CREATED_AT = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def client_error(operation, code, message="", status=400):
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"RequestId": "req-0001", "HTTPStatusCode": status},
        },
        operation,
    )


def add_block_device(sys_block, name, size):
    path = os.path.join(sys_block, name)
    os.makedirs(path, exist_ok=True)
    with open(os.path.join(path, "size"), "w") as f:
        f.write(f"{size // SECTOR_SIZE}\n")


class FakeEC2:
    def __init__(self, sys_block, region=REGION, instance_id=INSTANCE_ID):
        self.sys_block = sys_block
        self.region = region
        self.instance_id = instance_id
        self.volumes = {}
        self.snapshots = {}
        self.tags = {}
        self.calls = []
        self.peers = {}

        self.transition_delay = 1
        self.fail_create = False
        self.fail_tags = False
        self.fail_detach = False
        self.tag_leak = False

        self._seq = 0
        self._nvme = 0

    def _new_id(self, prefix):
        self._seq += 1
        return f"{prefix}-{self._seq:017x}"

    def _public(self, resource):
        return {k: copy.deepcopy(v) for k, v in resource.items() if not k.startswith("_")}

    def _volume(self, operation, volume_id):
        if volume_id not in self.volumes:
            raise client_error(operation, "InvalidVolume.NotFound", f"The volume '{volume_id}' does not exist.")
        return self.volumes[volume_id]

    def _snapshot(self, operation, snapshot_id):
        if snapshot_id not in self.snapshots:
            raise client_error(operation, "InvalidSnapshot.NotFound", f"The snapshot '{snapshot_id}' does not exist.")
        return self.snapshots[snapshot_id]

    def _advance_volume(self, volume):
        if volume["_pending"] > 0:
            volume["_pending"] -= 1
            return

        if volume["State"] == "creating":
            volume["State"] = "error" if self.fail_create else "available"

        attachments = volume["Attachments"]
        if attachments and attachments[0]["State"] == "attaching":
            attachments[0]["State"] = "attached"
        elif attachments and attachments[0]["State"] == "detaching":
            volume["Attachments"] = []
            volume["State"] = "available"
            os_device = volume.pop("_os_device", None)
            if os_device:
                os.remove(os.path.join(self.sys_block, os_device, "size"))
                os.rmdir(os.path.join(self.sys_block, os_device))

    # ------------------------
    # Volumes
    # ------------------------

    def create_volume(self, **params):
        self.calls.append(("create_volume", params))
        size = params["Size"]
        snapshot_id = params.get("SnapshotId", "")
        if snapshot_id:
            snapshot = self._snapshot("CreateVolume", snapshot_id)
            if size < snapshot["VolumeSize"]:
                raise client_error("CreateVolume", "InvalidParameterValue", "size smaller than snapshot")

        volume_id = self._new_id("vol")
        self.volumes[volume_id] = {
            "VolumeId": volume_id,
            "Size": size,
            "SnapshotId": snapshot_id,
            "AvailabilityZone": params["AvailabilityZone"],
            "State": "creating",
            "VolumeType": params.get("VolumeType", "gp2"),
            "Iops": params.get("Iops"),
            "Encrypted": params.get("Encrypted", False),
            "KmsKeyId": params.get("KmsKeyId", ""),
            "CreateTime": CREATED_AT,
            "Attachments": [],
            "_pending": self.transition_delay,
        }
        return {"VolumeId": volume_id, "State": "creating"}

    def add_available_volume(self, size_gib):
        volume_id = self._new_id("vol")
        self.volumes[volume_id] = {
            "VolumeId": volume_id,
            "Size": size_gib,
            "SnapshotId": "",
            "AvailabilityZone": AZ,
            "State": "available",
            "VolumeType": "gp2",
            "Iops": 100,
            "KmsKeyId": "",
            "CreateTime": CREATED_AT,
            "Attachments": [],
            "_pending": 0,
        }
        return volume_id

    def describe_volumes(self, VolumeIds=None, Filters=None):
        self.calls.append(("describe_volumes", {"VolumeIds": VolumeIds, "Filters": Filters}))
        if VolumeIds:
            result = []
            for volume_id in VolumeIds:
                volume = self._volume("DescribeVolumes", volume_id)
                self._advance_volume(volume)
                result.append(self._public(volume))
            return {"Volumes": result}

        instance_id = None
        for f in Filters or []:
            if f["Name"] == "attachment.instance-id":
                instance_id = f["Values"][0]
        result = [
            self._public(v) for v in self.volumes.values()
            if instance_id is None or any(a["InstanceId"] == instance_id for a in v["Attachments"])
        ]
        return {"Volumes": result}

    def delete_volume(self, VolumeId):
        self.calls.append(("delete_volume", {"VolumeId": VolumeId}))
        volume = self._volume("DeleteVolume", VolumeId)
        if volume["Attachments"]:
            raise client_error("DeleteVolume", "VolumeInUse", f"Volume {VolumeId} is currently attached")
        del self.volumes[VolumeId]
        return {}

    def attach_volume(self, Device, InstanceId, VolumeId):
        self.calls.append(("attach_volume", {"Device": Device, "InstanceId": InstanceId, "VolumeId": VolumeId}))
        volume = self._volume("AttachVolume", VolumeId)
        if volume["State"] != "available":
            raise client_error("AttachVolume", "IncorrectState", f"{VolumeId} is {volume['State']}")
        for other in self.volumes.values():
            for a in other["Attachments"]:
                if a["InstanceId"] == InstanceId and a["Device"] == Device:
                    raise client_error("AttachVolume", "InvalidParameterValue", f"{Device} is already in use")

        volume["State"] = "in-use"
        volume["Attachments"] = [
            {"VolumeId": VolumeId, "InstanceId": InstanceId, "Device": Device, "State": "attaching"}
        ]
        volume["_pending"] = self.transition_delay

        self._nvme += 1
        os_device = f"nvme{self._nvme}n1"
        add_block_device(self.sys_block, os_device, volume["Size"] * GB)
        volume["_os_device"] = os_device
        return {"Device": Device, "State": "attaching"}

    def detach_volume(self, VolumeId, InstanceId):
        self.calls.append(("detach_volume", {"VolumeId": VolumeId, "InstanceId": InstanceId}))
        if self.fail_detach:
            raise client_error("DetachVolume", "IncorrectState", f"{VolumeId} is not attached", status=400)
        volume = self._volume("DetachVolume", VolumeId)
        if not volume["Attachments"]:
            raise client_error("DetachVolume", "IncorrectState", f"{VolumeId} is not attached")
        volume["Attachments"][0]["State"] = "detaching"
        volume["_pending"] = self.transition_delay
        return {"State": "detaching"}

    # ------------------------
    # Snapshots
    # ------------------------

    def _add_snapshot(self, volume_id, volume_size, description=""):
        snapshot_id = self._new_id("snap")
        self.snapshots[snapshot_id] = {
            "SnapshotId": snapshot_id,
            "VolumeId": volume_id,
            "VolumeSize": volume_size,
            "Description": description,
            "State": "pending",
            "Progress": "0%",
            "StartTime": CREATED_AT,
            "KmsKeyId": "",
            "_pending": self.transition_delay,
        }
        return snapshot_id

    def create_snapshot(self, VolumeId, Description=""):
        self.calls.append(("create_snapshot", {"VolumeId": VolumeId, "Description": Description}))
        volume = self._volume("CreateSnapshot", VolumeId)
        snapshot_id = self._add_snapshot(VolumeId, volume["Size"], Description)
        return {"SnapshotId": snapshot_id, "State": "pending"}

    def describe_snapshots(self, SnapshotIds):
        self.calls.append(("describe_snapshots", {"SnapshotIds": SnapshotIds}))
        result = []
        for snapshot_id in SnapshotIds:
            snapshot = self._snapshot("DescribeSnapshots", snapshot_id)
            if snapshot["_pending"] > 0:
                snapshot["_pending"] -= 1
            elif snapshot["State"] == "pending":
                snapshot["State"] = "completed"
                snapshot["Progress"] = "100%"
            result.append(self._public(snapshot))
        return {"Snapshots": result}

    def delete_snapshot(self, SnapshotId):
        self.calls.append(("delete_snapshot", {"SnapshotId": SnapshotId}))
        self._snapshot("DeleteSnapshot", SnapshotId)
        del self.snapshots[SnapshotId]
        return {}

    def copy_snapshot(self, SourceRegion, SourceSnapshotId):
        self.calls.append(("copy_snapshot", {"SourceRegion": SourceRegion, "SourceSnapshotId": SourceSnapshotId}))
        source = self.peers[SourceRegion]._snapshot("CopySnapshot", SourceSnapshotId)
        return {"SnapshotId": self._add_snapshot(source["VolumeId"], source["VolumeSize"])}

    # ------------------------
    # Tags
    # ------------------------

    def create_tags(self, Resources, Tags):
        self.calls.append(("create_tags", {"Resources": Resources, "Tags": Tags}))
        if self.fail_tags:
            raise client_error("CreateTags", "UnauthorizedOperation", "not allowed to tag", status=403)
        for resource_id in Resources:
            self.tags.setdefault(resource_id, {}).update({t["Key"]: t["Value"] for t in Tags})
        return {}

    def describe_tags(self, Filters):
        self.calls.append(("describe_tags", {"Filters": Filters}))
        resource_id = Filters[0]["Values"][0]
        tags = [
            {"ResourceId": resource_id, "Key": k, "Value": v}
            for k, v in self.tags.get(resource_id, {}).items()
        ]
        if self.tag_leak:
            tags.append({"ResourceId": "vol-someoneelse", "Key": "Name", "Value": "other"})
        return {"Tags": tags}

    def operations(self):
        return [name for name, _ in self.calls]


class FakeMounter:
    def __init__(self):
        self.mounted = {}
        self.formatted = []
        self.calls = []

    def is_mounted(self, mount_point):
        return mount_point in self.mounted

    def mount(self, device, mount_point, options=None):
        self.calls.append(("mount", device, mount_point))
        self.mounted[mount_point] = device

    def umount(self, mount_point):
        self.calls.append(("umount", mount_point))
        del self.mounted[mount_point]

    def mkfs(self, device, fstype):
        self.calls.append(("mkfs", device, fstype))
        self.formatted.append((device, fstype))


@pytest.fixture
def sys_block(tmp_path):
    path = tmp_path / "sys_block"
    path.mkdir()
    # Root disk of the instance, present before any attach.
    add_block_device(str(path), "nvme0n1", 8 * GB)
    return str(path)


@pytest.fixture
def ec2(sys_block):
    return FakeEC2(sys_block)


@pytest.fixture
def make_client(ec2, sys_block):
    def make(**kwargs):
        kwargs.setdefault("retry_interval", 0)
        kwargs.setdefault("sleep", lambda seconds: None)
        return EBSClient(
            ec2,
            instance_id=INSTANCE_ID,
            region=REGION,
            availability_zone=AZ,
            sys_block=sys_block,
            **kwargs,
        )
    return make


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def mounter():
    return FakeMounter()


@pytest.fixture
def root(tmp_path):
    return str(tmp_path / "ebs")


@pytest.fixture
def driver(root, client, mounter):
    return ebs_driver.init(root, {}, client=client, mounter=mounter)
