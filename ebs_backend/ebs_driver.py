"""
EBS backend driver.

EBSDriver manages EBS volumes attached to the instance it runs on, their
snapshots, and backups (completed snapshots referenced by URL). It keeps one
JSON record per volume under its root directory so that a restarted process
can pick up where the previous one left off.

Every operation that touches the records holds a single driver-wide lock for
its whole duration, so operations on different volumes are serialized too.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from ebs_backend.backup import decode_url, encode_url
from ebs_backend.driver import BackendDriver, DriverRegistry, Executor, ExecutorRegistry
from ebs_backend.ebs_client import EBSClient, check_type_and_iops, check_volume_type, volume_size_bytes
from ebs_backend.errors import (
    EBSError,
    SnapshotExistsError,
    SnapshotNotFoundError,
    ValidationError,
    VolumeExistsError,
    VolumeNotFoundError,
)
from ebs_backend.executors import build_executor_registry
from ebs_backend.file_storage import FileObjectStore
from ebs_backend.mount import HostMounter
from ebs_backend.options import (
    OPT_SIZE,
    OPT_SNAPSHOT_CREATED_TIME,
    OPT_SNAPSHOT_NAME,
    OPT_VOLUME_CREATED_TIME,
    OPT_VOLUME_NAME,
    CreateVolumeOptions,
)
from ebs_backend.storage import ObjectStore
from ebs_backend.types import (
    CFG_POSTFIX,
    CFG_PREFIX,
    DEFAULT_FILESYSTEM,
    DEFAULT_VOLUME_SIZE,
    DEFAULT_VOLUME_TYPE,
    DRIVER_CONFIG_FILE,
    DRIVER_NAME,
    VOLUME_CFG_PREFIX,
    Device,
    Snapshot,
    Volume,
    volume_record_key,
)
from ebs_backend.util import GB, parse_size, round_up_to_gib

logger = logging.getLogger(__name__)

# Configuration keys understood by init()
EBS_DEFAULT_VOLUME_SIZE = "ebs.defaultvolumesize"
EBS_DEFAULT_VOLUME_TYPE = "ebs.defaultvolumetype"
EBS_DEFAULT_VOLUME_KEY = "ebs.defaultkmskeyid"

# Tags put on snapshots so they can be traced back to the volume.
TAG_VOLUME_NAME = "EBSVolumeName"
TAG_SNAPSHOT_NAME = "EBSSnapshotName"

SNAPSHOT_DESCRIPTION = "EBS backend volume snapshot"

# State reported for a tracked snapshot that no longer exists in EC2.
SNAPSHOT_STATE_REMOVED = "removed"


def check_name(kind: str, name: str) -> None:
    # Volume names become record file names, "/" also separates volume and
    # snapshot names in listings.
    if not name or "/" in name or name in (".", ".."):
        raise ValidationError(f"Invalid {kind} name {name!r}", error_code="INVALID_NAME")


def _format_time(value) -> str:
    # e.g. "Tue Jan 02 03:04:05 +0000 2024"
    if isinstance(value, datetime):
        return value.strftime("%a %b %d %H:%M:%S %z %Y")
    return str(value or "")


class EBSDriver(BackendDriver):
    def __init__(
            self,
            client: EBSClient,
            device: Device,
            store: ObjectStore,
            mounter: HostMounter,
            executor_registry: ExecutorRegistry,
    ) -> None:
        self.client = client
        self.device = device
        self.store = store
        self.mounter = mounter
        self.executor_registry = executor_registry
        self.lock = threading.Lock()

    # ---------------------------------------------------------------------
    # BackendDriver
    # ---------------------------------------------------------------------

    def name(self) -> str:
        return DRIVER_NAME

    def info(self) -> Dict[str, str]:
        return {
            "DefaultVolumeSize": str(self.device.default_volume_size),
            "DefaultVolumeType": self.device.default_volume_type,
            "DefaultKmsKey": self.device.default_kms_key_id,
            "InstanceID": self.client.instance_id,
            "Region": self.client.region,
            "AvailabilityZone": self.client.availability_zone,
        }

    def executors(self, *hints: str) -> Dict[str, Executor]:
        return self.executor_registry.resolve(self, hints)

    # ---------------------------------------------------------------------
    # Records
    # ---------------------------------------------------------------------

    def list_volume_names(self) -> List[str]:
        return self.store.list_ids(CFG_PREFIX + VOLUME_CFG_PREFIX, CFG_POSTFIX)

    def volume_exists(self, name: str) -> bool:
        check_name("volume", name)
        return self.store.exists(volume_record_key(name))

    def load_volume(self, name: str) -> Volume:
        check_name("volume", name)
        key = volume_record_key(name)
        if not self.store.exists(key):
            raise VolumeNotFoundError(name)
        return Volume.from_record(self.store.load(key))

    def _save_volume(self, volume: Volume) -> None:
        self.store.save(volume.record_key, volume.to_record())

    def _get_snapshot_and_volume(self, name: str, volume_name: str):
        volume = self.load_volume(volume_name)
        snapshot = volume.snapshots.get(name)
        if snapshot is None:
            raise SnapshotNotFoundError(name, volume_name)
        return snapshot, volume

    # ---------------------------------------------------------------------
    # Volumes
    # ---------------------------------------------------------------------

    def _type_and_iops(self, opts: CreateVolumeOptions):
        volume_type = opts.volume_type or self.device.default_volume_type
        check_type_and_iops(volume_type, opts.iops)
        return volume_type, opts.iops

    def create_volume(self, name: str, opts: CreateVolumeOptions) -> Volume:
        """
        Create, attach and record a volume.

        Exactly one of three sources is used:
            - opts.volume_id: take over an existing EBS volume
            - opts.backup_url: restore a new volume from a backup
            - neither: create a new, empty volume

        Only new, empty volumes are formatted.
        """
        with self.lock:
            if self.volume_exists(name):
                raise VolumeExistsError(name)

            if opts.volume_id and opts.backup_url:
                raise ValidationError("Cannot specify both backup and EBS volume ID")

            tags = {"Name": name}
            format_device = False

            if opts.volume_id:
                volume_id = opts.volume_id
                ebs_volume = self.client.get_volume(volume_id)
                size = volume_size_bytes(ebs_volume)
                logger.debug("Found EBS volume %s for volume %s, update tags", volume_id, name)
                try:
                    self.client.add_tags(volume_id, tags)
                except EBSError as e:
                    logger.debug("Failed to update tags for volume %s, but continue: %s", volume_id, e)

            elif opts.backup_url:
                region, snapshot_id = decode_url(opts.backup_url)
                if region != self.client.region:
                    # Snapshots from other regions have to be copied with copy_snapshot first.
                    raise ValidationError(
                        f"Snapshot {snapshot_id} is at {region} rather than current region "
                        f"{self.client.region}. Copy snapshot is needed",
                        error_code="CROSS_REGION_RESTORE",
                    )
                volume_type, iops = self._type_and_iops(opts)

                ebs_snapshot = self.client.wait_for_snapshot_complete(snapshot_id)
                logger.debug("Snapshot %s is ready", snapshot_id)

                snapshot_size = volume_size_bytes(ebs_snapshot, "VolumeSize")
                size = opts.size if opts.size is not None else snapshot_size
                if size < snapshot_size:
                    raise ValidationError(
                        f"Volume size cannot be less than snapshot size {snapshot_size}",
                        error_code="INVALID_SIZE",
                    )

                volume_id = self.client.create_volume(
                    size,
                    iops=iops,
                    snapshot_id=snapshot_id,
                    volume_type=volume_type,
                    tags=tags,
                )
                logger.debug("Created volume %s from EBS snapshot %s", name, snapshot_id)

            else:
                volume_type, iops = self._type_and_iops(opts)
                size = opts.size if opts.size is not None else self.device.default_volume_size

                volume_id = self.client.create_volume(
                    size,
                    iops=iops,
                    volume_type=volume_type,
                    kms_key_id=self.device.default_kms_key_id,
                    tags=tags,
                )
                logger.debug("Created volume %s as EBS volume %s", name, volume_id)
                format_device = True

            if not opts.volume_id:
                # EC2 allocates whole GiB; the new device has the rounded size.
                size = round_up_to_gib(size) * GB

            try:
                dev = self.client.attach_volume(volume_id, size)
                logger.debug("Attached EBS volume %s to device %s", volume_id, dev)

                if format_device:
                    self.mounter.mkfs(dev, DEFAULT_FILESYSTEM)

                volume = Volume(name=name, ebs_id=volume_id, device=dev)
                self._save_volume(volume)
            except Exception:
                logger.error("EBS volume %s of volume %s is not tracked after a failure", volume_id, name)
                raise

            return volume

    def _mount_volume(self, volume: Volume, mount_point: str) -> str:
        target = mount_point or volume.mount_point or volume.default_mount_point(self.device.root)
        if volume.mount_point and volume.mount_point != target:
            raise ValidationError(
                f"Volume {volume.name} is already mounted at {volume.mount_point}",
                error_code="ALREADY_MOUNTED",
            )

        if not self.mounter.is_mounted(target):
            self.mounter.mount(volume.device, target)

        volume.mount_point = target
        self._save_volume(volume)
        return target

    def mount_volume(self, name: str, mount_point: str = "") -> str:
        with self.lock:
            return self._mount_volume(self.load_volume(name), mount_point)

    def umount_volume(self, name: str) -> None:
        with self.lock:
            volume = self.load_volume(name)
            if not volume.mount_point:
                logger.debug("Volume %s is not mounted", name)
                return

            if self.mounter.is_mounted(volume.mount_point):
                self.mounter.umount(volume.mount_point)

            volume.mount_point = ""
            self._save_volume(volume)

    def mount_point(self, name: str) -> str:
        return self.load_volume(name).mount_point

    def remove_volume(self, name: str, reference_only: bool = False) -> None:
        """
        Detach and delete a volume, then forget it.

        With reference_only the EBS volume is kept and a failing detach is
        tolerated; only the local record goes away.
        """
        with self.lock:
            volume = self.load_volume(name)

            try:
                self.client.detach_volume(volume.ebs_id)
            except EBSError as e:
                if not reference_only:
                    raise
                logger.warning(
                    "Unable to detach %s(%s) due to %s, but continue with removing the reference",
                    name, volume.ebs_id, e,
                )
            else:
                logger.debug("Detached %s(%s) from %s", name, volume.ebs_id, volume.device)

            if not reference_only:
                self.client.delete_volume(volume.ebs_id)
                logger.debug("Deleted volume %s(%s)", name, volume.ebs_id)

            self.store.delete(volume.record_key)

    def get_volume_info(self, name: str) -> Dict[str, Any]:
        with self.lock:
            volume = self.load_volume(name)
            ebs_volume = self.client.get_volume(volume.ebs_id)

        iops = ebs_volume.get("Iops")
        return {
            "Device": volume.device,
            "MountPoint": volume.mount_point,
            "EBSVolumeID": volume.ebs_id,
            "KmsKeyId": ebs_volume.get("KmsKeyId", ""),
            "AvailabilityZone": ebs_volume.get("AvailabilityZone", ""),
            OPT_VOLUME_NAME: name,
            OPT_VOLUME_CREATED_TIME: _format_time(ebs_volume.get("CreateTime")),
            OPT_SIZE: str(volume_size_bytes(ebs_volume)),
            "State": ebs_volume.get("State", ""),
            "Type": ebs_volume.get("VolumeType", ""),
            "IOPS": "" if iops is None else str(iops),
        }

    def list_volumes(self) -> Dict[str, Dict[str, Any]]:
        return {name: self.get_volume_info(name) for name in self.list_volume_names()}

    def remount_volumes(self) -> None:
        """Mount again every volume that was mounted when the process last ran."""
        for name in self.list_volume_names():
            volume = self.load_volume(name)
            if not volume.mount_point:
                continue
            logger.info("Remounting volume %s at %s", name, volume.mount_point)
            self._mount_volume(volume, "")

    # ---------------------------------------------------------------------
    # Snapshots
    # ---------------------------------------------------------------------

    def create_snapshot(self, volume_name: str, name: str) -> Snapshot:
        check_name("snapshot", name)
        with self.lock:
            volume = self.load_volume(volume_name)
            if name in volume.snapshots:
                raise SnapshotExistsError(name, volume_name)

            tags = {
                TAG_VOLUME_NAME: volume_name,
                TAG_SNAPSHOT_NAME: name,
            }
            snapshot_id = self.client.create_snapshot(volume.ebs_id, SNAPSHOT_DESCRIPTION, tags)
            logger.debug("Created snapshot %s(%s) of volume %s(%s)", name, snapshot_id, volume_name, volume.ebs_id)

            snapshot = Snapshot(name=name, volume_name=volume_name, ebs_id=snapshot_id)
            volume.snapshots[name] = snapshot
            self._save_volume(volume)
            return snapshot

    def remove_snapshot(self, volume_name: str, name: str) -> None:
        """
        Forget a snapshot.

        The EBS snapshot itself is left alone; it can still be referenced
        (and deleted) as a backup.
        """
        with self.lock:
            snapshot, volume = self._get_snapshot_and_volume(name, volume_name)
            logger.debug("Removing snapshot %s(%s) of volume %s(%s)", name, snapshot.ebs_id, volume_name, volume.ebs_id)

            del volume.snapshots[name]
            self._save_volume(volume)

    def _snapshot_info(self, name: str, volume_name: str) -> Dict[str, str]:
        snapshot, _ = self._get_snapshot_and_volume(name, volume_name)

        try:
            ebs_snapshot = self.client.get_snapshot(snapshot.ebs_id)
        except EBSError as e:
            # delete_backup may have removed the EBS snapshot.
            logger.debug("Snapshot %s(%s) not found: %s", name, snapshot.ebs_id, e)
            return {
                OPT_SNAPSHOT_NAME: snapshot.name,
                OPT_VOLUME_NAME: volume_name,
                "State": SNAPSHOT_STATE_REMOVED,
            }

        return {
            OPT_SNAPSHOT_NAME: snapshot.name,
            OPT_VOLUME_NAME: volume_name,
            "EBSSnapshotID": ebs_snapshot.get("SnapshotId", ""),
            "EBSVolumeID": ebs_snapshot.get("VolumeId", ""),
            "KmsKeyId": ebs_snapshot.get("KmsKeyId", ""),
            OPT_SNAPSHOT_CREATED_TIME: _format_time(ebs_snapshot.get("StartTime")),
            OPT_SIZE: str(volume_size_bytes(ebs_snapshot, "VolumeSize")),
            "State": ebs_snapshot.get("State", ""),
        }

    def get_snapshot_info(self, volume_name: str, name: str) -> Dict[str, str]:
        with self.lock:
            return self._snapshot_info(name, volume_name)

    def list_snapshots(self, volume_name: str = "") -> Dict[str, Dict[str, str]]:
        """
        Snapshot info for one volume or all of them.

        Keys are snapshot names for a single volume. Across all volumes they
        are "<volume>/<snapshot>", so same-named snapshots of different
        volumes are all listed.
        """
        with self.lock:
            names = [volume_name] if volume_name else self.list_volume_names()

            snapshots = {}
            for vname in names:
                volume = self.load_volume(vname)
                for sname in volume.snapshots:
                    key = sname if volume_name else f"{vname}/{sname}"
                    snapshots[key] = self._snapshot_info(sname, vname)
            return snapshots

    # ---------------------------------------------------------------------
    # Backups
    # ---------------------------------------------------------------------

    def create_backup(self, volume_name: str, snapshot_name: str) -> str:
        """Wait for the snapshot to complete and return its backup URL."""
        with self.lock:
            snapshot, _ = self._get_snapshot_and_volume(snapshot_name, volume_name)

        self.client.wait_for_snapshot_complete(snapshot.ebs_id)
        return encode_url(self.client.region, snapshot.ebs_id)

    def delete_backup(self, backup_url: str) -> None:
        region, snapshot_id = decode_url(backup_url)
        self.client.delete_snapshot_with_region(snapshot_id, region)

    def get_backup_info(self, backup_url: str) -> Dict[str, str]:
        region, snapshot_id = decode_url(backup_url)
        ebs_snapshot = self.client.get_snapshot_with_region(snapshot_id, region)

        return {
            "Region": region,
            "EBSSnapshotID": ebs_snapshot.get("SnapshotId", ""),
            "EBSVolumeID": ebs_snapshot.get("VolumeId", ""),
            "KmsKeyId": ebs_snapshot.get("KmsKeyId", ""),
            "StartTime": _format_time(ebs_snapshot.get("StartTime")),
            OPT_SIZE: str(volume_size_bytes(ebs_snapshot, "VolumeSize")),
            "State": ebs_snapshot.get("State", ""),
        }

    def list_backups(self, dest_url: str = "") -> Dict[str, Dict[str, str]]:
        # EBS snapshots are addressed by URL, there is no catalog to enumerate.
        return {}


def _load_or_create_device(store: ObjectStore, root: str, config: Dict[str, str]) -> Device:
    if store.exists(DRIVER_CONFIG_FILE):
        return Device.from_record(store.load(DRIVER_CONFIG_FILE))

    size = parse_size(config.get(EBS_DEFAULT_VOLUME_SIZE) or DEFAULT_VOLUME_SIZE)
    volume_type = config.get(EBS_DEFAULT_VOLUME_TYPE) or DEFAULT_VOLUME_TYPE
    check_volume_type(volume_type)

    device = Device(
        root=root,
        default_volume_size=size,
        default_volume_type=volume_type,
        default_kms_key_id=config.get(EBS_DEFAULT_VOLUME_KEY, ""),
    )
    store.save(DRIVER_CONFIG_FILE, device.to_record())
    logger.info("Initialized EBS backend at %s with defaults %s", root, device)
    return device


def init(
        root: str,
        config: Dict[str, str],
        client: Optional[EBSClient] = None,
        store: Optional[ObjectStore] = None,
        mounter: Optional[HostMounter] = None,
        executor_registry: Optional[ExecutorRegistry] = None,
        **client_kwargs,
) -> EBSDriver:
    """
    Create the EBS backend rooted at `root`.

    The Device defaults are read from <root>/ebs.cfg, or written there from
    `config` on first use. Volumes recorded as mounted are mounted again.
    """
    if client is None:
        client = EBSClient.from_instance_metadata(**client_kwargs)
    if store is None:
        store = FileObjectStore(root)
    if mounter is None:
        mounter = HostMounter()
    if executor_registry is None:
        executor_registry = build_executor_registry()

    device = _load_or_create_device(store, root, config)

    d = EBSDriver(client, device, store, mounter, executor_registry)
    d.remount_volumes()
    return d


def register(registry: DriverRegistry) -> None:
    registry.register(DRIVER_NAME, init)
