"""
EBS driver executors.

Each executor runs one use case against an EBSDriver. They are looked up by
name through the driver:

    execs = driver.executors(EBS_VOLUME_CREATE_EXEC, EBS_SNAP_CREATE_EXEC)
    execs[EBS_VOLUME_CREATE_EXEC].exec(Request("vol1", {"Size": "4G"}))
"""

from ebs_backend.driver import Executor, ExecutorRegistry, Request, Response
from ebs_backend.errors import MissingOptionError
from ebs_backend.options import (
    OPT_BACKUP_URL,
    OPT_MOUNT_POINT,
    OPT_VOLUME_NAME,
    BackupCreateOptions,
    BackupOptions,
    CreateVolumeOptions,
    MountOptions,
    RemoveVolumeOptions,
    SnapshotOptions,
)

EBS_VOLUME_CREATE_EXEC = "ebs.volume.create.executor"
EBS_VOLUME_REMOVE_EXEC = "ebs.volume.remove.executor"
EBS_VOLUME_READ_EXEC = "ebs.volume.read.executor"
EBS_VOLUME_LIST_EXEC = "ebs.volume.list.executor"
EBS_VOLUME_MOUNT_EXEC = "ebs.volume.mount.executor"
EBS_VOLUME_UMOUNT_EXEC = "ebs.volume.umount.executor"
EBS_SNAP_CREATE_EXEC = "ebs.snapshot.create.executor"
EBS_SNAP_REMOVE_EXEC = "ebs.snapshot.remove.executor"
EBS_SNAPSHOT_READ_EXEC = "ebs.snapshot.read.executor"
EBS_SNAPSHOT_LIST_EXEC = "ebs.snapshot.list.executor"
EBS_BACKUP_CREATE_EXEC = "ebs.backup.create.executor"
EBS_BACKUP_REMOVE_EXEC = "ebs.backup.remove.executor"
EBS_BACKUP_READ_EXEC = "ebs.backup.read.executor"
EBS_BACKUP_LIST_EXEC = "ebs.backup.list.executor"


def _require_name(req: Request) -> str:
    if not req.name:
        raise MissingOptionError("Name")
    return req.name


class _DriverExecutor(Executor):
    def __init__(self, driver):
        self.d = driver


class VolumeCreator(_DriverExecutor):
    """Create (or adopt, or restore) a volume, attach it, format it if new."""

    def exec(self, req: Request) -> Response:
        volume = self.d.create_volume(_require_name(req), CreateVolumeOptions.from_options(req.options))
        return Response(values={"Volume": volume.to_record()})


class VolumeRemover(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        opts = RemoveVolumeOptions.from_options(req.options)
        self.d.remove_volume(_require_name(req), reference_only=opts.reference_only)
        return Response()


class VolumeReader(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        name = req.name or req.options.get(OPT_VOLUME_NAME, "")
        if not name:
            raise MissingOptionError(OPT_VOLUME_NAME)
        return Response(values=self.d.get_volume_info(name))


class VolumeLister(_DriverExecutor):
    """Read every recorded volume through the volume reader."""

    def exec(self, req: Request) -> Response:
        reader = self.d.executors(EBS_VOLUME_READ_EXEC)[EBS_VOLUME_READ_EXEC]

        values = {}
        for name in self.d.list_volume_names():
            values[name] = reader.exec(Request(name=name)).values
        return Response(values=values)


class VolumeMounter(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        opts = MountOptions.from_options(req.options)
        mount_point = self.d.mount_volume(_require_name(req), opts.mount_point)
        return Response(values={OPT_MOUNT_POINT: mount_point})


class VolumeUmounter(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        self.d.umount_volume(_require_name(req))
        return Response()


class SnapshotCreator(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        opts = SnapshotOptions.from_options(req.options)
        snapshot = self.d.create_snapshot(opts.volume_name, _require_name(req))
        return Response(values={"Snapshot": snapshot.to_record()})


class SnapshotRemover(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        opts = SnapshotOptions.from_options(req.options)
        self.d.remove_snapshot(opts.volume_name, _require_name(req))
        return Response()


class SnapshotReader(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        name = _require_name(req)
        opts = SnapshotOptions.from_options(req.options)
        return Response(values={name: self.d.get_snapshot_info(opts.volume_name, name)})


class SnapshotLister(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        # VolumeName is optional here: without it every volume is listed.
        return Response(values=self.d.list_snapshots(req.options.get(OPT_VOLUME_NAME, "")))


class BackupCreator(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        opts = BackupCreateOptions.from_options(req.options)
        backup_url = self.d.create_backup(opts.volume_name, opts.snapshot_name)
        return Response(values={OPT_BACKUP_URL: backup_url})


class BackupRemover(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        self.d.delete_backup(BackupOptions.from_options(req.options).backup_url)
        return Response()


class BackupReader(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        return Response(values=self.d.get_backup_info(BackupOptions.from_options(req.options).backup_url))


class BackupLister(_DriverExecutor):
    def exec(self, req: Request) -> Response:
        return Response(values=self.d.list_backups(req.options.get(OPT_BACKUP_URL, "")))


def build_executor_registry() -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register(EBS_VOLUME_CREATE_EXEC, VolumeCreator)
    registry.register(EBS_VOLUME_REMOVE_EXEC, VolumeRemover)
    registry.register(EBS_VOLUME_READ_EXEC, VolumeReader)
    registry.register(EBS_VOLUME_LIST_EXEC, VolumeLister)
    registry.register(EBS_VOLUME_MOUNT_EXEC, VolumeMounter)
    registry.register(EBS_VOLUME_UMOUNT_EXEC, VolumeUmounter)
    registry.register(EBS_SNAP_CREATE_EXEC, SnapshotCreator)
    registry.register(EBS_SNAP_REMOVE_EXEC, SnapshotRemover)
    registry.register(EBS_SNAPSHOT_READ_EXEC, SnapshotReader)
    registry.register(EBS_SNAPSHOT_LIST_EXEC, SnapshotLister)
    registry.register(EBS_BACKUP_CREATE_EXEC, BackupCreator)
    registry.register(EBS_BACKUP_REMOVE_EXEC, BackupRemover)
    registry.register(EBS_BACKUP_READ_EXEC, BackupReader)
    registry.register(EBS_BACKUP_LIST_EXEC, BackupLister)
    return registry
