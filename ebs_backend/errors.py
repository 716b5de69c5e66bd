"""
ebs-backend error definitions

Every error raised by the backend derives from EBSError and carries a short
error code plus optional structured details.
"""

from typing import Any, Dict, Optional


class EBSError(Exception):
    """Base exception for all EBS backend errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "UNKNOWN"
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(EBSError):
    """Malformed or conflicting request"""

    def __init__(self, message: str, error_code: str = "INVALID_REQUEST", details=None):
        super().__init__(message, error_code=error_code, details=details)


class MissingOptionError(ValidationError):
    """A required option key was not supplied"""

    def __init__(self, key: str):
        super().__init__(f"Required option '{key}' not provided", error_code="MISSING_OPTION")
        self.key = key


class InvalidBackupURLError(ValidationError):
    """Backup reference could not be decoded"""

    def __init__(self, backup_url: str, reason: str):
        super().__init__(
            f"Invalid backup URL '{backup_url}': {reason}",
            error_code="INVALID_BACKUP_URL"
        )
        self.backup_url = backup_url


class VolumeExistsError(ValidationError):
    """Volume with this name is already tracked"""

    def __init__(self, name: str):
        super().__init__(f"Volume '{name}' already exists", error_code="VOL_EXISTS")
        self.name = name


class SnapshotExistsError(ValidationError):
    def __init__(self, name: str, volume_name: str):
        super().__init__(
            f"Snapshot '{name}' already exists for volume '{volume_name}'",
            error_code="SNAP_EXISTS"
        )
        self.name = name
        self.volume_name = volume_name


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class RecordNotFoundError(EBSError):
    """Metadata record missing from the object store"""

    def __init__(self, key: str):
        super().__init__(f"Record '{key}' not found", error_code="RECORD_NOT_FOUND")
        self.key = key


class VolumeNotFoundError(EBSError):
    def __init__(self, name: str):
        super().__init__(f"Volume '{name}' not found", error_code="VOL_NOT_FOUND")
        self.name = name


class SnapshotNotFoundError(EBSError):
    def __init__(self, name: str, volume_name: str):
        super().__init__(
            f"Cannot find snapshot '{name}' of volume '{volume_name}'",
            error_code="SNAP_NOT_FOUND"
        )
        self.name = name
        self.volume_name = volume_name


# ---------------------------------------------------------------------------
# Provider / consistency
# ---------------------------------------------------------------------------

class ProviderError(EBSError):
    """A control-plane call failed; carries the call and its identifiers"""

    def __init__(self, operation: str, message: str, details=None):
        super().__init__(
            f"{operation} failed: {message}",
            error_code="PROVIDER_ERROR",
            details=details
        )
        self.operation = operation


class ConsistencyError(EBSError):
    """Provider returned something that cannot be right (zero/many results, wrong resource)"""

    def __init__(self, message: str, details=None):
        super().__init__(message, error_code="CONSISTENCY_VIOLATION", details=details)


class WaitTimeoutError(EBSError):
    def __init__(self, resource_id: str, target: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for {resource_id} to become {target}",
            error_code="WAIT_TIMEOUT"
        )
        self.resource_id = resource_id
        self.timeout = timeout


class WaitCancelledError(EBSError):
    def __init__(self, resource_id: str, target: str):
        super().__init__(
            f"Cancelled while waiting for {resource_id} to become {target}",
            error_code="WAIT_CANCELLED"
        )
        self.resource_id = resource_id


# ---------------------------------------------------------------------------
# Host devices
# ---------------------------------------------------------------------------

class NoFreeDeviceError(EBSError):
    def __init__(self, instance_id: str):
        super().__init__(
            f"Cannot find an available device for instance {instance_id}",
            error_code="NO_FREE_DEVICE"
        )
        self.instance_id = instance_id


class AmbiguousDeviceError(EBSError):
    def __init__(self, first: str, second: str, size: int):
        super().__init__(
            f"Found more than one device matching size {size}: {first} and {second}",
            error_code="AMBIGUOUS_DEVICE"
        )
        self.candidates = (first, second)


class DeviceNotFoundError(EBSError):
    def __init__(self, size: int):
        super().__init__(
            f"Cannot find a new block device of size {size}",
            error_code="DEVICE_NOT_FOUND"
        )
        self.size = size


class CommandError(EBSError):
    """A host command (mount, umount, mkfs) failed"""

    def __init__(self, cmd, reason: str):
        super().__init__(
            f"Command '{' '.join(cmd)}' failed: {reason}",
            error_code="COMMAND_FAILED"
        )
        self.cmd = list(cmd)


# ---------------------------------------------------------------------------
# Registries
# ---------------------------------------------------------------------------

class RegistrationError(EBSError):
    def __init__(self, message: str):
        super().__init__(message, error_code="REGISTRATION")


class UnknownDriverError(EBSError):
    def __init__(self, name: str):
        super().__init__(f"Driver '{name}' is not supported", error_code="UNKNOWN_DRIVER")
        self.name = name


class NoExecutorsError(EBSError):
    def __init__(self, hints):
        super().__init__(
            f"No executors found with hints: {list(hints)}",
            error_code="NO_EXECUTORS"
        )
        self.hints = list(hints)
