"""Request and response messages of the lvmd services, status codes and health checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class Code(IntEnum):
    """Status codes carried by a ServiceError."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class ServiceError(Exception):
    """A service call failed with a status code."""

    def __init__(self, code: Code, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.name}: {self.message}"


def _requested_bytes(size_bytes: int, size_gb: int) -> int:
    # Older callers send only the size in GiB.
    if size_bytes > 0:
        return size_bytes
    return size_gb << 30


@dataclass
class LogicalVolumeInfo:
    """A logical volume as reported to clients."""

    name: str = ""
    size_gb: int = 0
    size_bytes: int = 0
    dev_major: int = 0
    dev_minor: int = 0
    tags: list[str] = field(default_factory=list)


@dataclass
class CreateLVRequest:
    """Ask for a new logical volume."""

    name: str = ""
    device_class: str = ""
    size_gb: int = 0
    size_bytes: int = 0
    tags: list[str] = field(default_factory=list)
    lvcreate_option_class: str = ""

    @property
    def requested_bytes(self) -> int:
        """The requested size in bytes."""
        return _requested_bytes(self.size_bytes, self.size_gb)


@dataclass
class CreateLVResponse:
    """The logical volume that was created."""

    volume: LogicalVolumeInfo | None = None


@dataclass
class RemoveLVRequest:
    """Ask for a logical volume to be removed."""

    name: str = ""
    device_class: str = ""


@dataclass
class ResizeLVRequest:
    """Ask for a logical volume to be grown."""

    name: str = ""
    device_class: str = ""
    size_gb: int = 0
    size_bytes: int = 0

    @property
    def requested_bytes(self) -> int:
        """The requested size in bytes."""
        return _requested_bytes(self.size_bytes, self.size_gb)


@dataclass
class CreateLVSnapshotRequest:
    """Ask for a thin snapshot of a logical volume."""

    name: str = ""
    device_class: str = ""
    source_volume: str = ""
    size_gb: int = 0
    size_bytes: int = 0
    access_type: str = ""
    tags: list[str] = field(default_factory=list)

    @property
    def requested_bytes(self) -> int:
        """The requested size in bytes, 0 when none was given."""
        return _requested_bytes(self.size_bytes, self.size_gb)


@dataclass
class CreateLVSnapshotResponse:
    """The snapshot that was created."""

    snapshot: LogicalVolumeInfo | None = None


@dataclass
class GetLVListRequest:
    """Ask for the logical volumes of a device-class."""

    device_class: str = ""


@dataclass
class GetLVListResponse:
    """The logical volumes of a device-class."""

    volumes: list[LogicalVolumeInfo] = field(default_factory=list)


@dataclass
class GetFreeBytesRequest:
    """Ask for the free space of a device-class."""

    device_class: str = ""


@dataclass
class GetFreeBytesResponse:
    """The free space of a device-class in bytes."""

    free_bytes: int = 0


@dataclass
class ThinPoolItem:
    """Usage of a thin pool."""

    data_percent: float = 0.0
    metadata_percent: float = 0.0
    overprovision_bytes: int = 0
    size_bytes: int = 0


@dataclass
class WatchItem:
    """Capacity of one device-class."""

    device_class: str = ""
    free_bytes: int = 0
    size_bytes: int = 0
    thin_pool: ThinPoolItem | None = None


@dataclass
class WatchResponse:
    """Capacity of every device-class, sent on each change."""

    free_bytes: int = 0
    items: list[WatchItem] = field(default_factory=list)

    def merge_from(self, other: WatchResponse) -> None:
        """Merge ``other`` in: a non-zero free_bytes overwrites, items are appended."""
        if other.free_bytes:
            self.free_bytes = other.free_bytes
        self.items.extend(other.items)


class HealthStatus(Enum):
    """Serving status reported by a health check."""

    UNKNOWN = 0
    SERVING = 1
    NOT_SERVING = 2
    SERVICE_UNKNOWN = 3


class HealthService:
    """Health checks for lvmd; it always reports serving."""

    def check(self, request: object = None) -> HealthStatus:
        """Return the serving status."""
        return HealthStatus.SERVING