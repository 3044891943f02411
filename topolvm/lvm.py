"""Volume groups, thin pools and logical volumes managed through lvm."""

from __future__ import annotations

import posixpath
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .errors import (
    MINIMUM_SECTOR_SIZE,
    LVMError,
    NotFoundError,
    SectorSizeError,
    is_lvm_not_found,
)
from .lvm_runner import call_lvm
from .reports import LVRecord, VGRecord, get_lv_report, get_lvm_state, get_vg_report


def _full_name(name: str, vg: VolumeGroup) -> str:
    return f"{vg.name}/{name}"


def _tag_args(tags: Iterable[str]) -> list[str]:
    args: list[str] = []
    for tag in tags:
        args.extend(("--addtag", tag))
    return args


def _stripe_args(stripe: int, stripe_size: str) -> list[str]:
    if not stripe:
        return []
    args = ["-i", str(stripe)]
    if stripe_size:
        args.extend(("-I", stripe_size))
    return args


def _check_sector_multiple(size: int) -> None:
    if size % MINIMUM_SECTOR_SIZE != 0:
        raise SectorSizeError(MINIMUM_SECTOR_SIZE)


class VolumeGroup:
    """A volume group; its state is a snapshot refreshed only by :meth:`update`."""

    def __init__(
        self, state: VGRecord, report_lvs: dict[str, LVRecord] | None = None
    ) -> None:
        self.state = state
        # Filled by list_volume_groups; when set, volumes are read from it
        # instead of calling lvs again.
        self.report_lvs = report_lvs

    def __repr__(self) -> str:
        return f"VolumeGroup(name={self.name!r}, size={self.size}, free={self.free})"

    @property
    def name(self) -> str:
        """The volume group name."""
        return self.state.name

    @property
    def size(self) -> int:
        """Capacity of the volume group in bytes."""
        return self.state.size

    @property
    def free(self) -> int:
        """Free space of the volume group in bytes."""
        return self.state.free

    def update(self) -> None:
        """Reload the volume group state from lvm."""
        fresh = find_volume_group(self.name)
        self.report_lvs = None
        self.state = fresh.state

    def _lv_records(self, lv_name: str) -> dict[str, LVRecord]:
        if self.report_lvs:
            if lv_name:
                if lv_name in self.report_lvs:
                    return {lv_name: self.report_lvs[lv_name]}
                raise NotFoundError()
            return self.report_lvs
        target = self.name
        if lv_name:
            target += "/" + lv_name
        return get_lv_report(target)

    def _records(self, name: str) -> dict[str, LVRecord]:
        if self.report_lvs is not None:
            return self.report_lvs
        try:
            return self._lv_records(name)
        except NotFoundError:
            # An empty list is a valid answer.
            return {}

    def _convert(self, record: LVRecord) -> LogicalVolume:
        origin = record.origin or None
        pool = record.pool_lv or None
        size = record.size
        if origin is not None and pool is None:
            # A classic (non-thin) snapshot reports the size of its origin.
            size = record.origin_size
        return LogicalVolume(
            name=record.name,
            path=record.path,
            vg=self,
            size=size,
            origin=origin,
            pool=pool,
            dev_major=record.major,
            dev_minor=record.minor,
            tags=list(record.tags),
        )

    def _list_volumes(self, name: str) -> dict[str, LogicalVolume]:
        return {
            record.name: self._convert(record)
            for record in self._records(name).values()
            if not record.is_thin_pool()
        }

    def find_volume(self, name: str) -> LogicalVolume:
        """Return the logical volume called ``name`` in this group."""
        volume = self._list_volumes(name).get(name)
        if volume is None:
            raise NotFoundError()
        return volume

    def list_volumes(self) -> dict[str, LogicalVolume]:
        """Return every logical volume of this group that is not a thin pool."""
        return self._list_volumes("")

    def create_volume(
        self,
        name: str,
        size: int,
        tags: Iterable[str] = (),
        stripe: int = 0,
        stripe_size: str = "",
        lvcreate_options: Sequence[str] = (),
    ) -> None:
        """Create a thick logical volume of ``size`` bytes."""
        _check_sector_multiple(size)
        args = ["lvcreate", "-n", name, "-L", f"{size}b", "-W", "y", "-y"]
        args += _tag_args(tags)
        args += _stripe_args(stripe, stripe_size)
        args += list(lvcreate_options)
        args.append(self.name)
        call_lvm(*args)

    def find_pool(self, name: str) -> ThinPool:
        """Return the thin pool called ``name`` in this group."""
        pool = self.list_pools(name).get(name)
        if pool is None:
            raise NotFoundError()
        return pool

    def list_pools(self, pool_name: str = "") -> dict[str, ThinPool]:
        """Return the thin pools of this group, keyed by name."""
        return {
            record.name: ThinPool(self, record)
            for record in self._records(pool_name).values()
            if record.is_thin_pool()
        }

    def create_pool(self, name: str, size: int) -> ThinPool:
        """Create a thin pool of ``size`` bytes and return it."""
        call_lvm("lvcreate", "-T", f"{self.name}/{name}", "--size", f"{size}b")
        return self.find_pool(name)

    def remove_volume(self, name: str) -> None:
        """Remove the logical volume called ``name``."""
        try:
            call_lvm("lvremove", "-f", _full_name(name, self))
        except LVMError as err:
            if is_lvm_not_found(err):
                raise NotFoundError(f"not found: {err}") from err
            raise


def find_volume_group(name: str) -> VolumeGroup:
    """Look up the volume group called ``name``."""
    return VolumeGroup(get_vg_report(name))


def search_volume_group_list(vgs: Iterable[VolumeGroup], name: str) -> VolumeGroup:
    """Return the group called ``name`` from ``vgs``."""
    for vg in vgs:
        if vg.name == name:
            return vg
    raise NotFoundError()


def list_volume_groups() -> list[VolumeGroup]:
    """List every volume group with its volumes, using a single lvm call."""
    vgs, lvs = get_lvm_state()
    return [
        VolumeGroup(vg, {lv.name: lv for lv in lvs if lv.vg_name == vg.name})
        for vg in vgs
    ]


@dataclass
class ThinPoolUsage:
    """Current usage of a thin pool."""

    data_percent: float = 0.0
    metadata_percent: float = 0.0
    virtual_bytes: int = 0
    size_bytes: int = 0


@dataclass(eq=False)
class ThinPool:
    """A thin pool inside a volume group."""

    vg: VolumeGroup
    state: LVRecord

    @property
    def name(self) -> str:
        """The thin pool name."""
        return self.state.name

    @property
    def full_name(self) -> str:
        """The name prefixed with the volume group."""
        return self.state.full_name

    @property
    def size(self) -> int:
        """Size of the thin pool in bytes."""
        return self.state.size

    def resize(self, new_size: int) -> None:
        """Change the capacity of the thin pool."""
        if self.state.size == new_size:
            return
        _check_sector_multiple(new_size)
        call_lvm("lvresize", "-f", "-L", f"{new_size}b", self.state.full_name)
        # lvm may round the size, so read it back.
        self.state.size = self.vg.find_pool(self.name).size

    def list_volumes(self) -> dict[str, LogicalVolume]:
        """Return the thin volumes that live in this pool."""
        return {
            name: volume
            for name, volume in self.vg.list_volumes().items()
            if volume.pool == self.name
        }

    def find_volume(self, name: str) -> LogicalVolume:
        """Return the thin volume called ``name`` from this pool."""
        volume = self.vg.find_volume(name)
        if volume.pool != self.name:
            raise NotFoundError()
        return volume

    def create_volume(
        self,
        name: str,
        size: int,
        tags: Iterable[str] = (),
        stripe: int = 0,
        stripe_size: str = "",
        lvcreate_options: Sequence[str] = (),
    ) -> None:
        """Create a thin volume of virtual size ``size`` bytes in this pool."""
        args = [
            "lvcreate", "-T", self.full_name, "-n", name,
            "-V", f"{size}b", "-W", "y", "-y",
        ]
        args += _tag_args(tags)
        args += _stripe_args(stripe, stripe_size)
        args += list(lvcreate_options)
        call_lvm(*args)

    def free(self) -> ThinPoolUsage:
        """Return usage percentages, total virtual size of thin volumes and pool size."""
        return ThinPoolUsage(
            data_percent=self.state.data_percent,
            metadata_percent=self.state.metadata_percent,
            virtual_bytes=sum(volume.size for volume in self.list_volumes().values()),
            size_bytes=self.state.size,
        )


@dataclass(eq=False)
class LogicalVolume:
    """A logical volume inside a volume group."""

    name: str
    path: str
    vg: VolumeGroup
    size: int
    origin: str | None = None
    pool: str | None = None
    dev_major: int = 0
    dev_minor: int = 0
    tags: list[str] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        """The name prefixed with the volume group."""
        return _full_name(self.name, self.vg)

    @property
    def is_snapshot(self) -> bool:
        """Whether the volume is a snapshot."""
        return self.origin is not None

    @property
    def is_thin(self) -> bool:
        """Whether the volume is thinly provisioned."""
        return self.pool is not None

    def get_origin(self) -> LogicalVolume | None:
        """Return the origin volume of a snapshot, or None."""
        if self.origin is None:
            return None
        return self.vg.find_volume(self.origin)

    def get_pool(self) -> ThinPool | None:
        """Return the thin pool of a thin volume, or None."""
        if self.pool is None:
            return None
        return self.vg.find_pool(self.pool)

    def thin_snapshot(self, name: str, tags: Iterable[str] = ()) -> None:
        """Take a thin snapshot called ``name`` of this thin volume."""
        if not self.is_thin:
            raise ValueError(f"cannot take snapshot of non-thin volume: {self.full_name}")
        args = ["lvcreate", "-s", "-k", "n", "-n", name, self.full_name]
        args += _tag_args(tags)
        call_lvm(*args)

    def activate(self, access: str) -> None:
        """Activate the volume read-only ("ro") or read-write ("rw")."""
        if access == "ro":
            args = ["lvchange", "-p", "r", self.path]
        elif access == "rw":
            args = ["lvchange", "-k", "n", "-a", "y", self.path]
        else:
            raise ValueError(f"unknown access: {access} for LogicalVolume {self.full_name}")
        call_lvm(*args)

    def resize(self, new_size: int) -> None:
        """Grow the volume to ``new_size`` bytes."""
        if self.size > new_size:
            raise ValueError("volume cannot be shrunk")
        if self.size == new_size:
            return
        call_lvm("lvresize", "-L", f"{new_size}b", self.full_name)
        # lvm may round the size, so read it back.
        self.size = self.vg.find_volume(self.name).size

    def rename(self, name: str) -> None:
        """Rename the volume, updating its name and path."""
        call_lvm("lvrename", self.vg.name, self.name, name)
        self.name = name
        self.path = posixpath.join(posixpath.dirname(self.path), name)