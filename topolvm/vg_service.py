"""The volume group service: list volumes, report free space and watch capacity."""

from __future__ import annotations

import itertools
import logging
import math
import threading
from collections.abc import Callable
from typing import Any, Protocol

from .device_classes import (
    DeviceClass,
    DeviceClassManager,
    DeviceClassNotFoundError,
    DeviceType,
    get_spare,
)
from .errors import LVMError
from .lvm import find_volume_group, list_volume_groups
from .messages import (
    Code,
    GetFreeBytesRequest,
    GetFreeBytesResponse,
    GetLVListRequest,
    GetLVListResponse,
    LogicalVolumeInfo,
    ServiceError,
    ThinPoolItem,
    WatchItem,
    WatchResponse,
)

logger = logging.getLogger(__name__)

WATCH_POLL_INTERVAL = 0.05
"""Seconds between checks of a watch stream for cancellation."""

# Failures of lvm operations that are reported to callers as errors with a code.
_LVM_FAILURES = (LVMError, LookupError, ValueError, OSError)


class WatchStream(Protocol):
    """Where watch responses go; ``done`` is set when the watcher goes away."""

    done: threading.Event

    def send(self, response: WatchResponse) -> None:
        """Deliver one response."""


def _internal(err: BaseException) -> ServiceError:
    return ServiceError(Code.INTERNAL, str(err))


def _unsupported_target(dc: DeviceClass) -> ServiceError:
    return ServiceError(Code.INTERNAL, f"unsupported device class target: {dc.type}")


def _overprovision_bytes(dc: DeviceClass, usage: Any) -> int:
    assert dc.thin_pool_config is not None
    ratio = dc.thin_pool_config.overprovision_ratio
    return math.floor(ratio * float(usage.size_bytes)) - usage.virtual_bytes


class VGService:
    """Reports volumes and free space of device-classes and notifies watchers.

    ``volume_group_finder`` looks up one volume group by name and
    ``volume_group_lister`` lists all of them with their volumes.
    """

    def __init__(
        self,
        dc_manager: DeviceClassManager,
        *,
        volume_group_finder: Callable[[str], Any] = find_volume_group,
        volume_group_lister: Callable[[], list[Any]] = list_volume_groups,
        poll_interval: float = WATCH_POLL_INTERVAL,
    ) -> None:
        self.dc_manager = dc_manager
        self.poll_interval = poll_interval
        self._find_volume_group = volume_group_finder
        self._list_volume_groups = volume_group_lister
        self._lock = threading.Lock()
        self._counter = itertools.count()
        self._watchers: dict[int, threading.Event] = {}

    def _device_class(self, name: str) -> DeviceClass:
        try:
            return self.dc_manager.device_class(name)
        except DeviceClassNotFoundError as err:
            raise ServiceError(Code.NOT_FOUND, f"{err}: {name}") from err

    def get_lv_list(self, request: GetLVListRequest) -> GetLVListResponse:
        """List the logical volumes of the requested device-class."""
        dc = self._device_class(request.device_class)
        try:
            vg = self._find_volume_group(dc.volume_group)
        except _LVM_FAILURES as err:
            raise ServiceError(Code.NOT_FOUND, f"{err}: {dc.volume_group}") from err

        if dc.type == DeviceType.THICK:
            lvs = vg.list_volumes()
        elif dc.type == DeviceType.THIN:
            assert dc.thin_pool_config is not None
            pool = vg.find_pool(dc.thin_pool_config.name)
            lvs = pool.list_volumes()
        else:
            raise _unsupported_target(dc)

        volumes = [
            LogicalVolumeInfo(
                name=lv.name,
                size_gb=(lv.size + (1 << 30) - 1) >> 30,
                size_bytes=lv.size,
                dev_major=lv.dev_major,
                dev_minor=lv.dev_minor,
                tags=list(lv.tags),
            )
            for lv in lvs.values()
            # Thin volumes are not reported for a thick device-class.
            if not (dc.type == DeviceType.THICK and lv.is_thin)
        ]
        return GetLVListResponse(volumes=volumes)

    def get_free_bytes(self, request: GetFreeBytesRequest) -> GetFreeBytesResponse:
        """Return the free space of the requested device-class, minus its spare."""
        dc = self._device_class(request.device_class)
        vg = self._find_volume_group(dc.volume_group)

        if dc.type == DeviceType.THICK:
            free = vg.free
        elif dc.type == DeviceType.THIN:
            assert dc.thin_pool_config is not None
            try:
                pool = vg.find_pool(dc.thin_pool_config.name)
            except _LVM_FAILURES as err:
                logger.error("failed to get thinpool deviceClass=%s: %s", request.device_class, err)
                raise _internal(err) from err
            try:
                usage = pool.free()
            except _LVM_FAILURES as err:
                logger.error("failed to get free bytes deviceClass=%s: %s", request.device_class, err)
                raise _internal(err) from err
            free = _overprovision_bytes(dc, usage)
        else:
            raise _unsupported_target(dc)

        spare = get_spare(dc)
        free = 0 if free < spare else free - spare
        return GetFreeBytesResponse(free_bytes=free)

    def _capacity(self) -> WatchResponse:
        response = WatchResponse()
        for vg in self._list_volume_groups():
            vg_free = vg.free
            vg_size = vg.size
            try:
                pools = vg.list_pools("")
            except _LVM_FAILURES as err:
                raise _internal(err) from err

            for listed in pools.values():
                try:
                    dc = self.dc_manager.find_by_thin_pool_name(vg.name, listed.name)
                except DeviceClassNotFoundError:
                    continue
                assert dc.thin_pool_config is not None
                try:
                    pool = vg.find_pool(dc.thin_pool_config.name)
                    usage = pool.free()
                except _LVM_FAILURES as err:
                    raise _internal(err) from err

                overprovision = _overprovision_bytes(dc, usage)
                if dc.default:
                    response.free_bytes = overprovision
                response.items.append(
                    WatchItem(
                        device_class=dc.name,
                        free_bytes=vg_free,
                        size_bytes=vg_size,
                        thin_pool=ThinPoolItem(
                            data_percent=usage.data_percent,
                            metadata_percent=usage.metadata_percent,
                            overprovision_bytes=overprovision,
                            size_bytes=usage.size_bytes,
                        ),
                    )
                )

            try:
                dc = self.dc_manager.find_by_vg_name(vg.name)
            except DeviceClassNotFoundError:
                continue
            spare = get_spare(dc)
            vg_free = 0 if vg_free < spare else vg_free - spare
            if dc.default:
                response.free_bytes = vg_free
            response.items.append(
                WatchItem(device_class=dc.name, free_bytes=vg_free, size_bytes=vg_size)
            )
        return response

    def _add_watcher(self, pending: threading.Event) -> int:
        with self._lock:
            num = next(self._counter)
            self._watchers[num] = pending
            return num

    def _remove_watcher(self, num: int) -> None:
        with self._lock:
            if num not in self._watchers:
                raise RuntimeError(f"watcher {num} is not registered")
            del self._watchers[num]

    def notify_watchers(self) -> None:
        """Ask every watcher to send fresh capacity; repeated requests coalesce."""
        with self._lock:
            for pending in self._watchers.values():
                pending.set()

    def watch(self, stream: WatchStream) -> None:
        """Send capacity now and after every notification until ``stream.done`` is set."""
        pending = threading.Event()
        num = self._add_watcher(pending)
        try:
            stream.send(self._capacity())
            while not stream.done.is_set():
                if not pending.wait(self.poll_interval):
                    continue
                pending.clear()
                if stream.done.is_set():
                    break
                stream.send(self._capacity())
        finally:
            self._remove_watcher(num)