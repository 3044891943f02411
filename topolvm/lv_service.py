"""The logical volume service: create, remove, resize and snapshot volumes."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from typing import Any

from .device_classes import (
    DeviceClass,
    DeviceClassManager,
    DeviceClassNotFoundError,
    DeviceType,
    LvcreateOptionClassManager,
)
from .errors import LVMError, NotFoundError
from .lvm import find_volume_group
from .messages import (
    Code,
    CreateLVRequest,
    CreateLVResponse,
    CreateLVSnapshotRequest,
    CreateLVSnapshotResponse,
    LogicalVolumeInfo,
    RemoveLVRequest,
    ResizeLVRequest,
    ServiceError,
)

logger = logging.getLogger(__name__)

# Failures of lvm operations that are reported to callers as internal errors.
_LVM_FAILURES = (LVMError, LookupError, ValueError, OSError)


def _volume_info(lv: Any) -> LogicalVolumeInfo:
    return LogicalVolumeInfo(
        name=lv.name,
        # The size in GiB is still filled for older clients.
        size_gb=lv.size >> 30,
        size_bytes=lv.size,
        dev_major=lv.dev_major,
        dev_minor=lv.dev_minor,
    )


def _unsupported_target(dc: DeviceClass) -> ServiceError:
    return ServiceError(Code.INTERNAL, f"unsupported device class target: {dc.type}")


class LVService:
    """Creates, removes, resizes and snapshots logical volumes of device-classes.

    ``notify`` is called after every change; ``volume_group_finder`` looks up a
    volume group by name.
    """

    def __init__(
        self,
        dc_manager: DeviceClassManager,
        oc_manager: LvcreateOptionClassManager,
        notify: Callable[[], None] | None = None,
        *,
        volume_group_finder: Callable[[str], Any] = find_volume_group,
    ) -> None:
        self.dc_manager = dc_manager
        self.oc_manager = oc_manager
        self._notify_func = notify
        self._find_volume_group = volume_group_finder

    def _notify(self) -> None:
        if self._notify_func is not None:
            self._notify_func()

    def _device_class(self, name: str) -> DeviceClass:
        try:
            return self.dc_manager.device_class(name)
        except DeviceClassNotFoundError as err:
            raise ServiceError(Code.NOT_FOUND, f"{err}: {name}") from err

    def _free_bytes(self, vg: Any, dc: DeviceClass) -> tuple[int, Any]:
        """Return the free bytes for ``dc`` and its thin pool (None when thick)."""
        if dc.type == DeviceType.THICK:
            return vg.free, None
        if dc.type == DeviceType.THIN:
            assert dc.thin_pool_config is not None
            try:
                pool = vg.find_pool(dc.thin_pool_config.name)
            except _LVM_FAILURES as err:
                logger.error("failed to get thinpool: %s", err)
                raise ServiceError(Code.INTERNAL, str(err)) from err
            try:
                usage = pool.free()
            except _LVM_FAILURES as err:
                logger.error("failed to get free bytes: %s", err)
                raise ServiceError(Code.INTERNAL, str(err)) from err
            ratio = dc.thin_pool_config.overprovision_ratio
            free = math.floor(ratio * float(usage.size_bytes)) - usage.virtual_bytes
            return free, pool
        raise _unsupported_target(dc)

    def create_lv(self, request: CreateLVRequest) -> CreateLVResponse:
        """Create a logical volume in the requested device-class."""
        dc = self._device_class(request.device_class)
        vg = self._find_volume_group(dc.volume_group)
        option_class = self.oc_manager.get(request.lvcreate_option_class)
        requested = request.requested_bytes

        free, pool = self._free_bytes(vg, dc)
        if free < requested:
            logger.error(
                "not enough space left on VG name=%s free=%d requested=%d",
                request.name, free, requested,
            )
            raise ServiceError(
                Code.RESOURCE_EXHAUSTED,
                f"no enough space left on VG: free={free}, requested={requested}",
            )

        stripe = 0
        stripe_size = ""
        options: list[str] = []
        if option_class is not None:
            options = list(option_class.options)
        elif request.lvcreate_option_class:
            raise ServiceError(
                Code.INTERNAL,
                f"unsupported lvcreate-option-class target: {request.lvcreate_option_class}",
            )
        else:
            stripe_size = dc.stripe_size
            if dc.stripe is not None:
                stripe = dc.stripe
            if dc.lvcreate_options is not None:
                options = list(dc.lvcreate_options)

        target = vg if dc.type == DeviceType.THICK else pool
        try:
            target.create_volume(
                request.name, requested, list(request.tags), stripe, stripe_size, options
            )
        except _LVM_FAILURES as err:
            logger.error(
                "failed to create volume name=%s requested=%d tags=%s: %s",
                request.name, requested, request.tags, err,
            )
            raise ServiceError(Code.INTERNAL, str(err)) from err

        try:
            lv = vg.find_volume(request.name)
        except _LVM_FAILURES as err:
            logger.error("failed to find volume name=%s: %s", request.name, err)
            raise ServiceError(Code.INTERNAL, str(err)) from err

        self._notify()
        logger.info("created a new LV name=%s size=%d", request.name, requested)
        return CreateLVResponse(volume=_volume_info(lv))

    def remove_lv(self, request: RemoveLVRequest) -> None:
        """Remove a logical volume from the requested device-class."""
        dc = self._device_class(request.device_class)
        try:
            vg = self._find_volume_group(dc.volume_group)
        except NotFoundError as err:
            raise ServiceError(Code.NOT_FOUND, f"{err}: {request.device_class}") from err

        try:
            vg.remove_volume(request.name)
        except NotFoundError as err:
            raise ServiceError(Code.NOT_FOUND, f"{err}: {request.device_class}") from err

        self._notify()
        logger.info("removed a LV name=%s", request.name)

    def create_lv_snapshot(self, request: CreateLVSnapshotRequest) -> CreateLVSnapshotResponse:
        """Take a thin snapshot of a volume, grow it and activate it."""
        dc = self._device_class(request.device_class)
        if dc.type == DeviceType.THIN:
            snap_type = "thin-snapshot"
        elif dc.type == DeviceType.THICK:
            raise ServiceError(
                Code.UNIMPLEMENTED,
                "device class is not thin. Thick snapshots are not implemented yet",
            )
        else:
            raise ServiceError(Code.INVALID_ARGUMENT, f"invalid device class type {dc.type}")

        vg = self._find_volume_group(dc.volume_group)
        source_name = request.source_volume
        try:
            source = vg.find_volume(source_name)
        except NotFoundError as err:
            logger.error("source logical volume is not found: %s", source_name)
            raise ServiceError(
                Code.NOT_FOUND, f"source logical volume {source_name} is not found"
            ) from err
        except _LVM_FAILURES as err:
            logger.error("failed to find source volume %s: %s", source_name, err)
            raise ServiceError(Code.INTERNAL, str(err)) from err

        if not source.is_thin:
            raise ServiceError(
                Code.UNIMPLEMENTED, "snapshot can be created for only thin volumes"
            )

        # A thin snapshot starts at the size of its source and is grown afterwards.
        size_on_creation = source.size
        desired = request.requested_bytes or size_on_creation
        if size_on_creation > desired:
            raise ServiceError(
                Code.OUT_OF_RANGE,
                f"requested size {desired} is smaller than source logical volume: "
                f"{size_on_creation}",
            )

        logger.info(
            "lvservice req sizeOnCreation=%d desiredSize=%d sourceVol=%s snapType=%s "
            "accessType=%s",
            size_on_creation, desired, source_name, snap_type, request.access_type,
        )

        try:
            source.thin_snapshot(request.name, list(request.tags))
        except _LVM_FAILURES as err:
            logger.error("failed to create snapshot volume: %s", err)
            raise ServiceError(Code.INTERNAL, str(err)) from err

        try:
            snapshot = vg.find_volume(request.name)
        except _LVM_FAILURES as err:
            logger.error("failed to get snapshot after creation: %s", err)
            raise ServiceError(Code.INTERNAL, str(err)) from err

        try:
            snapshot.resize(desired)
        except _LVM_FAILURES as err:
            logger.error("failed to resize snapshot volume: %s", err)
            raise ServiceError(Code.INTERNAL, str(err)) from err

        try:
            snapshot.activate(request.access_type)
        except _LVM_FAILURES as err:
            logger.error("failed to activate snapshot volume: %s", err)
            try:
                vg.remove_volume(request.name)
            except _LVM_FAILURES as remove_err:
                logger.error("failed to delete snapshot after activation failed: %s", remove_err)
            else:
                logger.info("deleted a snapshot")
            raise ServiceError(Code.INTERNAL, str(err)) from err

        self._notify()
        logger.info(
            "created a new snapshot LV size=%d accessType=%s sourceID=%s",
            desired, request.access_type, source_name,
        )
        return CreateLVSnapshotResponse(snapshot=_volume_info(snapshot))

    def resize_lv(self, request: ResizeLVRequest) -> None:
        """Grow a logical volume of the requested device-class."""
        dc = self._device_class(request.device_class)
        vg = self._find_volume_group(dc.volume_group)
        try:
            lv = vg.find_volume(request.name)
        except NotFoundError as err:
            logger.error("logical volume is not found: %s", request.name)
            raise ServiceError(
                Code.NOT_FOUND, f"logical volume {request.name} is not found"
            ) from err
        except _LVM_FAILURES as err:
            logger.error("failed to find volume %s: %s", request.name, err)
            raise ServiceError(Code.INTERNAL, str(err)) from err

        requested = request.requested_bytes
        current = lv.size
        if requested < current:
            logger.error(
                "shrinking volume size is not allowed requested=%d current=%d",
                requested, current,
            )
            raise ServiceError(Code.OUT_OF_RANGE, "shrinking volume size is not allowed")

        free, _ = self._free_bytes(vg, dc)
        if free < requested - current:
            logger.error(
                "no enough space left on VG requested=%d current=%d free=%d",
                requested, current, free,
            )
            raise ServiceError(
                Code.RESOURCE_EXHAUSTED,
                f"no enough space left on VG: free={free}, requested={requested - current}",
            )

        try:
            lv.resize(requested)
        except _LVM_FAILURES as err:
            logger.error(
                "failed to resize LV requested=%d current=%d free=%d: %s",
                requested, current, free, err,
            )
            raise ServiceError(Code.INTERNAL, str(err)) from err

        self._notify()
        logger.info("resized a LV name=%s size=%d", request.name, requested)