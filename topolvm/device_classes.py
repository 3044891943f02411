"""Device-classes and lvcreate-option-classes, with their validation and lookup."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

DEFAULT_SPARE_GB = 10
"""Spare space, in GiB, kept free on a device-class that sets none."""

DEFAULT_DEVICE_CLASS_NAME = ""
"""Name by which the default device-class is requested."""

_MAX_NAME_LENGTH = 63

# Based on the Kubernetes qualified-name validation.
_QUALIFIED_NAME = re.compile(r"([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]")
_STRIPE_SIZE = re.compile(r"([0-9]*)(k|m|g|t|p|e|b|s)?", re.IGNORECASE)


class DeviceType(str, Enum):
    """Where the volumes of a device-class are created."""

    THICK = "thick"
    THIN = "thin"

    def __str__(self) -> str:
        return self.value


@dataclass
class ThinPoolConfig:
    """The thin pool behind a thin device-class."""

    name: str = ""
    overprovision_ratio: float = 0.0


@dataclass
class DeviceClass:
    """A named class of storage mapped to a volume group or a thin pool."""

    name: str
    volume_group: str
    default: bool = False
    spare_gb: int | None = None
    stripe: int | None = None
    stripe_size: str = ""
    lvcreate_options: list[str] | None = None
    type: DeviceType | str = ""
    thin_pool_config: ThinPoolConfig | None = None


@dataclass
class LvcreateOptionClass:
    """A named set of extra options passed to lvcreate."""

    name: str
    options: list[str] = field(default_factory=list)


class DeviceClassNotFoundError(LookupError):
    """No device-class matches the lookup."""

    def __init__(self, message: str = "device-class not found") -> None:
        super().__init__(message)


def get_spare(dc: DeviceClass) -> int:
    """Return the spare space of ``dc`` in bytes."""
    if dc.spare_gb is None:
        return DEFAULT_SPARE_GB << 30
    return dc.spare_gb << 30


def _validate_type(dc: DeviceClass) -> None:
    if dc.type not in ("", DeviceType.THICK, DeviceType.THIN):
        raise ValueError(
            f"target 'type' of device-class can be one of '{DeviceType.THICK}' or "
            f"'{DeviceType.THIN}' or empty to default to '{DeviceType.THICK}'"
        )


def _target_name(dc: DeviceClass) -> str:
    """Return the volume group, or ``vg/pool`` for a thin class, after checking it."""
    if dc.type != DeviceType.THIN:
        # Any thin pool config is ignored for thick classes.
        return dc.volume_group
    config = dc.thin_pool_config
    if config is None:
        raise ValueError(f"device class type is thin but thinpool config is empty: {dc.name}")
    if not config.name:
        raise ValueError(f"thinpool name should not be empty: {dc.name}")
    if config.overprovision_ratio < 1.0:
        raise ValueError(
            f"overprovision ratio for thin pool {config.name} in device class "
            f"{dc.name} should be greater than 1.0"
        )
    return f"{dc.volume_group}/{config.name}"


def validate_device_classes(device_classes: Iterable[DeviceClass]) -> None:
    """Check a list of device-classes, raising ValueError on the first problem."""
    device_classes = list(device_classes)
    if not device_classes:
        raise ValueError("should have at least one device-class")

    default_count = 0
    dc_names: set[str] = set()
    target_names: set[str] = set()
    for dc in device_classes:
        if not dc.name:
            raise ValueError("device-class name should not be empty")
        if len(dc.name.encode()) > _MAX_NAME_LENGTH:
            raise ValueError(f"device-class name is too long: {dc.name}")
        if not _QUALIFIED_NAME.fullmatch(dc.name):
            raise ValueError(
                "device-class name should consist of alphanumeric characters, '-', '_' "
                "or '.', and should start and end with an alphanumeric character: "
                f"{dc.name}"
            )
        if not dc.volume_group:
            raise ValueError(f"volume group name should not be empty: {dc.name}")
        if dc.default:
            default_count += 1
        if dc.name in dc_names:
            raise ValueError(f"duplicate device-class name: {dc.name}")

        _validate_type(dc)
        # A volume group, or a volume group and thin pool pair, may back one class only.
        target = _target_name(dc)
        if target in target_names:
            raise ValueError(f"duplicate volumegroup/thinpool name: {dc.name}, {target}")

        dc_names.add(dc.name)
        target_names.add(target)
        if dc.stripe_size and not _STRIPE_SIZE.fullmatch(dc.stripe_size):
            raise ValueError(f'stripe-size format is "Size[k|UNIT]": {dc.name}')

    if default_count > 1:
        raise ValueError("should not have multiple default device-class")


class DeviceClassManager:
    """Maps between device-classes, volume groups and thin pools.

    Device-classes with no type are set to thick.
    """

    def __init__(self, device_classes: Iterable[DeviceClass]) -> None:
        self.default_device_class: DeviceClass | None = None
        self._by_name: dict[str, DeviceClass] = {}
        self._by_vg_name: dict[str, DeviceClass] = {}
        self._by_thin_pool_name: dict[str, DeviceClass] = {}
        for dc in device_classes:
            if dc.default:
                self.default_device_class = dc
            self._by_name[dc.name] = dc
            if dc.type in ("", DeviceType.THICK):
                dc.type = DeviceType.THICK
                self._by_vg_name[dc.volume_group] = dc
            elif dc.type == DeviceType.THIN and dc.thin_pool_config is not None:
                # Pools of the same name may live in different volume groups.
                key = f"{dc.volume_group}/{dc.thin_pool_config.name}"
                self._by_thin_pool_name[key] = dc

    def device_class(self, name: str) -> DeviceClass:
        """Return the device-class called ``name``; the empty name means the default."""
        if name == DEFAULT_DEVICE_CLASS_NAME and self.default_device_class is not None:
            return self.default_device_class
        try:
            return self._by_name[name]
        except KeyError:
            raise DeviceClassNotFoundError() from None

    def find_by_vg_name(self, vg_name: str) -> DeviceClass:
        """Return the thick device-class backed by volume group ``vg_name``."""
        try:
            return self._by_vg_name[vg_name]
        except KeyError:
            raise DeviceClassNotFoundError() from None

    def find_by_thin_pool_name(self, vg_name: str, pool_name: str) -> DeviceClass:
        """Return the thin device-class backed by ``pool_name`` in ``vg_name``."""
        try:
            return self._by_thin_pool_name[f"{vg_name}/{pool_name}"]
        except KeyError:
            raise DeviceClassNotFoundError() from None


class LvcreateOptionClassManager:
    """Looks up lvcreate-option-classes by name."""

    def __init__(self, option_classes: Iterable[LvcreateOptionClass] | None = None) -> None:
        self.by_name: dict[str, LvcreateOptionClass] = {
            oc.name: oc for oc in option_classes or ()
        }

    def get(self, name: str) -> LvcreateOptionClass | None:
        """Return the option class called ``name``, or None."""
        return self.by_name.get(name)