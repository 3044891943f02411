"""Parsing and fetching LVM JSON reports of volume groups and logical volumes."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, TextIO

from .errors import LVMError, NotFoundError, is_lvm_not_found
from .lvm_runner import call_lvm_json, stream_lvm

logger = logging.getLogger(__name__)

_LV_FIELDS = (
    "lv_uuid,lv_name,lv_full_name,lv_path,lv_size,"
    "lv_kernel_major,lv_kernel_minor,origin,origin_size,pool_lv,lv_tags,"
    "lv_attr,vg_name,data_percent,metadata_percent,pool_lv"
)
_VG_FIELDS = "vg_uuid,vg_name,vg_size,vg_free"
_VG_STATE_FIELDS = "vg_name,vg_uuid,vg_size,vg_free"

_FULLREPORT_ARGS = (
    "fullreport",
    "--reportformat", "json",
    "--units", "b", "--nosuffix",
    "--configreport", "vg", "-o", _VG_STATE_FIELDS,
    "--configreport", "lv", "-o", _LV_FIELDS,
    # fullreport cannot omit a section, so every field of the rest is omitted.
    "--configreport", "pv", "-o,",
    "--configreport", "pvseg", "-o,",
    "--configreport", "seg", "-o,",
)

_UINT = re.compile(r"[0-9]+")
_MAX_UINT32 = (1 << 32) - 1


@dataclass
class LVRecord:
    """One logical volume as reported by LVM."""

    name: str = ""
    full_name: str = ""
    uuid: str = ""
    path: str = ""
    major: int = 0
    minor: int = 0
    origin: str = ""
    origin_size: int = 0
    pool_lv: str = ""
    tags: list[str] = field(default_factory=list)
    attr: str = ""
    vg_name: str = ""
    size: int = 0
    data_percent: float = 0.0
    metadata_percent: float = 0.0

    def is_thin_pool(self) -> bool:
        """Tell whether this volume is a thin pool."""
        return self.attr[:1] == "t"


@dataclass
class VGRecord:
    """One volume group as reported by LVM."""

    name: str = ""
    uuid: str = ""
    size: int = 0
    free: int = 0


def _text(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key}: expected a string, got {value!r}")
    return value


def _parse_uint(text: str, key: str) -> int:
    if not _UINT.fullmatch(text):
        raise ValueError(f"{key}: invalid unsigned integer {text!r}")
    value = int(text)
    if value >= 1 << 64:
        raise ValueError(f"{key}: value out of range {text!r}")
    return value


def _parse_float(text: str, key: str) -> float:
    if text != text.strip() or "_" in text:
        raise ValueError(f"{key}: invalid number {text!r}")
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"{key}: invalid number {text!r}") from None


def _device_number(text: str) -> int:
    # Inactive volumes report -1; anything unparsable counts as 0.
    if not _UINT.fullmatch(text):
        return 0
    return min(int(text), _MAX_UINT32)


def _require_object(data: Any, what: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{what}: expected an object, got {data!r}")
    return data


def parse_lv(data: Any) -> LVRecord:
    """Build an LVRecord from one entry of the "lv" section of a report."""
    data = _require_object(data, "lv")
    size_text = _text(data, "lv_size")
    origin_size_text = _text(data, "origin_size")
    data_percent_text = _text(data, "data_percent")
    metadata_percent_text = _text(data, "metadata_percent")
    return LVRecord(
        name=_text(data, "lv_name"),
        full_name=_text(data, "lv_full_name"),
        uuid=_text(data, "lv_uuid"),
        path=_text(data, "lv_path"),
        major=_device_number(_text(data, "lv_kernel_major")),
        minor=_device_number(_text(data, "lv_kernel_minor")),
        origin=_text(data, "origin"),
        origin_size=_parse_uint(origin_size_text, "origin_size") if origin_size_text else 0,
        pool_lv=_text(data, "pool_lv"),
        tags=_text(data, "lv_tags").split(","),
        attr=_text(data, "lv_attr"),
        vg_name=_text(data, "vg_name"),
        size=_parse_uint(size_text, "lv_size") if size_text else 0,
        data_percent=(
            _parse_float(data_percent_text, "data_percent") if data_percent_text else 0.0
        ),
        metadata_percent=(
            _parse_float(metadata_percent_text, "metadata_percent")
            if metadata_percent_text
            else 0.0
        ),
    )


def parse_vg(data: Any) -> VGRecord:
    """Build a VGRecord from one entry of the "vg" section of a report."""
    data = _require_object(data, "vg")
    return VGRecord(
        name=_text(data, "vg_name"),
        uuid=_text(data, "vg_uuid"),
        size=_parse_uint(_text(data, "vg_size"), "vg_size"),
        free=_parse_uint(_text(data, "vg_free"), "vg_free"),
    )


def _reports(document: Any) -> list[dict[str, Any]]:
    document = _require_object(document, "document")
    reports = document.get("report")
    if reports is None:
        return []
    if not isinstance(reports, list):
        raise ValueError(f"report: expected a list, got {reports!r}")
    return [_require_object(report, "report") for report in reports]


def _section(report: dict[str, Any], key: str) -> list[Any]:
    entries = report.get(key)
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ValueError(f"{key}: expected a list, got {entries!r}")
    return entries


def parse_full_report(stream: TextIO) -> tuple[list[VGRecord], list[LVRecord]]:
    """Parse the JSON output of ``lvm fullreport`` into volume groups and volumes."""
    document = json.load(stream)
    vgs: list[VGRecord] = []
    lvs: list[LVRecord] = []
    for report in _reports(document):
        vgs.extend(parse_vg(entry) for entry in _section(report, "vg"))
        lvs.extend(parse_lv(entry) for entry in _section(report, "lv"))
    return vgs, lvs


def get_lv_report(name: str) -> dict[str, LVRecord]:
    """Report the logical volumes of ``name`` (a VG, or ``vg/lv``), keyed by name."""
    try:
        document = call_lvm_json(
            "lvs", name, "-o", _LV_FIELDS,
            "--units", "b", "--nosuffix", "--reportformat", "json",
        )
    except LVMError as err:
        if is_lvm_not_found(err):
            raise NotFoundError() from err
        raise
    reports = _reports(document)
    if not reports:
        raise NotFoundError()
    lvs = [parse_lv(entry) for entry in _section(reports[0], "lv")]
    if not lvs:
        raise NotFoundError()
    return {lv.name: lv for lv in lvs}


def get_vg_report(name: str) -> VGRecord:
    """Report the volume group called ``name``."""
    try:
        document = call_lvm_json(
            "vgs", name, "-o", _VG_FIELDS,
            "--units", "b", "--nosuffix", "--reportformat", "json",
        )
    except LVMError as err:
        if is_lvm_not_found(err):
            raise NotFoundError() from err
        raise
    for report in _reports(document):
        for entry in _section(report, "vg"):
            vg = parse_vg(entry)
            if vg.name == name:
                return vg
    raise NotFoundError()


def get_lvm_state() -> tuple[list[VGRecord], list[LVRecord]]:
    """Fetch every volume group and logical volume with a single lvm call."""
    try:
        with stream_lvm(*_FULLREPORT_ARGS) as out:
            result = parse_full_report(out)
    except LVMError as err:
        logger.error("failed to run command: %s", err)
    return result