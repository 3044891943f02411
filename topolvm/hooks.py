"""Admission webhooks that prepare pods and PVCs for TopoLVM volumes."""

from __future__ import annotations

import copy
import json
import logging
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

PLUGIN_NAME = "topolvm.io"
"""Provisioner name of storage classes served by TopoLVM."""

CAPACITY_RESOURCE = "topolvm.io/capacity"
"""Extended resource requested by pods that use TopoLVM volumes."""

CAPACITY_KEY_PREFIX = "capacity.topolvm.io/"
"""Prefix of pod annotations holding the requested bytes per device-class."""

DEVICE_CLASS_KEY = "topolvm.io/device-class"
"""Storage class parameter naming the device-class."""

PVC_FINALIZER = "topolvm.io/pvc"
"""Finalizer added to PVCs of TopoLVM storage classes."""

DEFAULT_SIZE = 1 << 30
"""Bytes assumed for a claim that requests no size."""

DEFAULT_DEVICE_CLASS_ANNOTATION_NAME = "00default"
"""Annotation suffix used for storage classes that name no device-class."""

_HTTP_OK = 200
_HTTP_BAD_REQUEST = 400
_HTTP_FORBIDDEN = 403
_HTTP_INTERNAL_SERVER_ERROR = 500

_NO_REQUEST = "no request for TopoLVM"

_QUANTITY = re.compile(
    r"^([+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+))"
    r"(Ki|Mi|Gi|Ti|Pi|Ei|[eE][+-]?[0-9]+|n|u|m|k|M|G|T|P|E)?$"
)
_BINARY_SUFFIXES = {"Ki": 10, "Mi": 20, "Gi": 30, "Ti": 40, "Pi": 50, "Ei": 60}
_DECIMAL_SUFFIXES = {"n": -9, "u": -6, "m": -3, "k": 3, "M": 6, "G": 9, "T": 12, "P": 15, "E": 18}


class ResourceNotFoundError(LookupError):
    """A requested Kubernetes object does not exist."""


@dataclass
class AdmissionResponse:
    """The answer of a webhook: whether to admit, and the JSON patch to apply."""

    allowed: bool
    code: int = _HTTP_OK
    message: str = ""
    patches: list[dict[str, Any]] = field(default_factory=list)
    patched: dict[str, Any] | None = None


def _allowed(reason: str) -> AdmissionResponse:
    return AdmissionResponse(allowed=True, code=_HTTP_OK, message=reason)


def _denied(reason: str) -> AdmissionResponse:
    return AdmissionResponse(allowed=False, code=_HTTP_FORBIDDEN, message=reason)


def _errored(code: int, err: BaseException) -> AdmissionResponse:
    return AdmissionResponse(allowed=False, code=code, message=str(err))


def _quantity_value(quantity: Any) -> int:
    """Return a resource quantity in whole units, rounded up."""
    if isinstance(quantity, bool):
        raise ValueError(f"invalid quantity: {quantity!r}")
    if isinstance(quantity, int):
        return quantity
    if isinstance(quantity, float):
        return math.ceil(quantity)
    match = _QUANTITY.match(str(quantity).strip())
    if match is None:
        raise ValueError(f"invalid quantity: {quantity!r}")
    number, suffix = match.groups()
    try:
        value = Decimal(number)
    except InvalidOperation as err:
        raise ValueError(f"invalid quantity: {quantity!r}") from err
    if suffix in _BINARY_SUFFIXES:
        value *= Decimal(2) ** _BINARY_SUFFIXES[suffix]
    elif suffix in _DECIMAL_SUFFIXES:
        value *= Decimal(10) ** _DECIMAL_SUFFIXES[suffix]
    elif suffix:
        value *= Decimal(10) ** int(suffix[1:])
    return int(value.to_integral_value(rounding="ROUND_CEILING"))


def _escape(key: str) -> str:
    return key.replace("~", "~0").replace("/", "~1")


def _diff(old: Any, new: Any, path: str, ops: list[dict[str, Any]]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in old:
            if key not in new:
                ops.append({"op": "remove", "path": f"{path}/{_escape(key)}"})
        for key, value in new.items():
            child = f"{path}/{_escape(key)}"
            if key not in old:
                ops.append({"op": "add", "path": child, "value": value})
            else:
                _diff(old[key], value, child, ops)
        return
    if isinstance(old, list) and isinstance(new, list):
        common = min(len(old), len(new))
        for index in range(common):
            _diff(old[index], new[index], f"{path}/{index}", ops)
        for index in range(common, len(new)):
            ops.append({"op": "add", "path": f"{path}/{index}", "value": new[index]})
        for index in reversed(range(common, len(old))):
            ops.append({"op": "remove", "path": f"{path}/{index}"})
        return
    if old != new or type(old) is not type(new):
        ops.append({"op": "replace", "path": path, "value": new})


def _patch_response(original: dict[str, Any], mutated: dict[str, Any]) -> AdmissionResponse:
    ops: list[dict[str, Any]] = []
    # Round-trip through JSON so the patch holds only plain JSON values.
    _diff(original, json.loads(json.dumps(mutated)), "", ops)
    return AdmissionResponse(allowed=True, code=_HTTP_OK, patches=ops, patched=mutated)


def _decode(request: Mapping[str, Any]) -> dict[str, Any]:
    if "object" not in request:
        raise ValueError("there is no content to decode")
    raw = request["object"]
    if isinstance(raw, (bytes, bytearray, str)):
        obj = json.loads(raw)
    else:
        obj = copy.deepcopy(raw)
    if not isinstance(obj, dict):
        raise ValueError("object is not a JSON object")
    return obj


def _storage_request(spec: Mapping[str, Any]) -> int:
    requests = (spec.get("resources") or {}).get("requests") or {}
    if "storage" in requests:
        value = _quantity_value(requests["storage"])
        if value != 0:
            return value
    return DEFAULT_SIZE


def _device_class(sc: Mapping[str, Any]) -> str:
    return (sc.get("parameters") or {}).get(DEVICE_CLASS_KEY, DEFAULT_DEVICE_CLASS_ANNOTATION_NAME)


class _TargetStorageClasses:
    """Looks up TopoLVM storage classes once per name; others come back as None."""

    def __init__(self, get_storage_class: Callable[[str], Mapping[str, Any]]) -> None:
        self._get = get_storage_class
        self._cache: dict[str, Mapping[str, Any] | None] = {}

    def get(self, name: str) -> Mapping[str, Any] | None:
        if name in self._cache:
            return self._cache[name]
        try:
            sc: Mapping[str, Any] | None = self._get(name)
        except ResourceNotFoundError:
            sc = None
        if sc is not None and sc.get("provisioner") != PLUGIN_NAME:
            sc = None
        self._cache[name] = sc
        return sc


class PodMutator:
    """Adds the capacity resource and per-device-class annotations to pods.

    ``get_pvc(namespace, name)`` and ``get_storage_class(name)`` return objects
    as dicts and raise ResourceNotFoundError when they do not exist.
    """

    def __init__(
        self,
        get_pvc: Callable[[str, str], Mapping[str, Any]],
        get_storage_class: Callable[[str], Mapping[str, Any]],
    ) -> None:
        self.get_pvc = get_pvc
        self.get_storage_class = get_storage_class

    def handle(self, request: Mapping[str, Any]) -> AdmissionResponse:
        """Answer an admission request for a pod."""
        try:
            pod = _decode(request)
        except ValueError as err:
            return _errored(_HTTP_BAD_REQUEST, err)
        original = copy.deepcopy(pod)

        spec = pod.get("spec") or {}
        containers = spec.get("containers") or []
        if not containers:
            return _denied("pod has no containers")
        if not spec.get("volumes"):
            return _allowed("no volumes")

        metadata = pod.setdefault("metadata", {})
        if not metadata.get("namespace"):
            # Pods created from templates may lack a namespace.
            namespace = request.get("namespace", "")
            logger.info("infer pod namespace from req namespace=%s", namespace)
            metadata["namespace"] = namespace

        try:
            capacities = self._volumes_capacity(pod)
        except Exception as err:  # any lookup failure is a server error
            logger.error("volumesCapacity failed: %s", err)
            return _errored(_HTTP_INTERNAL_SERVER_ERROR, err)
        if not capacities:
            return _allowed(_NO_REQUEST)

        resources = containers[0].get("resources")
        if resources is None:
            resources = containers[0]["resources"] = {}
        for kind in ("requests", "limits"):
            if resources.get(kind) is None:
                resources[kind] = {}
            resources[kind][CAPACITY_RESOURCE] = "1"

        if metadata.get("annotations") is None:
            metadata["annotations"] = {}
        for dc, capacity in capacities.items():
            metadata["annotations"][CAPACITY_KEY_PREFIX + dc] = str(capacity)

        return _patch_response(original, pod)

    def _volumes_capacity(self, pod: Mapping[str, Any]) -> dict[str, int]:
        targets = _TargetStorageClasses(self.get_storage_class)
        capacities: dict[str, int] = {}
        for volume in pod["spec"]["volumes"]:
            if volume.get("persistentVolumeClaim") is not None:
                found = self._pvc_capacity(pod, volume, targets)
                if found is _BOUND:
                    # A bound TopoLVM volume already fixes the node.
                    return {}
            elif (volume.get("ephemeral") or {}).get("volumeClaimTemplate") is not None:
                found = self._ephemeral_capacity(volume, targets)
            else:
                continue
            if found is None:
                continue
            dc, requested = found
            capacities[dc] = capacities.get(dc, 0) + requested
        return capacities

    def _pvc_capacity(
        self, pod: Mapping[str, Any], volume: Mapping[str, Any], targets: _TargetStorageClasses
    ) -> Any:
        claim_name = volume["persistentVolumeClaim"].get("claimName", "")
        namespace = pod["metadata"].get("namespace", "")
        try:
            pvc = self.get_pvc(namespace, claim_name)
        except ResourceNotFoundError:
            # Pods may be created before their PVCs.
            return None
        except Exception as err:
            logger.error(
                "failed to get pvc pod=%s namespace=%s pvc=%s: %s",
                pod["metadata"].get("name", ""), namespace, claim_name, err,
            )
            raise

        pvc_spec = pvc.get("spec") or {}
        class_name = pvc_spec.get("storageClassName")
        if class_name is None:
            return None
        sc = targets.get(class_name)
        if sc is None:
            return None
        if (pvc.get("status") or {}).get("phase", "") != "Pending":
            return _BOUND
        return _device_class(sc), _storage_request(pvc_spec)

    @staticmethod
    def _ephemeral_capacity(
        volume: Mapping[str, Any], targets: _TargetStorageClasses
    ) -> tuple[str, int] | None:
        template_spec = volume["ephemeral"]["volumeClaimTemplate"].get("spec") or {}
        class_name = template_spec.get("storageClassName")
        if class_name is None:
            return None
        sc = targets.get(class_name)
        if sc is None:
            return None
        return _device_class(sc), _storage_request(template_spec)


_BOUND = object()


class PVCMutator:
    """Adds the TopoLVM finalizer to PVCs of TopoLVM storage classes."""

    def __init__(self, get_storage_class: Callable[[str], Mapping[str, Any]]) -> None:
        self.get_storage_class = get_storage_class

    def handle(self, request: Mapping[str, Any]) -> AdmissionResponse:
        """Answer an admission request for a PVC."""
        try:
            pvc = _decode(request)
        except ValueError as err:
            return _errored(_HTTP_BAD_REQUEST, err)
        original = copy.deepcopy(pvc)

        class_name = (pvc.get("spec") or {}).get("storageClassName")
        # An empty class name binds to a PV without a storage class.
        if not class_name:
            return _allowed(_NO_REQUEST)

        try:
            sc = self.get_storage_class(class_name)
        except ResourceNotFoundError:
            return _allowed(_NO_REQUEST)
        except Exception as err:  # any lookup failure is a server error
            return _errored(_HTTP_INTERNAL_SERVER_ERROR, err)
        if sc.get("provisioner") != PLUGIN_NAME:
            return _allowed(_NO_REQUEST)

        metadata = pvc.setdefault("metadata", {})
        finalizers = metadata.get("finalizers") or []
        if PVC_FINALIZER in finalizers:
            return _allowed("already added finalizer")
        metadata["finalizers"] = [*finalizers, PVC_FINALIZER]
        return _patch_response(original, pvc)