# topolvm

A Python library for managing Linux LVM logical volumes through device
classes. It handles both thick volumes and thin pools. It runs the `lvm`
command directly, or through `nsenter` in the host namespaces when running
inside a container.

## Modules

- `topolvm.lvm_runner`: runs `/sbin/lvm` sub-commands with `LC_ALL=C`.
  - `call_lvm` logs each output line.
  - `call_lvm_json` decodes JSON output.
  - `stream_lvm` is a context manager that yields standard output.
  - Set the module flag `CONTAINERIZED`, or pass `containerized=True`, to go
    through `nsenter`.
  - A failing command raises `topolvm.errors.LVMError`, which carries the exit
    code and standard error.
- `topolvm.errors`: `LVMError`, `NotFoundError`, `SectorSizeError`, and the
  helpers `as_lvm_error` and `is_lvm_not_found`. Volume sizes must be a
  multiple of `MINIMUM_SECTOR_SIZE` (4096 bytes).
- `topolvm.reports`: `LVRecord` and `VGRecord`.
  - `parse_lv`, `parse_vg` and `parse_full_report` read LVM JSON reports.
  - `get_lv_report`, `get_vg_report` and `get_lvm_state` fetch those reports
    from `lvm`.
- `topolvm.lvm`: `VolumeGroup`, `ThinPool`, `ThinPoolUsage` and
  `LogicalVolume`.
  - Look groups up with `find_volume_group`, `list_volume_groups` or
    `search_volume_group_list`.
  - Volumes can be created, found, listed, resized, renamed, snapshotted
    (thin only), activated and removed.
- `topolvm.device_classes`: `DeviceClass`, `DeviceType`, `ThinPoolConfig` and
  `LvcreateOptionClass`.
  - `validate_device_classes` raises `ValueError` on the first problem it
    finds.
  - `get_spare` returns the spare space in bytes, 10 GiB by default.
  - `DeviceClassManager` looks classes up by name, by volume group and by thin
    pool. Its lookups raise `DeviceClassNotFoundError` when nothing matches.
  - `LvcreateOptionClassManager` looks up option classes by name.
- `topolvm.messages`: request and response dataclasses, `ServiceError` with a
  `Code`, and `HealthService`, whose `check` always returns
  `HealthStatus.SERVING`.
- `topolvm.lv_service.LVService`: `create_lv`, `remove_lv`, `resize_lv` and
  `create_lv_snapshot`.
  - Free space is checked against the device class first. For thin pools the
    check applies the overprovision ratio.
  - The optional `notify` callback runs after every change.
- `topolvm.vg_service.VGService`: `get_lv_list` and `get_free_bytes`. The
  free-bytes figure has the spare space taken off.
  - `watch(stream)` sends a `WatchResponse` with the capacity of every device
    class to `stream.send`.
  - It sends once at the start, and again after each `notify_watchers` call.
  - It returns once the stream's `done` event is set.
- `topolvm.hooks`: `PodMutator` and `PVCMutator` admission handlers. Both take
  the lookup functions you supply. Those functions return Kubernetes objects
  as dicts and raise `ResourceNotFoundError` when an object is missing.
  - `PodMutator.handle` adds the `topolvm.io/capacity` resource to the first
    container. It also adds `capacity.topolvm.io/<device-class>` annotations.
  - `PVCMutator.handle` adds the `topolvm.io/pvc` finalizer to claims whose
    storage class uses the `topolvm.io` provisioner.
  - Each returns an `AdmissionResponse` that holds a JSON patch.

## Example

```python
from topolvm.device_classes import (
    DeviceClass,
    DeviceClassManager,
    LvcreateOptionClassManager,
    validate_device_classes,
)
from topolvm.lv_service import LVService
from topolvm.messages import CreateLVRequest

classes = [DeviceClass(name="ssd", volume_group="myvg", default=True)]
validate_device_classes(classes)

service = LVService(DeviceClassManager(classes), LvcreateOptionClassManager([]))
response = service.create_lv(
    CreateLVRequest(name="vol1", device_class="ssd", size_bytes=1 << 30)
)
print(response.volume.name, response.volume.size_bytes)
```

The services report most failures as `topolvm.messages.ServiceError`. Its
`code` is a `Code` value such as `NOT_FOUND`, `RESOURCE_EXHAUSTED` or
`OUT_OF_RANGE`. A failed volume group lookup can raise `NotFoundError` or
`LVMError` directly.

Most volume operations run the `lvm` binary, so they need root and a working
LVM setup. Parsing, validation, device-class lookups and the admission
handlers run anywhere.

## What it does not do

- The services are plain Python objects. The package has no network server,
  RPC transport or command-line program for them.
- There is no ready-made wiring that connects `LVService` notifications to a
  `VGService`. Pass `VGService.notify_watchers` as the `notify` callback
  yourself.
- The admission handlers do not serve HTTP and do not talk to a Kubernetes
  API server. You supply the requests and the object lookups.

## Tests

```
pip install -e .[test]
pytest
```