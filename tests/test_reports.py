import io
import json
import logging
import sys

import pytest

from topolvm import lvm_runner
from topolvm.errors import LVMError, NotFoundError
from topolvm.reports import (
    LVRecord,
    get_lv_report,
    get_lvm_state,
    get_vg_report,
    parse_full_report,
    parse_lv,
    parse_vg,
)

VG_UUID = "VGUUID-0000-0000-0000-0000-0000-000001"
LV_UUID = "LVUUID-0000-0000-0000-0000-0000-000001"


def _report(major="253", minor="2"):
    return {
        "report": [
            {
                "vg": [
                    {
                        "vg_name": "myvg1",
                        "vg_uuid": VG_UUID,
                        "vg_size": "2199014866944",
                        "vg_free": "2198482190336",
                    }
                ],
                "pv": [{}, {}],
                "lv": [
                    {
                        "lv_uuid": LV_UUID,
                        "lv_name": "thinpool",
                        "lv_full_name": "myvg1/thinpool",
                        "lv_path": "",
                        "lv_size": "524288000",
                        "lv_kernel_major": major,
                        "lv_kernel_minor": minor,
                        "origin": "",
                        "origin_size": "",
                        "pool_lv": "",
                        "lv_tags": "some_tag,some_tag2",
                        "lv_attr": "twi-a-tz--",
                        "vg_name": "myvg1",
                        "data_percent": "0.00",
                        "metadata_percent": "10.84",
                    }
                ],
                "pvseg": [{}, {}, {}, {}, {}],
                "seg": [{}],
            }
        ]
    }


TRUNCATED_JSON = """
  {
    "report": [
      {
        "vg": [
          {
            "vg_name": "myvg1",
            "vg_size": "2199014866944",
            "vg_free": "2198482190336"
          }
        ],
        "pv": [
          {},
          {}
        ],
        "lv": [
"""

FAKE_BODY = r'''
args = sys.argv[1:]
command = args[0] if args else ""
target = args[1] if len(args) > 1 else ""


def fail(message, code):
    sys.stderr.write(message + "\n")
    sys.stderr.flush()
    sys.exit(code)


if command == "lvs":
    if target == "myvg1":
        print(json.dumps({"report": [{"lv": REPORT["report"][0]["lv"]}]}))
    elif target == "emptyvg":
        print(json.dumps({"report": [{"lv": []}]}))
    else:
        fail('  Failed to find logical volume "%s"' % target, 5)
elif command == "vgs":
    if target == "broken":
        fail("  unexpected failure", 3)
    if target == "missing":
        fail('  Volume group "missing" not found', 5)
    print(json.dumps({"report": [{"vg": REPORT["report"][0]["vg"]}]}))
elif command == "fullreport":
    if "--configreport" not in args:
        fail("  missing configreport", 3)
    print(json.dumps(REPORT))
    sys.stdout.flush()
    if os.environ.get("FAKE_LVM_FAIL"):
        fail("  late failure", 5)
else:
    fail("  unknown command", 3)
'''


@pytest.fixture
def fake_lvm(tmp_path, monkeypatch):
    script = tmp_path / "fake_lvm.py"
    script.write_text(
        "import json\nimport os\nimport sys\n"
        + "REPORT = json.loads(" + repr(json.dumps(_report())) + ")\n"
        + FAKE_BODY
    )
    wrapper = tmp_path / "lvm"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    wrapper.chmod(0o755)
    monkeypatch.setattr(lvm_runner, "LVM", str(wrapper))
    monkeypatch.delenv("FAKE_LVM_FAIL", raising=False)
    return str(wrapper)


def test_parse_full_report_good_json():
    vgs, lvs = parse_full_report(io.StringIO(json.dumps(_report())))
    assert len(lvs) == 1
    assert len(vgs) == 1

    lv = lvs[0]
    assert lv.uuid == LV_UUID
    assert lv.name == "thinpool"
    assert lv.full_name == "myvg1/thinpool"
    assert lv.path == ""
    assert lv.size == 524288000
    assert lv.major == 253
    assert lv.minor == 2
    assert lv.origin == ""
    assert lv.origin_size == 0
    assert lv.pool_lv == ""
    assert lv.tags == ["some_tag", "some_tag2"]
    assert lv.attr == "twi-a-tz--"
    assert lv.vg_name == "myvg1"
    assert lv.data_percent == 0
    assert lv.metadata_percent == 10.84

    vg = vgs[0]
    assert vg.name == "myvg1"
    assert vg.uuid == VG_UUID
    assert vg.size == 2199014866944
    assert vg.free == 2198482190336


def test_inactive_major_minor_become_zero():
    vgs, lvs = parse_full_report(io.StringIO(json.dumps(_report("-1", "-1"))))
    assert len(vgs) == 1
    assert len(lvs) == 1
    assert lvs[0].major == 0
    assert lvs[0].minor == 0


def test_truncated_json_is_rejected():
    with pytest.raises(ValueError):
        parse_full_report(io.StringIO(TRUNCATED_JSON))


def test_thin_pool_detection():
    assert parse_lv(_report()["report"][0]["lv"][0]).is_thin_pool() is True
    assert LVRecord(attr="-wi-a-----").is_thin_pool() is False


def test_empty_tags_split_like_the_report():
    assert parse_lv({"lv_name": "x", "lv_tags": ""}).tags == [""]


def test_bad_lv_size_is_rejected():
    entry = dict(_report()["report"][0]["lv"][0], lv_size="12x")
    with pytest.raises(ValueError):
        parse_lv(entry)


def test_bad_origin_size_is_rejected():
    entry = dict(_report()["report"][0]["lv"][0], origin_size="-3")
    with pytest.raises(ValueError):
        parse_lv(entry)


def test_vg_requires_sizes():
    with pytest.raises(ValueError):
        parse_vg({"vg_name": "myvg1", "vg_uuid": VG_UUID})


def test_get_lv_report_keys_by_name(fake_lvm):
    lvs = get_lv_report("myvg1")
    assert list(lvs) == ["thinpool"]
    assert lvs["thinpool"].size == 524288000


def test_get_lv_report_missing_volume(fake_lvm):
    with pytest.raises(NotFoundError) as info:
        get_lv_report("myvg1/missing")
    assert isinstance(info.value.__cause__, LVMError)


def test_get_lv_report_empty_group(fake_lvm):
    with pytest.raises(NotFoundError):
        get_lv_report("emptyvg")


def test_get_vg_report_finds_group(fake_lvm):
    vg = get_vg_report("myvg1")
    assert vg.name == "myvg1"
    assert vg.free == 2198482190336


def test_get_vg_report_not_found(fake_lvm):
    with pytest.raises(NotFoundError):
        get_vg_report("othervg")
    with pytest.raises(NotFoundError):
        get_vg_report("missing")


def test_get_vg_report_other_failure(fake_lvm):
    with pytest.raises(LVMError) as info:
        get_vg_report("broken")
    assert not isinstance(info.value, NotFoundError)
    assert info.value.exit_code() == 3


def test_get_lvm_state(fake_lvm):
    vgs, lvs = get_lvm_state()
    assert [vg.name for vg in vgs] == ["myvg1"]
    assert [lv.name for lv in lvs] == ["thinpool"]


def test_get_lvm_state_logs_exit_failure(fake_lvm, monkeypatch, caplog):
    monkeypatch.setenv("FAKE_LVM_FAIL", "1")
    caplog.set_level(logging.ERROR, logger="topolvm.reports")
    vgs, lvs = get_lvm_state()
    assert len(vgs) == 1
    assert len(lvs) == 1
    assert any("failed to run command" in r.getMessage() for r in caplog.records)