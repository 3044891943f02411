import json

import pytest

from topolvm.hooks import (
    CAPACITY_KEY_PREFIX,
    CAPACITY_RESOURCE,
    PVC_FINALIZER,
    PodMutator,
    PVCMutator,
    ResourceNotFoundError,
)

NAMESPACE = "test-mutate-pod"
MEBIBYTE = 1048576

STORAGE_CLASSES = {
    "topolvm-provisioner": {
        "metadata": {"name": "topolvm-provisioner"},
        "provisioner": "topolvm.io",
        "volumeBindingMode": "WaitForFirstConsumer",
        "parameters": {"topolvm.io/device-class": "dc1"},
    },
    "topolvm-provisioner2": {
        "metadata": {"name": "topolvm-provisioner2"},
        "provisioner": "topolvm.io",
        "parameters": {"topolvm.io/device-class": "dc2"},
    },
    "topolvm-provisioner3": {
        "metadata": {"name": "topolvm-provisioner3"},
        "provisioner": "topolvm.io",
        "parameters": {"topolvm.io/device-class": "dc3"},
    },
    "topolvm-provisioner-immediate": {
        "metadata": {"name": "topolvm-provisioner-immediate"},
        "provisioner": "topolvm.io",
        "volumeBindingMode": "Immediate",
        "parameters": {"topolvm.io/device-class": "dc1"},
    },
    "host-local": {
        "metadata": {"name": "host-local"},
        "provisioner": "kubernetes.io/no-provisioner",
    },
}


def _pvc(name, storage, storage_class=None, phase="Pending"):
    spec = {"accessModes": ["ReadWriteOnce"], "resources": {"requests": {"storage": storage}}}
    if storage_class is not None:
        spec["storageClassName"] = storage_class
    return {
        "metadata": {"name": name, "namespace": NAMESPACE},
        "spec": spec,
        "status": {"phase": phase},
    }


PVCS = {
    (NAMESPACE, p["metadata"]["name"]): p
    for p in [
        _pvc("local-pvc", "10Gi", "host-local"),
        _pvc("bound-pvc", "100Gi", "topolvm-provisioner", phase="Bound"),
        _pvc("pvc1", "100Gi", "topolvm-provisioner"),
        _pvc("pvc2", str((2 << 30) - 1), "topolvm-provisioner"),
        _pvc("pvc3", "3Gi", "topolvm-provisioner2"),
        _pvc("pvc4", "4Gi", "topolvm-provisioner3"),
        _pvc("pvc5", "500Mi", "topolvm-provisioner"),
        _pvc("default-pvc", "3Gi"),
    ]
}


def get_storage_class(name):
    try:
        return STORAGE_CLASSES[name]
    except KeyError:
        raise ResourceNotFoundError(name) from None


def get_pvc(namespace, name):
    try:
        return PVCS[(namespace, name)]
    except KeyError:
        raise ResourceNotFoundError(name) from None


def failing_getter(*args):
    raise RuntimeError("api server unavailable")


@pytest.fixture
def mutator():
    return PodMutator(get_pvc, get_storage_class)


def make_pod(*claims, namespace=NAMESPACE):
    pod = {
        "metadata": {"name": "test-pod", "namespace": namespace},
        "spec": {
            "containers": [
                {"name": "container1", "image": "ubuntu"},
                {"name": "container2", "image": "ubuntu"},
            ]
        },
    }
    if claims:
        pod["spec"]["volumes"] = [
            {"name": f"vol{i}", "persistentVolumeClaim": {"claimName": claim}}
            for i, claim in enumerate(claims, start=1)
        ]
    return pod


def request_for(obj, namespace=NAMESPACE):
    return {"namespace": namespace, "object": json.dumps(obj).encode()}


def capacity(response, dc):
    return response.patched["metadata"]["annotations"][CAPACITY_KEY_PREFIX + dc]


def first_container_resources(response):
    return response.patched["spec"]["containers"][0]["resources"]


def test_pod_without_pvc_is_not_mutated(mutator):
    response = mutator.handle(request_for(make_pod()))
    assert response.allowed is True
    assert response.message == "no volumes"
    assert response.patches == []
    assert response.patched is None


def test_pod_created_before_its_pvc(mutator):
    response = mutator.handle(request_for(make_pod("non-existent")))
    assert response.allowed is True
    assert response.message == "no request for TopoLVM"
    assert response.patches == []


def test_pod_with_topolvm_pvc_is_mutated(mutator):
    response = mutator.handle(request_for(make_pod("pvc1")))
    assert response.allowed is True
    resources = first_container_resources(response)
    assert resources["requests"][CAPACITY_RESOURCE] == "1"
    assert resources["limits"][CAPACITY_RESOURCE] == "1"
    assert capacity(response, "dc1") == str(100 << 30)


def test_pod_patch_operations(mutator):
    response = mutator.handle(request_for(make_pod("pvc1")))
    by_path = {op["path"]: op for op in response.patches}
    assert by_path["/metadata/annotations"] == {
        "op": "add",
        "path": "/metadata/annotations",
        "value": {"capacity.topolvm.io/dc1": str(100 << 30)},
    }
    assert by_path["/spec/containers/0/resources"]["value"] == {
        "requests": {"topolvm.io/capacity": "1"},
        "limits": {"topolvm.io/capacity": "1"},
    }
    assert len(response.patches) == 2


def test_pod_with_multiple_volume_groups(mutator):
    response = mutator.handle(request_for(make_pod("pvc1", "pvc3", "pvc4")))
    resources = first_container_resources(response)
    assert resources["requests"][CAPACITY_RESOURCE] == "1"
    assert resources["limits"][CAPACITY_RESOURCE] == "1"
    assert capacity(response, "dc1") == str(100 << 30)
    assert capacity(response, "dc2") == str(3 << 30)
    assert capacity(response, "dc3") == str(4 << 30)


def test_pod_with_generic_ephemeral_volume(mutator):
    pod = make_pod()
    pod["spec"]["volumes"] = [
        {
            "name": "my-volume",
            "ephemeral": {
                "volumeClaimTemplate": {
                    "spec": {
                        "accessModes": ["ReadWriteOnce"],
                        "storageClassName": "topolvm-provisioner",
                        "resources": {"requests": {"storage": "100Gi"}},
                    }
                }
            },
        }
    ]
    response = mutator.handle(request_for(pod))
    resources = first_container_resources(response)
    assert resources["requests"][CAPACITY_RESOURCE] == "1"
    assert resources["limits"][CAPACITY_RESOURCE] == "1"
    assert capacity(response, "dc1") == str(100 << 30)


def test_pod_keeps_existing_resources(mutator):
    pod = make_pod("pvc1")
    pod["spec"]["containers"][0]["resources"] = {
        "requests": {"memory": "100"},
        "limits": {"memory": "100"},
    }
    response = mutator.handle(request_for(pod))
    resources = first_container_resources(response)
    assert resources["requests"][CAPACITY_RESOURCE] == "1"
    assert resources["limits"][CAPACITY_RESOURCE] == "1"
    assert resources["requests"]["memory"] == "100"
    assert resources["limits"]["memory"] == "100"
    assert capacity(response, "dc1") == str(100 << 30)


def test_pod_with_bound_topolvm_pvc_is_not_mutated(mutator):
    response = mutator.handle(request_for(make_pod("pvc1", "bound-pvc")))
    assert response.allowed is True
    assert response.message == "no request for TopoLVM"
    assert response.patches == []


def test_requested_capacity_is_summed(mutator):
    response = mutator.handle(request_for(make_pod("local-pvc", "pvc1", "pvc2")))
    assert first_container_resources(response)["requests"][CAPACITY_RESOURCE] == "1"
    assert capacity(response, "dc1") == str((100 << 30) + ((2 << 30) - 1))
    assert set(response.patched["metadata"]["annotations"]) == {CAPACITY_KEY_PREFIX + "dc1"}


def test_pvc_without_storage_class(mutator):
    response = mutator.handle(request_for(make_pod("default-pvc")))
    assert response.allowed is True
    assert response.patches == []


def test_pvc_smaller_than_one_gibibyte(mutator):
    response = mutator.handle(request_for(make_pod("pvc5")))
    resources = first_container_resources(response)
    assert resources["requests"][CAPACITY_RESOURCE] == "1"
    assert resources["limits"][CAPACITY_RESOURCE] == "1"
    assert capacity(response, "dc1") == str(500 * MEBIBYTE)


def test_pod_namespace_is_inferred_from_request(mutator):
    pod = make_pod("pvc1", namespace="")
    response = mutator.handle(request_for(pod, namespace=NAMESPACE))
    assert response.patched["metadata"]["namespace"] == NAMESPACE
    assert capacity(response, "dc1") == str(100 << 30)


def test_pod_without_containers_is_denied(mutator):
    pod = make_pod("pvc1")
    pod["spec"]["containers"] = []
    response = mutator.handle(request_for(pod))
    assert response.allowed is False
    assert response.code == 403
    assert response.message == "pod has no containers"


def test_undecodable_pod_is_bad_request(mutator):
    response = mutator.handle({"namespace": NAMESPACE, "object": b"{not json"})
    assert response.allowed is False
    assert response.code == 400


def test_lookup_failure_is_internal_error():
    response = PodMutator(failing_getter, get_storage_class).handle(request_for(make_pod("pvc1")))
    assert response.allowed is False
    assert response.code == 500
    assert "api server unavailable" in response.message


def make_claim(storage_class=None, finalizers=None):
    claim = _pvc("test-pvc", "10Gi", storage_class)
    del claim["status"]
    if finalizers is not None:
        claim["metadata"]["finalizers"] = finalizers
    return claim


def has_finalizer(response):
    if response.patched is None:
        return False
    return PVC_FINALIZER in response.patched["metadata"].get("finalizers", [])


@pytest.mark.parametrize(
    "storage_class",
    [None, "", "missing-storageclass", "host-local"],
)
def test_pvc_finalizer_not_added(storage_class):
    response = PVCMutator(get_storage_class).handle(request_for(make_claim(storage_class)))
    assert response.allowed is True
    assert response.message == "no request for TopoLVM"
    assert has_finalizer(response) is False


@pytest.mark.parametrize(
    "storage_class", ["topolvm-provisioner", "topolvm-provisioner-immediate"]
)
def test_pvc_finalizer_added(storage_class):
    response = PVCMutator(get_storage_class).handle(request_for(make_claim(storage_class)))
    assert response.allowed is True
    assert has_finalizer(response) is True
    assert response.patches == [
        {"op": "add", "path": "/metadata/finalizers", "value": ["topolvm.io/pvc"]}
    ]


def test_pvc_finalizer_already_present():
    claim = make_claim("topolvm-provisioner", finalizers=[PVC_FINALIZER])
    response = PVCMutator(get_storage_class).handle(request_for(claim))
    assert response.allowed is True
    assert response.message == "already added finalizer"
    assert response.patches == []


def test_pvc_finalizer_appended_to_existing():
    claim = make_claim("topolvm-provisioner", finalizers=["example.com/other"])
    response = PVCMutator(get_storage_class).handle(request_for(claim))
    assert response.patched["metadata"]["finalizers"] == ["example.com/other", PVC_FINALIZER]
    assert response.patches == [
        {"op": "add", "path": "/metadata/finalizers/1", "value": PVC_FINALIZER}
    ]


def test_pvc_storage_class_lookup_failure():
    response = PVCMutator(failing_getter).handle(request_for(make_claim("topolvm-provisioner")))
    assert response.allowed is False
    assert response.code == 500


def test_undecodable_pvc_is_bad_request():
    response = PVCMutator(get_storage_class).handle({"namespace": NAMESPACE})
    assert response.allowed is False
    assert response.code == 400