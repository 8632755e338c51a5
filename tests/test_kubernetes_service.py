import pytest
from kubernetes.client import ApiException

from ledger_operator.errors import ConflictError, NotFoundError
from ledger_operator.models import ResourceKind
from ledger_operator.services.kubernetes_service import (
    label_selector,
    merge_patch,
    object_patch,
    with_owner,
)

from conftest import FakeObjectStore


def _cm(name="cm1", data=None, **meta):
    return {"apiVersion": "v1", "kind": "ConfigMap",
            "metadata": {"name": name, "namespace": "ns1", **meta}, "data": data or {}}


def test_merge_patch_sets_changes_and_nulls_removals():
    live = {"a": 1, "b": {"c": 1, "d": 2}, "gone": True, "list": [1, 2]}
    desired = {"a": 1, "b": {"c": 5, "d": 2}, "new": "x", "list": [2]}

    assert merge_patch(live, desired) == {"b": {"c": 5}, "new": "x", "list": [2], "gone": None}
    assert merge_patch(live, live) == {}


def test_object_patch_ignores_status_and_server_fields():
    live = _cm(data={"k": "v"}, uid="u1", resourceVersion="7", creationTimestamp="t")
    live["status"] = {"phase": "x"}
    desired = _cm(data={"k": "v2"}, labels={"app": "a"})

    assert object_patch(live, desired) == {"metadata": {"labels": {"app": "a"}}, "data": {"k": "v2"}}


def test_with_owner_replaces_same_uid():
    body = _cm(ownerReferences=[{"uid": "u1", "name": "old"}, {"uid": "other"}])
    with_owner(body, {"uid": "u1", "name": "new"})
    assert body["metadata"]["ownerReferences"] == [{"uid": "other"}, {"uid": "u1", "name": "new"}]
    assert with_owner(body, None) is body


def test_label_selector_is_sorted():
    assert label_selector({"job-name": "j", "app": "a"}) == "app=a,job-name=j"


def test_api_status_codes_translate(store):
    with pytest.raises(NotFoundError):
        store.get(ResourceKind.CONFIGMAP, "ns1", "missing")

    store.create(ResourceKind.CONFIGMAP, _cm())
    with pytest.raises(ConflictError):
        store.create(ResourceKind.CONFIGMAP, _cm())


def test_other_api_errors_propagate(settings):
    class Failing(FakeObjectStore):
        def _call(self, kind, verb, *args, **kwargs):
            raise ApiException(status=500, reason="Internal")

    with pytest.raises(ApiException):
        Failing(settings).get(ResourceKind.CONFIGMAP, "ns1", "cm1")


def test_list_filters_by_labels(store):
    store.create(ResourceKind.POD, {"metadata": {"name": "p1", "namespace": "ns1", "labels": {"job-name": "j1"}}})
    store.create(ResourceKind.POD, {"metadata": {"name": "p2", "namespace": "ns1", "labels": {"job-name": "j2"}}})

    pods = store.list(ResourceKind.POD, "ns1", labels={"job-name": "j1"})

    assert [p["metadata"]["name"] for p in pods] == ["p1"]
    assert len(store.list(ResourceKind.POD, "ns1")) == 2


def test_resilient_patch_pins_resource_version(store):
    store.create(ResourceKind.CONFIGMAP, _cm(data={"k": "v"}))

    def mutate(fresh):
        fresh["data"]["k"] = "v2"
        return fresh

    store.resilient_patch(ResourceKind.CONFIGMAP, "ns1", "cm1", mutate, retries=3)

    assert store.obj(ResourceKind.CONFIGMAP, "ns1", "cm1")["data"] == {"k": "v2"}
    assert store.sleeps == []


def test_resilient_patch_rereads_after_conflict(store):
    store.create(ResourceKind.CONFIGMAP, _cm(data={"count": "0"}))
    seen = []

    def mutate(fresh):
        seen.append(fresh["data"]["count"])
        if len(seen) == 1:
            # a concurrent writer lands between our read and our patch
            store.obj(ResourceKind.CONFIGMAP, "ns1", "cm1")["data"]["count"] = "1"
            store.put(ResourceKind.CONFIGMAP, store.obj(ResourceKind.CONFIGMAP, "ns1", "cm1"))
        fresh["data"]["count"] = str(int(fresh["data"]["count"]) + 10)
        return fresh

    store.resilient_patch(ResourceKind.CONFIGMAP, "ns1", "cm1", mutate, retries=3, delay=0.5)

    assert seen == ["0", "1"]
    assert store.sleeps == [0.5]
    assert store.obj(ResourceKind.CONFIGMAP, "ns1", "cm1")["data"]["count"] == "11"


def test_resilient_patch_with_single_attempt(store):
    store.create(ResourceKind.CONFIGMAP, _cm())
    store.inject_conflicts("patch", ResourceKind.CONFIGMAP, "cm1", 1)

    with pytest.raises(ConflictError):
        store.resilient_patch(ResourceKind.CONFIGMAP, "ns1", "cm1", lambda fresh: fresh, retries=1)
    assert store.sleeps == []
