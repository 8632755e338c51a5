import base64
import copy
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from kubernetes.client import ApiException

from ledger_operator.config import Settings
from ledger_operator.errors import NotFoundError
from ledger_operator.models import ComponentKind, Instance, ResourceKind
from ledger_operator.services.kubernetes_service import ObjectStore

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def apply_merge_patch(target, patch):
    """RFC 7386 application, as the API server does for merge-patch+json."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


def _matches(labels: Dict[str, str], selector: Optional[str]) -> bool:
    if not selector:
        return True
    for term in selector.split(","):
        k, _, v = term.partition("=")
        if labels.get(k) != v:
            return False
    return True


class FakeObjectStore(ObjectStore):
    """
    ObjectStore over in-memory dicts. Reaches the real ObjectStore code paths
    through ``_call``, raising ApiException 404/409 like the API server.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings(PATCH_RETRY_DELAY=0)
        self.sleeps = []
        self._sleep = self.sleeps.append
        self.objects = {}
        self.instances = {}
        self.calls = []
        self.status_patches = []
        self.conflicts = {}
        self._rv = 0

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    def inject_conflicts(self, verb: str, kind: ResourceKind, name: str, count: int):
        self.conflicts[(verb, kind, name)] = count

    def calls_for(self, verb: str, kind: Optional[ResourceKind] = None):
        return [c for c in self.calls if c[0] == verb and (kind is None or c[1] == kind)]

    def put(self, kind: ResourceKind, obj: dict) -> dict:
        obj = copy.deepcopy(obj)
        meta = obj.setdefault("metadata", {})
        meta["resourceVersion"] = self._next_rv()
        self.objects[(kind, meta["namespace"], meta["name"])] = obj
        return obj

    def obj(self, kind: ResourceKind, namespace: str, name: str) -> dict:
        return self.objects[(kind, namespace, name)]

    def _call(self, kind, verb, *args, **kwargs):
        ns = kwargs.get("namespace")
        body = kwargs.get("body")
        name = kwargs.get("name")
        if name is None and verb == "create":
            name = body["metadata"]["name"]
        self.calls.append((verb, kind, name))

        pending = self.conflicts.get((verb, kind, name), 0)
        if pending:
            self.conflicts[(verb, kind, name)] = pending - 1
            raise ApiException(status=409, reason="Conflict")

        key = (kind, ns, name)
        if verb == "list":
            items = [copy.deepcopy(o) for (k, n, _), o in sorted(self.objects.items(), key=lambda kv: kv[0])
                     if k == kind and n == ns
                     and _matches(o["metadata"].get("labels") or {}, kwargs.get("label_selector"))]
            return {"items": items}
        if verb == "create":
            if key in self.objects:
                raise ApiException(status=409, reason="AlreadyExists")
            created = copy.deepcopy(body)
            created["metadata"].setdefault("uid", f"uid-{name}")
            return copy.deepcopy(self.put(kind, created))

        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        live = self.objects[key]

        if verb == "read":
            return copy.deepcopy(live)
        if verb == "delete":
            del self.objects[key]
            return {}
        if verb in ("replace", "patch"):
            rv = (body.get("metadata") or {}).get("resourceVersion")
            if rv and rv != live["metadata"]["resourceVersion"]:
                raise ApiException(status=409, reason="Conflict")
            updated = copy.deepcopy(body) if verb == "replace" else apply_merge_patch(live, body)
            return copy.deepcopy(self.put(kind, updated))
        raise AssertionError(f"unexpected verb {verb}")

    # -- node custom resources ---------------------------------------------

    def add_instance(self, body: dict):
        meta = body["metadata"]
        self.instances[(ComponentKind(body["kind"]), meta["namespace"], meta["name"])] = copy.deepcopy(body)

    def get_instance(self, kind, namespace, name):
        key = (kind, namespace, name)
        if key not in self.instances:
            raise NotFoundError(f"{kind.value} {namespace}/{name} not found")
        return copy.deepcopy(self.instances[key])

    def patch_instance_status(self, kind, namespace, name, status):
        self.status_patches.append((kind, namespace, name, copy.deepcopy(status)))
        body = self.instances.get((kind, namespace, name))
        if body is not None:
            body["status"] = apply_merge_patch(body.get("status") or {}, status)
        return copy.deepcopy(body)


class FakeTimer:
    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def is_alive(self):
        return self.started and not self.cancelled and not self.fired

    def fire(self):
        self.fired = True
        self.function(*self.args)


class TimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=()):
        timer = FakeTimer(interval, function, args)
        self.timers.append(timer)
        return timer


def make_cert(not_after: datetime, not_before: Optional[datetime] = None) -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "peer1")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or not_after - timedelta(days=365))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


def b64(value: bytes) -> str:
    return base64.b64encode(value).decode()


def node_body(kind: str = "Peer", name: str = "peer1", namespace: str = "ns1",
              spec: Optional[dict] = None, status: Optional[dict] = None) -> dict:
    base_spec = {
        "fabricVersion": "2.2.5",
        "images": {"peerImage": "registry.local/peer", "peerTag": "2.2.5",
                   "ordererImage": "registry.local/orderer", "ordererTag": "2.2.5",
                   "caImage": "registry.local/ca", "caTag": "1.5.5"},
        "replicas": 1,
        "mspID": "Org1MSP",
        "secret": {"enrollment": {
            "component": {"cahost": "ca.local", "caport": "7054", "enrollid": "peer1"},
            "tls": {"cahost": "ca.local", "caport": "7054", "enrollid": "peer1"},
        }},
    }
    base_spec.update(spec or {})
    return {
        "apiVersion": "ledger.platform.io/v1beta1",
        "kind": kind,
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
        "spec": base_spec,
        "status": status or {},
    }


@pytest.fixture
def settings():
    return Settings(PATCH_RETRY_DELAY=0, EXTRA_IGNORE_PATHS=(), DISABLE_DRIFT_CHECKS=False,
                    RESTART_DISABLE_COMPONENTS=False, REDIS_URL="", ENROLLER="")


@pytest.fixture
def store(settings):
    return FakeObjectStore(settings)


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def timer_factory():
    return TimerFactory()


@pytest.fixture
def make_instance():
    def _make(**kwargs) -> Instance:
        return Instance.from_body(node_body(**kwargs))
    return _make


@pytest.fixture
def install_certs(store):
    """Write signcert/keystore secrets for an instance; returns the PEMs."""
    def _install(instance: Instance, tls_expires: datetime, ecert_expires: datetime):
        pems = {}
        for cert_type, expires in (("tls", tls_expires), ("ecert", ecert_expires)):
            pem = make_cert(expires)
            pems[cert_type] = pem
            for suffix, key, value in (("signcert", "cert.pem", pem), ("keystore", "key.pem", b"KEY-" + cert_type.encode())):
                store.put(ResourceKind.SECRET, {
                    "apiVersion": "v1", "kind": "Secret",
                    "metadata": {"name": f"{cert_type}-{instance.name}-{suffix}", "namespace": instance.namespace},
                    "data": {key: b64(value)},
                })
        return pems
    return _install
