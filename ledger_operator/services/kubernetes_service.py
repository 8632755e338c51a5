"""
Kubernetes service layer: the object store client used by every component.

Design principles:
  - Objects travel as plain camelCase dicts (the API server's JSON shape), so
    drift detection and patch computation work on one canonical form
  - One dispatch table maps a kind to its typed API and method suffix
  - Clean error handling: 404/409 become NotFoundError/ConflictError
  - Merge patches only; optimistic concurrency through metadata.resourceVersion
"""

import copy
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

from kubernetes import client, config
from kubernetes.client import ApiException

from ..config import Settings, settings as default_settings
from ..errors import ConflictError, translate_api_exception
from ..models import ComponentKind, ResourceKind

logger = logging.getLogger("ledger-operator.store")

MERGE_PATCH = "application/merge-patch+json"

# Fields owned by the API server; never part of a computed patch.
SYSTEM_METADATA = ("uid", "creationTimestamp", "managedFields", "generation",
                   "resourceVersion", "selfLink", "deletionTimestamp")

_k8s_loaded = False


def _ensure_k8s(settings: Settings = default_settings):
    """Load Kubernetes config exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    if settings.IN_CLUSTER:
        config.load_incluster_config()
    else:
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config(config_file=settings.KUBECONFIG or None)
    _k8s_loaded = True


def core_api() -> client.CoreV1Api:
    _ensure_k8s()
    return client.CoreV1Api()


def apps_api() -> client.AppsV1Api:
    _ensure_k8s()
    return client.AppsV1Api()


def batch_api() -> client.BatchV1Api:
    _ensure_k8s()
    return client.BatchV1Api()


def networking_api() -> client.NetworkingV1Api:
    _ensure_k8s()
    return client.NetworkingV1Api()


def rbac_api() -> client.RbacAuthorizationV1Api:
    _ensure_k8s()
    return client.RbacAuthorizationV1Api()


def custom_api() -> client.CustomObjectsApi:
    _ensure_k8s()
    return client.CustomObjectsApi()


# kind -> (api factory, method suffix)
KIND_API = {
    ResourceKind.DEPLOYMENT: (apps_api, "deployment"),
    ResourceKind.SERVICE: (core_api, "service"),
    ResourceKind.PVC: (core_api, "persistent_volume_claim"),
    ResourceKind.CONFIGMAP: (core_api, "config_map"),
    ResourceKind.SECRET: (core_api, "secret"),
    ResourceKind.SERVICE_ACCOUNT: (core_api, "service_account"),
    ResourceKind.ROLE: (rbac_api, "role"),
    ResourceKind.ROLE_BINDING: (rbac_api, "role_binding"),
    ResourceKind.INGRESS: (networking_api, "ingress"),
    ResourceKind.JOB: (batch_api, "job"),
    ResourceKind.POD: (core_api, "pod"),
}


def label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def merge_patch(live: Any, desired: Any) -> Any:
    """
    RFC 7386 merge patch turning ``live`` into ``desired``. Keys missing from
    ``desired`` are removed (null); lists are replaced wholesale.
    """
    if not isinstance(live, dict) or not isinstance(desired, dict):
        return copy.deepcopy(desired)
    patch = {}
    for key, value in desired.items():
        if key not in live:
            patch[key] = copy.deepcopy(value)
        elif live[key] != value:
            if isinstance(live[key], dict) and isinstance(value, dict):
                patch[key] = merge_patch(live[key], value)
            else:
                patch[key] = copy.deepcopy(value)
    for key in live:
        if key not in desired:
            patch[key] = None
    return patch


def with_owner(body: dict, owner: Optional[dict]) -> dict:
    """Attach a controller owner reference, replacing any previous one for the same uid."""
    if not owner:
        return body
    refs = [r for r in body["metadata"].get("ownerReferences") or [] if r.get("uid") != owner.get("uid")]
    body["metadata"]["ownerReferences"] = refs + [dict(owner)]
    return body


def object_patch(live: dict, desired: dict) -> dict:
    """Merge patch between two full objects, ignoring status and server-owned metadata."""
    def strip(obj):
        obj = {k: v for k, v in obj.items() if k != "status"}
        meta = {k: v for k, v in (obj.get("metadata") or {}).items() if k not in SYSTEM_METADATA}
        obj["metadata"] = meta
        return obj

    return merge_patch(strip(live), strip(desired))


class ObjectStore:
    """Read/write access to namespaced objects and node custom resources."""

    def __init__(self, settings: Settings = default_settings,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self._sleep = sleep
        self._serializer = client.ApiClient()

    # -- helpers -----------------------------------------------------------

    def _call(self, kind: ResourceKind, verb: str, *args, **kwargs):
        factory, suffix = KIND_API[kind]
        method = getattr(factory(), f"{verb}_namespaced_{suffix}")
        return method(*args, **kwargs)

    def _to_dict(self, obj) -> dict:
        if isinstance(obj, dict):
            return obj
        return self._serializer.sanitize_for_serialization(obj)

    @staticmethod
    def _what(kind: Union[ResourceKind, ComponentKind], namespace: str, name: str) -> str:
        return f"{kind.value} {namespace}/{name}"

    # -- namespaced objects -----------------------------------------------

    def get(self, kind: ResourceKind, namespace: str, name: str) -> dict:
        try:
            return self._to_dict(self._call(kind, "read", name=name, namespace=namespace))
        except ApiException as e:
            raise translate_api_exception(e, self._what(kind, namespace, name)) from e

    def list(self, kind: ResourceKind, namespace: str,
             labels: Optional[Dict[str, str]] = None) -> List[dict]:
        kwargs = {"namespace": namespace}
        if labels:
            kwargs["label_selector"] = label_selector(labels)
        result = self._to_dict(self._call(kind, "list", **kwargs))
        return result.get("items") or []

    def create(self, kind: ResourceKind, body: dict, owner: Optional[dict] = None) -> dict:
        body = with_owner(body, owner)
        meta = body["metadata"]
        try:
            created = self._call(kind, "create", namespace=meta["namespace"], body=body)
        except ApiException as e:
            raise translate_api_exception(e, self._what(kind, meta["namespace"], meta["name"])) from e
        logger.info(f"Created {self._what(kind, meta['namespace'], meta['name'])}")
        return self._to_dict(created)

    def update(self, kind: ResourceKind, body: dict, owner: Optional[dict] = None) -> dict:
        """Full replace; fails with ConflictError on a stale resourceVersion."""
        body = with_owner(body, owner)
        meta = body["metadata"]
        try:
            updated = self._call(kind, "replace", name=meta["name"],
                                 namespace=meta["namespace"], body=body)
        except ApiException as e:
            raise translate_api_exception(e, self._what(kind, meta["namespace"], meta["name"])) from e
        return self._to_dict(updated)

    def patch(self, kind: ResourceKind, namespace: str, name: str, body: dict) -> dict:
        try:
            patched = self._call(kind, "patch", name=name, namespace=namespace, body=body,
                                 _content_type=MERGE_PATCH)
        except ApiException as e:
            raise translate_api_exception(e, self._what(kind, namespace, name)) from e
        return self._to_dict(patched)

    def delete(self, kind: ResourceKind, namespace: str, name: str,
               propagation: Optional[str] = None):
        kwargs = {"name": name, "namespace": namespace}
        if propagation:
            kwargs["body"] = client.V1DeleteOptions(propagation_policy=propagation)
        try:
            self._call(kind, "delete", **kwargs)
        except ApiException as e:
            raise translate_api_exception(e, self._what(kind, namespace, name)) from e
        logger.info(f"Deleted {self._what(kind, namespace, name)}")

    def resilient_patch(self, kind: ResourceKind, namespace: str, name: str,
                        mutate: Callable[[dict], dict], retries: int,
                        delay: Optional[float] = None) -> dict:
        """
        Re-read the object, let ``mutate`` compute the desired object from the
        fresh copy, and merge-patch the difference. The patch pins the fresh
        resourceVersion, so a concurrent writer causes a ConflictError, which
        is retried up to ``retries`` times with ``delay`` seconds in between.
        The last conflict is raised once retries are exhausted.
        """
        delay = self.settings.PATCH_RETRY_DELAY if delay is None else delay
        attempts = max(retries, 1)
        last_error = None
        for attempt in range(1, attempts + 1):
            fresh = self.get(kind, namespace, name)
            desired = mutate(copy.deepcopy(fresh))
            patch = object_patch(fresh, desired)
            patch.setdefault("metadata", {})["resourceVersion"] = fresh["metadata"].get("resourceVersion")
            try:
                return self.patch(kind, namespace, name, patch)
            except ConflictError as e:
                last_error = e
                logger.warning(
                    f"Conflict patching {self._what(kind, namespace, name)} "
                    f"(attempt {attempt}/{attempts})"
                )
                if attempt < attempts:
                    self._sleep(delay)
        raise last_error

    # -- node custom resources ---------------------------------------------

    def get_instance(self, kind: ComponentKind, namespace: str, name: str) -> dict:
        try:
            return custom_api().get_namespaced_custom_object(
                self.settings.CRD_GROUP, self.settings.CRD_VERSION, namespace, kind.plural, name
            )
        except ApiException as e:
            raise translate_api_exception(e, self._what(kind, namespace, name)) from e

    def patch_instance_status(self, kind: ComponentKind, namespace: str, name: str,
                              status: dict) -> dict:
        try:
            return custom_api().patch_namespaced_custom_object_status(
                self.settings.CRD_GROUP, self.settings.CRD_VERSION, namespace, kind.plural,
                name, {"status": status},
            )
        except ApiException as e:
            raise translate_api_exception(e, self._what(kind, namespace, name)) from e
