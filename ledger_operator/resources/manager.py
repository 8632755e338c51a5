"""
Resource manager: keeps one managed object (per instance) in its desired state.

Reconcile
  absent  -> template -> builder(CREATE) -> name/namespace/labels/owner -> create
  present -> only when an update is requested: builder(UPDATE) on the live
             object, applied through a resilient merge patch

CheckState / RestoreState
  builder(CREATE) over a deep copy of the live object gives the expected
  object, so only fields the builder sets can differ. Differences outside the
  ignore list are violations; RestoreState patches them back.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from .. import errors
from ..config import Settings, settings as default_settings
from ..errors import DriftError, NotFoundError, OperatorError
from ..events import DRIFT_DETECTED, DRIFT_RESTORED
from ..models import Action, Instance, ResourceKind
from ..services.kubernetes_service import ObjectStore, with_owner
from .drift import MISSING, DriftDetector, DriftReport, default_ignore_policy

logger = logging.getLogger("ledger-operator.resources")

Builder = Callable[[Instance, dict, Action], None]
LabelsFunc = Callable[[Instance], Dict[str, str]]


@dataclass(frozen=True)
class KindTraits:
    state_fields: Tuple[str, ...]
    checked: bool
    create_code: int
    update_code: int
    workload: bool = False


KIND_TRAITS = {
    ResourceKind.DEPLOYMENT: KindTraits(
        ("spec",), True,
        errors.INVALID_DEPLOYMENT_CREATE_REQUEST, errors.INVALID_DEPLOYMENT_UPDATE_REQUEST,
        workload=True,
    ),
    ResourceKind.SERVICE: KindTraits(
        ("spec",), True,
        errors.INVALID_SERVICE_CREATE_REQUEST, errors.INVALID_SERVICE_UPDATE_REQUEST,
    ),
    ResourceKind.CONFIGMAP: KindTraits(
        ("data", "binaryData"), True,
        errors.INVALID_CONFIGMAP_CREATE_REQUEST, errors.INVALID_CONFIGMAP_UPDATE_REQUEST,
    ),
    ResourceKind.PVC: KindTraits(
        ("spec",), False,
        errors.INVALID_PVC_CREATE_REQUEST, errors.INVALID_PVC_UPDATE_REQUEST,
    ),
    ResourceKind.SECRET: KindTraits(
        ("data",), False,
        errors.INVALID_SECRET_CREATE_REQUEST, errors.INVALID_SECRET_UPDATE_REQUEST,
    ),
    ResourceKind.SERVICE_ACCOUNT: KindTraits(
        ("imagePullSecrets",), False,
        errors.INVALID_SERVICE_ACCOUNT_CREATE_REQUEST, errors.INVALID_SERVICE_ACCOUNT_UPDATE_REQUEST,
    ),
    ResourceKind.ROLE: KindTraits(
        ("rules",), False,
        errors.INVALID_ROLE_CREATE_REQUEST, errors.INVALID_ROLE_UPDATE_REQUEST,
    ),
    ResourceKind.ROLE_BINDING: KindTraits(
        ("subjects", "roleRef"), False,
        errors.INVALID_ROLE_BINDING_CREATE_REQUEST, errors.INVALID_ROLE_BINDING_UPDATE_REQUEST,
    ),
    ResourceKind.INGRESS: KindTraits(
        ("spec",), False,
        errors.INVALID_INGRESS_CREATE_REQUEST, errors.INVALID_INGRESS_UPDATE_REQUEST,
    ),
}


def selector_labels(instance: Instance) -> Dict[str, str]:
    return {"app": instance.name}


def get_name(instance_name: str, suffix: str = "") -> str:
    if suffix:
        return f"{instance_name}-{suffix}"
    return instance_name


class ResourceManager:
    def __init__(
        self,
        kind: ResourceKind,
        store: ObjectStore,
        builder: Builder,
        labels_func: Optional[LabelsFunc] = None,
        template: Optional[dict] = None,
        suffix: str = "",
        ignore_paths: Iterable[str] = (),
        settings: Settings = default_settings,
    ):
        self.kind = kind
        self.traits = KIND_TRAITS[kind]
        self.store = store
        self.builder = builder
        self.labels_func = labels_func or selector_labels
        self.template = template or {"metadata": {}}
        self.suffix = suffix
        self.settings = settings
        self.custom_name = ""
        policy = default_ignore_policy(kind, list(settings.EXTRA_IGNORE_PATHS) + list(ignore_paths))
        self.detector = DriftDetector(policy, settings.DRIFT_MAX_DEPTH, settings.DRIFT_MAX_DIFF)

    def set_custom_name(self, name: str):
        self.custom_name = name

    def get_name(self, instance: Instance) -> str:
        if self.custom_name:
            return self.custom_name
        return get_name(instance.name, self.suffix)

    # -- desired state -------------------------------------------------------

    def _build(self, instance: Instance, obj: dict, action: Action) -> dict:
        code = self.traits.create_code if action == Action.CREATE else self.traits.update_code
        try:
            self.builder(instance, obj, action)
        except OperatorError:
            raise
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise OperatorError(
                code, f"failed to {action.value} {self.kind.value} for '{instance.name}': {e}"
            ) from e
        return self._stamp(instance, obj)

    def _stamp(self, instance: Instance, obj: dict) -> dict:
        labels = self.labels_func(instance)
        meta = obj.setdefault("metadata", {})
        meta["name"] = self.get_name(instance)
        meta["namespace"] = instance.namespace
        meta["labels"] = {**(meta.get("labels") or {}), **labels}

        if self.traits.workload:
            spec = obj.setdefault("spec", {})
            spec["selector"] = {"matchLabels": selector_labels(instance)}
            tmeta = spec.setdefault("template", {}).setdefault("metadata", {})
            tmeta["labels"] = {**(tmeta.get("labels") or {}), **labels}
        return obj

    def desired_on_create(self, instance: Instance) -> dict:
        return self._build(instance, copy.deepcopy(self.template), Action.CREATE)

    def expected_from_live(self, instance: Instance, live: dict) -> dict:
        return self._build(instance, copy.deepcopy(live), Action.CREATE)

    # -- contract ------------------------------------------------------------

    def reconcile(self, instance: Instance, update_requested: bool):
        name = self.get_name(instance)
        try:
            self.store.get(self.kind, instance.namespace, name)
        except NotFoundError:
            logger.info(f"Creating {self.kind.value} '{name}' for {instance.key}")
            desired = self.desired_on_create(instance)
            self.store.create(self.kind, desired, owner=instance.owner_reference())
            return

        if not update_requested:
            return

        logger.info(f"Updating {self.kind.value} '{name}' for {instance.key}")
        owner = instance.owner_reference()

        def mutate(fresh: dict) -> dict:
            return with_owner(self._build(instance, fresh, Action.UPDATE), owner)

        self.store.resilient_patch(
            self.kind, instance.namespace, name, mutate, retries=self.settings.UPDATE_PATCH_RETRIES
        )

    def exists(self, instance: Instance) -> bool:
        try:
            self.get(instance)
            return True
        except NotFoundError:
            return False

    def get(self, instance: Instance) -> dict:
        return self.store.get(self.kind, instance.namespace, self.get_name(instance))

    def delete(self, instance: Instance):
        self.store.delete(self.kind, instance.namespace, self.get_name(instance))

    def _state(self, obj: dict):
        fields = self.traits.state_fields
        if len(fields) == 1:
            return obj.get(fields[0], MISSING)
        return {f: obj[f] for f in fields if f in obj}

    def drift_report(self, instance: Instance) -> DriftReport:
        """Diff the live object against its expected state without raising."""
        live = self.get(instance)
        expected = self.expected_from_live(instance, live)
        return self.detector.compare(self._state(live), self._state(expected))

    def check_state(self, instance: Instance) -> DriftReport:
        if self.settings.DISABLE_DRIFT_CHECKS or not self.traits.checked:
            return DriftReport()

        report = self.drift_report(instance)
        if report.has_violations:
            DRIFT_DETECTED.labels(resource=self.kind.value).inc()
            for entry in report.violations:
                logger.warning(f"{instance.key}: {self.kind.value} drift {entry}")
            raise DriftError(
                instance.key,
                f"{self.kind.value} '{self.get_name(instance)}'",
                report.violation_paths(),
                report=report,
            )
        return report

    def restore_state(self, instance: Instance):
        if not self.traits.checked:
            return
        name = self.get_name(instance)
        logger.info(f"Restoring {self.kind.value} '{name}' to desired state for {instance.key}")
        self.store.resilient_patch(
            self.kind, instance.namespace, name,
            lambda fresh: self.expected_from_live(instance, fresh),
            retries=self.settings.RESTORE_PATCH_RETRIES,
        )
        DRIFT_RESTORED.labels(resource=self.kind.value).inc()
