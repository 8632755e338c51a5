"""
Restart coordinator: collapses independently detected restart reasons into a
single workload restart per reconcile pass.

Reasons are persisted per instance in the ``ledger-operator.restart`` ConfigMap
(key ``restart-config.json``), so they survive operator restarts and are
shared with timer threads through the store rather than memory.

  register(reason)      pending; requestTimestamp set on first registration,
                        sequence bumped on every registration
  trigger_if_needed()   snapshot pending reasons -> one restart -> clear only
                        the snapshotted entries whose sequence is unchanged
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from ..config import Settings, settings as default_settings
from ..errors import ConflictError, NotFoundError
from ..events import RESTARTS_DEFERRED, RESTARTS_TRIGGERED, publish_event
from ..models import (CertType, Instance, InstanceRestarts, RequestStatus, ResourceKind,
                      RestartConfig, RestartReason, RestartRequest)
from ..services.kubernetes_service import ObjectStore
from ..status import ISO_FORMAT, parse_time

logger = logging.getLogger("ledger-operator.restart")

CONFIG_KEY = "restart-config.json"
RESTARTED_AT_ANNOTATION = "ledger.platform.io/restartedAt"
RESTART_REASONS_ANNOTATION = "ledger.platform.io/restartReasons"


class RestartOutcome(str, Enum):
    NONE = "none"
    RESTARTED = "restarted"
    DEFERRED = "deferred"
    DISABLED = "disabled"


@dataclass
class RestartResult:
    outcome: RestartOutcome
    reasons: List[RestartReason] = field(default_factory=list)
    requeue_after: Optional[float] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def instance_config_key(instance: Instance) -> str:
    return f"{instance.kind.value}/{instance.name}"


class RestartCoordinator:
    def __init__(self, store: ObjectStore, settings: Settings = default_settings,
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.settings = settings
        self.clock = clock

    def _timestamp(self) -> str:
        return self.clock().strftime(ISO_FORMAT)

    # -- persistence -----------------------------------------------------------

    def get_config(self, namespace: str) -> Tuple[RestartConfig, Optional[dict]]:
        """The restart document and the ConfigMap it came from (None if absent)."""
        try:
            cm = self.store.get(ResourceKind.CONFIGMAP, namespace, self.settings.RESTART_CONFIG_NAME)
        except NotFoundError:
            return RestartConfig(), None
        raw = (cm.get("data") or {}).get(CONFIG_KEY)
        if not raw:
            return RestartConfig(), cm
        return RestartConfig.model_validate_json(raw), cm

    def _write_config(self, namespace: str, cfg: RestartConfig, cm: Optional[dict]):
        payload = json.dumps(cfg.model_dump(mode="json", by_alias=True), sort_keys=True)
        if cm is None:
            body = {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": self.settings.RESTART_CONFIG_NAME, "namespace": namespace},
                "data": {CONFIG_KEY: payload},
            }
            self.store.create(ResourceKind.CONFIGMAP, body)
            return
        cm = dict(cm)
        cm["data"] = {**(cm.get("data") or {}), CONFIG_KEY: payload}
        self.store.update(ResourceKind.CONFIGMAP, cm)

    def _modify(self, namespace: str, fn: Callable[[RestartConfig], None]) -> RestartConfig:
        """Read-modify-write with optimistic concurrency, retried on conflict."""
        attempts = max(self.settings.RESTART_CONFIG_RETRIES, 1)
        last_error = None
        for attempt in range(1, attempts + 1):
            cfg, cm = self.get_config(namespace)
            fn(cfg)
            try:
                self._write_config(namespace, cfg, cm)
                return cfg
            except ConflictError as e:
                last_error = e
                logger.warning(
                    f"Conflict writing {self.settings.RESTART_CONFIG_NAME} in {namespace} "
                    f"(attempt {attempt}/{attempts})"
                )
        raise last_error

    # -- registration ----------------------------------------------------------

    def register(self, reason: RestartReason, instance: Instance, origin: str = ""):
        """
        Mark ``reason`` pending for the instance. Registering again for the same
        non-empty ``origin`` is a no-op, even after the restart it asked for.
        """
        key = instance_config_key(instance)

        def add(cfg: RestartConfig):
            restarts = cfg.instances.setdefault(key, InstanceRestarts())
            req = restarts.requests.setdefault(reason, RestartRequest())
            if origin and req.origin == origin:
                logger.debug(f"{reason.value} for {instance.key} already registered from {origin}")
                return
            if req.status != RequestStatus.PENDING:
                req.status = RequestStatus.PENDING
                req.request_timestamp = self._timestamp()
            req.sequence += 1
            req.origin = origin

        logger.info(
            f"Updating {self.settings.RESTART_CONFIG_NAME} config map, "
            f"{instance.name} restart requested due to {reason.value}"
        )
        self._modify(instance.namespace, add)

    def for_cert_update(self, cert_type: CertType, instance: Instance, origin: str = ""):
        reason = RestartReason.TLS_UPDATE if cert_type == CertType.TLS else RestartReason.ECERT_UPDATE
        self.register(reason, instance, origin)

    def for_config_override(self, instance: Instance, origin: str = ""):
        self.register(RestartReason.CONFIG_OVERRIDE, instance, origin)

    def for_node_ou(self, instance: Instance, origin: str = ""):
        self.register(RestartReason.NODE_OU, instance, origin)

    def for_admin_cert_update(self, instance: Instance, origin: str = ""):
        self.register(RestartReason.ADMIN_CERT, instance, origin)

    def for_restart_action(self, instance: Instance, origin: str = ""):
        self.register(RestartReason.RESTART_ACTION, instance, origin)

    def for_migration(self, instance: Instance, origin: str = ""):
        self.register(RestartReason.MIGRATION, instance, origin)

    def for_configmap_update(self, instance: Instance, origin: str = ""):
        self.register(RestartReason.CONFIGMAP_UPDATE, instance, origin)

    def pending_reasons(self, instance: Instance) -> List[RestartReason]:
        cfg, _ = self.get_config(instance.namespace)
        restarts = cfg.instances.get(instance_config_key(instance))
        return sorted(restarts.pending()) if restarts else []

    def forget(self, instance: Instance):
        """Drop the instance's entry from the restart document."""
        key = instance_config_key(instance)
        cfg, _ = self.get_config(instance.namespace)
        if key not in cfg.instances:
            return
        self._modify(instance.namespace, lambda c: c.instances.pop(key, None))

    # -- trigger ---------------------------------------------------------------

    def _remaining_wait(self, restarts: InstanceRestarts) -> float:
        """Seconds until the wait time since the last restart has passed (0 = now)."""
        last_actions = [parse_time(r.last_action_timestamp)
                        for r in restarts.requests.values() if r.last_action_timestamp]
        if not last_actions:
            return 0.0
        elapsed = (self.clock() - max(last_actions)).total_seconds()
        return max(self.settings.RESTART_WAIT_TIME - elapsed, 0.0)

    def trigger_if_needed(self, instance: Instance) -> RestartResult:
        cfg, _ = self.get_config(instance.namespace)
        restarts = cfg.instances.get(instance_config_key(instance))
        if restarts is None or not restarts.pending():
            return RestartResult(RestartOutcome.NONE)

        snapshot = {reason: req.sequence for reason, req in restarts.pending().items()}
        reasons = sorted(snapshot)

        if self.settings.RESTART_DISABLE_COMPONENTS:
            logger.info(f"Restarts disabled, not restarting {instance.key} for {_joined(reasons)}")
            return RestartResult(RestartOutcome.DISABLED, reasons)

        wait = self._remaining_wait(restarts)
        if wait > 0:
            RESTARTS_DEFERRED.labels(kind=instance.kind.value).inc()
            logger.info(f"Restart of {instance.key} deferred {wait / 60:.1f} minutes ({_joined(reasons)})")
            return RestartResult(RestartOutcome.DEFERRED, reasons, requeue_after=wait)

        self.restart_deployment(instance, reasons)
        self._clear(instance, snapshot)
        RESTARTS_TRIGGERED.labels(kind=instance.kind.value).inc()
        publish_event(instance.namespace, instance.name, "RESTARTED", _joined(reasons))
        return RestartResult(RestartOutcome.RESTARTED, reasons)

    def restart_deployment(self, instance: Instance, reasons: List[RestartReason]):
        """Touch the pod template so the workload rolls; a missing workload is a no-op."""
        logger.info(f"Restarting deployment {instance.name} ({_joined(reasons)})")
        patch = {"spec": {"template": {"metadata": {"annotations": {
            RESTARTED_AT_ANNOTATION: self._timestamp(),
            RESTART_REASONS_ANNOTATION: _joined(reasons),
        }}}}}
        try:
            self.store.patch(ResourceKind.DEPLOYMENT, instance.namespace, instance.name, patch)
        except NotFoundError:
            logger.info(f"Deployment {instance.name} not found, nothing to restart")

    def _clear(self, instance: Instance, snapshot):
        key = instance_config_key(instance)
        stamp = self._timestamp()

        def clear(cfg: RestartConfig):
            restarts = cfg.instances.get(key)
            if restarts is None:
                return
            for reason, sequence in snapshot.items():
                req = restarts.requests.get(reason)
                # Re-registered since the snapshot: stays pending for the next pass
                if req is None or req.status != RequestStatus.PENDING or req.sequence != sequence:
                    continue
                req.status = RequestStatus.COMPLETE
                req.request_timestamp = ""
                req.last_action_timestamp = stamp

        self._modify(instance.namespace, clear)


def _joined(reasons: List[RestartReason]) -> str:
    return ",".join(r.value for r in reasons)
