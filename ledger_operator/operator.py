"""
Ledger Node Operator: kopf handlers for Peer, Orderer and CA resources.

  Node CRD -> operator watches -> reconcile pass (reconciler.NodeReconciler):
    resources -> drift check/restore -> migration -> certificates -> restart

  On Create / Resume / Update:
    One reconcile pass; status.type/reason/message/version written through
    the kopf patch. Requeues (running migration, deferred restart, timers
    waiting for a deployed node) become TemporaryError with a delay.

  On status.type change:
    Renewal timers write the status from their own threads; the change
    re-enters the reconcile pass here.

  On signcert Secret data change:
    A renewed or replaced certificate (timer, reenroll action, external
    enroller) registers the certificate restart and runs a pass for the
    owning node; the status goes to the node through the object store.

  Drift Detection (Timer):
    CheckState on every managed resource; RestoreState on a violation.

  On Delete:
    Cancel renewal timers, drop the restart entry and the event stream.
    Managed resources go with their owner reference.

Run with: kopf run -m ledger_operator.operator
"""

import copy
import hashlib
import json
import logging

import kopf
from kubernetes.client import ApiException
from prometheus_client import start_http_server

from .certificates.manager import parse_signcert_secret_name
from .config import settings as operator_settings
from .errors import CertificateError, NotFoundError, OperatorError, StoreError, is_breaking_error
from .events import drop_stream, publish_event
from .models import ComponentKind, Instance, StatusType, Update
from .reconciler import ReconcileResult, build_reconciler
from .status import status_patch

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("ledger-operator")

GROUP = operator_settings.CRD_GROUP
VERSION = operator_settings.CRD_VERSION

RESET_ACTIONS = {
    "restart": False,
    "reenroll": {"ecert": False, "ecertNewKey": False, "tlscert": False, "tlscertNewKey": False},
}

_reconciler = None


def get_reconciler():
    """Build the reconciler once, on first use."""
    global _reconciler
    if _reconciler is None:
        _reconciler = build_reconciler(operator_settings)
    return _reconciler


# ---------------------------------------------------------------------------
# Kopf operator settings
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **kwargs):
    settings.posting.enabled = True
    settings.persistence.finalizer = f"nodes.{GROUP}/finalizer"
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=GROUP)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=GROUP)
    settings.execution.max_workers = operator_settings.MAX_WORKERS
    if operator_settings.METRICS_PORT:
        start_http_server(operator_settings.METRICS_PORT)
    logger.info(
        f"Ledger Operator started (max_workers={operator_settings.MAX_WORKERS}, "
        f"platform={operator_settings.PLATFORM}, metrics_port={operator_settings.METRICS_PORT or 'off'})"
    )


# ---------------------------------------------------------------------------
# Reconcile pass
# ---------------------------------------------------------------------------

def _write_status(patch, status: dict, result: ReconcileResult):
    body = status_patch(dict(status or {}), result.status_type, result.reason, result.message)
    if body is not None:
        for key, value in body.items():
            patch.status[key] = value
    if result.version and (status or {}).get("version") != result.version:
        patch.status["version"] = result.version


def _fail_status(patch, status: dict, message: str):
    body = status_patch(dict(status or {}), StatusType.ERROR, "reconcileFailed", message)
    if body is not None:
        for key, value in body.items():
            patch.status[key] = value


def spec_origin(body) -> str:
    """Restart registrations from one spec generation count once across retries."""
    generation = (body.get("metadata") or {}).get("generation")
    return f"generation-{generation}" if generation else ""


def run_pass(body, status, patch, update: Update, logger):
    instance = Instance.from_body(body)

    try:
        result = get_reconciler().reconcile(instance, update)
    except OperatorError as e:
        if is_breaking_error(e):
            logger.error(f"{instance.key}: {e}")
            _fail_status(patch, status, str(e)[:500])
            publish_event(instance.namespace, instance.name, "RECONCILE_FAILED", str(e)[:200], "Error")
            raise kopf.PermanentError(str(e)) from e
        logger.warning(f"{instance.key}: {e}, requeuing")
        raise kopf.TemporaryError(str(e), delay=operator_settings.REQUEUE_DELAY) from e
    except (StoreError, CertificateError, ApiException) as e:
        logger.error(f"{instance.key}: reconcile failed: {e}")
        raise kopf.TemporaryError(f"Reconcile of {instance.key} failed: {e}", delay=30) from e

    _write_status(patch, status, result)
    if result.reset_actions:
        patch.spec["action"] = copy.deepcopy(RESET_ACTIONS)
    if result.restored:
        publish_event(instance.namespace, instance.name, "SELF_HEALED",
                      f"Restored {', '.join(result.restored)}", result.status_type.value)

    if result.requeue:
        raise kopf.TemporaryError(
            f"{instance.key}: {result.reason or 'requeue'} {result.message}".strip(),
            delay=result.requeue_after,
        )
    return {"type": result.status_type.value, "restarted": result.restarted}


# ---------------------------------------------------------------------------
# CREATE / RESUME / UPDATE handlers
# ---------------------------------------------------------------------------

@kopf.on.create(GROUP, VERSION, "peers")
@kopf.on.create(GROUP, VERSION, "orderers")
@kopf.on.create(GROUP, VERSION, "cas")
def create_node(body, spec, status, patch, logger, **kwargs):
    """New instance: every resource is created and both certificates are new."""
    update = Update.from_specs(None, spec).model_copy(update={"origin": spec_origin(body)})
    return run_pass(body, status, patch, update, logger)


@kopf.on.resume(GROUP, VERSION, "peers")
@kopf.on.resume(GROUP, VERSION, "orderers")
@kopf.on.resume(GROUP, VERSION, "cas")
def resume_node(body, status, patch, logger, **kwargs):
    """Operator restart: re-apply the desired state and re-arm renewal timers."""
    return run_pass(body, status, patch, Update(spec_updated=True), logger)


@kopf.on.update(GROUP, VERSION, "peers")
@kopf.on.update(GROUP, VERSION, "orderers")
@kopf.on.update(GROUP, VERSION, "cas")
def update_node(body, old, new, status, patch, logger, **kwargs):
    update = Update.from_specs((old or {}).get("spec"), (new or {}).get("spec") or {})
    update = update.model_copy(update={"origin": spec_origin(body)})
    return run_pass(body, status, patch, update, logger)


@kopf.on.field(GROUP, VERSION, "peers", field="status.type")
@kopf.on.field(GROUP, VERSION, "orderers", field="status.type")
@kopf.on.field(GROUP, VERSION, "cas", field="status.type")
def status_type_changed(body, old, new, status, patch, logger, **kwargs):
    """Status written out of band (renewal timer): run a pass without spec changes."""
    if old is None or new is None:
        return
    logger.info(f"Status type changed {old} -> {new}")
    return run_pass(body, status, patch, Update(), logger)


# ---------------------------------------------------------------------------
# Secret watch: signing certificates rewritten outside the spec
# ---------------------------------------------------------------------------

def _is_signcert_secret(name, **_):
    return parse_signcert_secret_name(name or "") is not None


def _owning_instance(store, namespace: str, name: str, meta) -> dict:
    """The node the secret belongs to, by owner reference first, else by name."""
    owners = [ref["kind"] for ref in (meta or {}).get("ownerReferences") or []
              if ref.get("name") == name and ref.get("kind") in {k.value for k in ComponentKind}]
    for kind in [ComponentKind(k) for k in owners] or list(ComponentKind):
        try:
            return store.get_instance(kind, namespace, name)
        except NotFoundError:
            continue
    return None


@kopf.on.update("v1", "secrets", field="data", when=_is_signcert_secret)
def signcert_changed(name, namespace, meta, old, new, logger, **kwargs):
    if not old or old == new:
        return
    cert_type, instance_name = parse_signcert_secret_name(name)
    reconciler = get_reconciler()
    body = _owning_instance(reconciler.store, namespace, instance_name, meta)
    if body is None:
        logger.debug(f"Secret {namespace}/{name} belongs to no node, ignoring")
        return

    digest = hashlib.sha256(json.dumps(new, sort_keys=True).encode()).hexdigest()[:16]
    update = Update.for_certificate_change(cert_type, origin=f"{name}@{digest}")
    logger.info(f"{cert_type.value} certificate updated for {namespace}/{instance_name}")

    patch = kopf.Patch()
    try:
        return run_pass(body, body.get("status"), patch, update, logger)
    finally:
        status = patch.get("status")
        if status:
            reconciler.store.patch_instance_status(ComponentKind(body["kind"]), namespace,
                                                   instance_name, dict(status))


# ---------------------------------------------------------------------------
# DELETE handler
# ---------------------------------------------------------------------------

@kopf.on.delete(GROUP, VERSION, "peers")
@kopf.on.delete(GROUP, VERSION, "orderers")
@kopf.on.delete(GROUP, VERSION, "cas")
def delete_node(body, logger, **kwargs):
    instance = Instance.from_body(body)
    reconciler = get_reconciler()
    reconciler.timers.cancel_all(instance)

    try:
        reconciler.restart.forget(instance)
    except (StoreError, ApiException) as e:
        logger.warning(f"Restart config cleanup for {instance.key} failed (non-fatal): {e}")

    publish_event(instance.namespace, instance.name, "DELETE_COMPLETE", f"{instance.key} deleted", "Deleted")
    drop_stream(instance.namespace, instance.name)
    logger.info(f"{instance.key} cleanup complete")


# ---------------------------------------------------------------------------
# TIMER: periodic drift detection and self-healing
# ---------------------------------------------------------------------------

@kopf.timer(GROUP, VERSION, "peers", interval=operator_settings.DRIFT_CHECK_INTERVAL, idle=operator_settings.DRIFT_CHECK_INTERVAL)
@kopf.timer(GROUP, VERSION, "orderers", interval=operator_settings.DRIFT_CHECK_INTERVAL, idle=operator_settings.DRIFT_CHECK_INTERVAL)
@kopf.timer(GROUP, VERSION, "cas", interval=operator_settings.DRIFT_CHECK_INTERVAL, idle=operator_settings.DRIFT_CHECK_INTERVAL)
def check_node_drift(body, status, logger, **kwargs):
    """
    CheckState for every managed resource of a reconciled instance and
    RestoreState for those in violation. Instances that have not finished a
    first pass are left to the create handler.
    """
    if operator_settings.DISABLE_DRIFT_CHECKS or not (status or {}).get("type"):
        return

    instance = Instance.from_body(body)
    try:
        restored = get_reconciler().check_states(instance)
    except (OperatorError, StoreError, ApiException) as e:
        logger.error(f"Drift check failed for {instance.key}: {e}")
        return

    if restored:
        logger.info(f"{instance.key}: restored {', '.join(restored)}")
        publish_event(instance.namespace, instance.name, "SELF_HEALED",
                      f"Restored {', '.join(restored)}", status.get("type", ""))
