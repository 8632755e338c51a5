"""
Per-instance reconcile pass.

Order of one pass:
  1. restart reasons for this update (persisted first, so a pass failing in a
     later step keeps them; a retry registering them again is a no-op)
  2. pre-checks (HSM reachability, fail closed) and any registered pre hooks
  3. Reconcile each managed resource kind, then post-resource hooks
  4. CheckState per kind; RestoreState on a violation
  5. migration job state machine (requeue while a job runs)
  6. certificate expiry check; arm renewal timers; requested reenrolls
  7. TriggerIfNeeded (once)
  8. status (type/reason/message, version reached)

NodeReconciler is the platform-neutral pass. K8sReconciler wraps it and adds
the Ingress through a post-resource hook.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .certificates.manager import CertificateManager, load_enroller
from .certificates.timers import RenewalTimerCoordinator, cert_status_reason
from .config import Settings, settings as default_settings
from .errors import CertificateError, CertificateExpiredError, DriftError, NotFoundError
from .events import publish_event
from .migration.jobs import KubernetesJobRunner, migration_selector
from .migration.orchestrator import MigrationOrchestrator
from .models import CertType, Instance, ResourceKind, StatusType, Update
from .resources import overrides
from .resources.manager import ResourceManager
from .restart.coordinator import RestartCoordinator, RestartOutcome
from .services.kubernetes_service import ObjectStore
from .validation import check_hsm_reachable

logger = logging.getLogger("ledger-operator.reconciler")

Hook = Callable[[Instance, Update], None]


@dataclass
class ReconcileResult:
    status_type: StatusType
    reason: str = ""
    message: str = ""
    requeue_after: Optional[float] = None
    # Release reached by this pass; empty while a migration is pending
    version: str = ""
    restarted: bool = False
    reset_actions: bool = False
    restored: List[str] = field(default_factory=list)

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


def workload_status(deployment: dict) -> StatusType:
    """Deployed once every desired replica reports ready."""
    desired = (deployment.get("spec") or {}).get("replicas", 1)
    ready = (deployment.get("status") or {}).get("readyReplicas") or 0
    if ready >= desired:
        return StatusType.DEPLOYED
    return StatusType.DEPLOYING


class NodeReconciler:
    def __init__(
        self,
        store: ObjectStore,
        cert_manager: CertificateManager,
        timers: RenewalTimerCoordinator,
        restart: RestartCoordinator,
        migration: MigrationOrchestrator,
        settings: Settings = default_settings,
    ):
        self.store = store
        self.cert_manager = cert_manager
        self.timers = timers
        self.restart = restart
        self.migration = migration
        self.settings = settings
        self.pre_checks: List[Hook] = [self.check_hsm]
        self.post_resources: List[Hook] = []

    # -- managers ------------------------------------------------------------

    def manager_for(self, kind: ResourceKind, builder, template: dict, suffix: str = "") -> ResourceManager:
        return ResourceManager(
            kind, self.store, builder,
            labels_func=overrides.node_labels,
            template=template,
            suffix=suffix,
            settings=self.settings,
        )

    def managers(self, instance: Instance) -> List[ResourceManager]:
        """Managers for one pass. Built per pass since custom names are per instance."""
        pvc = self.manager_for(ResourceKind.PVC, overrides.pvc_builder, overrides.PVC_TEMPLATE, "pvc")
        custom_pvc = instance.spec.custom_names.pvc.get(overrides.container_name(instance))
        if custom_pvc:
            pvc.set_custom_name(custom_pvc)

        return [
            self.manager_for(ResourceKind.SERVICE_ACCOUNT, overrides.service_account_builder,
                          overrides.SERVICE_ACCOUNT_TEMPLATE),
            pvc,
            self.manager_for(ResourceKind.CONFIGMAP, overrides.config_map_builder,
                          overrides.CONFIGMAP_TEMPLATE, "config"),
            self.manager_for(ResourceKind.SERVICE, overrides.service_builder,
                          overrides.SERVICE_TEMPLATE, "service"),
            self.manager_for(ResourceKind.DEPLOYMENT, overrides.deployment_builder,
                          overrides.DEPLOYMENT_TEMPLATE),
        ]

    # -- steps ---------------------------------------------------------------

    def check_hsm(self, instance: Instance, update: Update):
        check_hsm_reachable(instance, self.settings)

    def reconcile_managers(self, instance: Instance, update: Update,
                           managers: Optional[List[ResourceManager]] = None):
        for manager in managers or self.managers(instance):
            manager.reconcile(instance, update.spec_updated)
        for hook in self.post_resources:
            hook(instance, update)

    def check_states(self, instance: Instance, managers: Optional[List[ResourceManager]] = None) -> List[str]:
        """CheckState on every manager, restoring any that drifted. Returns restored kinds."""
        restored = []
        for manager in managers or self.managers(instance):
            try:
                manager.check_state(instance)
            except NotFoundError:
                logger.debug(f"{manager.kind.value} for {instance.key} not yet reconciled")
            except DriftError as e:
                logger.warning(f"{e}, restoring")
                publish_event(instance.namespace, instance.name, "DRIFT_DETECTED",
                              ", ".join(e.paths)[:200], "Warning")
                manager.restore_state(instance)
                publish_event(instance.namespace, instance.name, "DRIFT_RESTORED",
                              f"{manager.kind.value} restored")
                restored.append(manager.kind.value)
        return restored

    def check_certificates(self, instance: Instance, update: Update) -> Optional[ReconcileResult]:
        """
        Expiry status for the instance's certificates and renewal timers.
        None when the certificates do not exist yet.
        """
        window = self.timers.window(instance)
        try:
            status_type, message = self.cert_manager.check_certificates_for_expire(instance, window)
        except NotFoundError:
            logger.info(f"Certificates for {instance.key} not found, skipping expiry checks")
            return None

        result = ReconcileResult(status_type, cert_status_reason(status_type), message)
        if not self.timers.can_set_certificate_timer(instance, update):
            logger.info(f"{instance.key} not yet deployed, requeuing to set certificate timers")
            result.requeue_after = self.settings.REQUEUE_DELAY
            return result

        forced = set(update.certificates_created) | set(update.cert_types_updated())
        for cert_type in (CertType.TLS, CertType.ECERT):
            try:
                if cert_type in forced or self.timers.needs_timer(instance, cert_type):
                    self.timers.set_certificate_timer(instance, cert_type)
            except CertificateExpiredError as e:
                logger.error(f"Not setting renewal timer for {instance.key}: {e}")
            except NotFoundError:
                logger.info(f"No {cert_type.value} certificate for {instance.key}, no timer set")
        return result

    def reenroll(self, instance: Instance, update: Update):
        """
        Renew the certificates the reenroll action asks for. The restart follows
        from the signcert Secret watch, like any other certificate rewrite.
        """
        requests = (
            (CertType.ECERT, update.ecert_reenroll, update.ecert_new_key_reenroll),
            (CertType.TLS, update.tls_reenroll, update.tls_new_key_reenroll),
        )
        for cert_type, reenroll, new_key in requests:
            if not (reenroll or new_key):
                continue
            logger.info(f"{cert_type.value} reenroll requested for {instance.key} (new key: {new_key})")
            self.cert_manager.renew_cert(cert_type, instance, new_key=new_key)

    def register_restart_reasons(self, instance: Instance, update: Update):
        origin = update.origin
        if update.config_override_updated:
            self.restart.for_config_override(instance, origin)
        if update.node_ou_updated:
            self.restart.for_node_ou(instance, origin)
        if update.admin_certs_updated:
            self.restart.for_admin_cert_update(instance, origin)
        for cert_type in update.cert_types_updated():
            self.restart.for_cert_update(cert_type, instance, origin)
        if update.restart_requested:
            self.restart.for_restart_action(instance, origin)

    # -- pass ----------------------------------------------------------------

    def reconcile(self, instance: Instance, update: Update) -> ReconcileResult:
        logger.info(f"Reconciling {instance.key}")
        self.register_restart_reasons(instance, update)
        for hook in self.pre_checks:
            hook(instance, update)

        managers = self.managers(instance)
        self.reconcile_managers(instance, update, managers)
        restored = self.check_states(instance, managers)

        if self.migration.handle_migration_jobs(migration_selector(instance), instance):
            logger.info(f"Requeuing {instance.key} until migration job completes")
            return ReconcileResult(
                StatusType.DEPLOYING, "migrationRunning",
                f"waiting for migration to {instance.release()}",
                requeue_after=self.settings.MIGRATION_REQUEUE_DELAY,
                restored=restored,
            )

        steps = self.migration.config_migration_steps(instance)
        if steps:
            logger.info(f"{instance.key} crossed configuration boundaries {steps}")
            self.restart.for_configmap_update(instance, origin=f"config-{instance.release()}")

        try:
            deployment = _deployment_manager(managers).get(instance)
            status_type = workload_status(deployment)
        except NotFoundError:
            status_type = StatusType.DEPLOYING
        result = ReconcileResult(
            status_type, "allPodsDeployed" if status_type == StatusType.DEPLOYED else "waitingForPods"
        )

        try:
            cert_result = self.check_certificates(instance, update)
        except CertificateError as e:
            logger.error(f"Certificate check failed for {instance.key}: {e}")
            cert_result = ReconcileResult(StatusType.ERROR, "certificateCheckFailed", str(e))
        if cert_result is not None:
            if cert_result.status_type != StatusType.DEPLOYED:
                result.status_type = cert_result.status_type
                result.reason = cert_result.reason
                result.message = cert_result.message
            result.requeue_after = cert_result.requeue_after

        self.reenroll(instance, update)

        restart = self.restart.trigger_if_needed(instance)
        if restart.outcome == RestartOutcome.RESTARTED:
            result.restarted = True
        elif restart.outcome == RestartOutcome.DEFERRED:
            result.requeue_after = min(filter(None, (result.requeue_after, restart.requeue_after)))

        result.version = instance.release()
        result.reset_actions = _actions_set(instance)
        result.restored = restored
        return result


def _deployment_manager(managers: List[ResourceManager]) -> ResourceManager:
    return next(m for m in managers if m.kind == ResourceKind.DEPLOYMENT)


def _actions_set(instance: Instance) -> bool:
    action = instance.spec.action
    reenroll = action.reenroll
    return action.restart or reenroll.ecert or reenroll.ecert_new_key or reenroll.tls_cert or reenroll.tls_cert_new_key


class K8sReconciler:
    """Kubernetes variant: the base pass plus an Ingress when a domain is set."""

    def __init__(self, base: NodeReconciler):
        self.base = base
        base.post_resources.append(self.reconcile_ingress)

    def ingress_manager(self) -> ResourceManager:
        return self.base.manager_for(ResourceKind.INGRESS, overrides.ingress_builder,
                                  overrides.INGRESS_TEMPLATE)

    def reconcile_ingress(self, instance: Instance, update: Update):
        if not instance.spec.domain:
            return
        self.ingress_manager().reconcile(instance, update.spec_updated)

    def reconcile(self, instance: Instance, update: Update) -> ReconcileResult:
        return self.base.reconcile(instance, update)

    def __getattr__(self, name):
        return getattr(self.base, name)


def build_reconciler(settings: Settings = default_settings, store: Optional[ObjectStore] = None):
    """Wire the components for the configured platform."""
    store = store or ObjectStore(settings)
    cert_manager = CertificateManager(store, load_enroller(settings.ENROLLER), settings)
    timers = RenewalTimerCoordinator(store, cert_manager, settings=settings)
    restart = RestartCoordinator(store, settings)
    migration = MigrationOrchestrator(store, KubernetesJobRunner(store, settings), restart, settings)
    base = NodeReconciler(store, cert_manager, timers, restart, migration, settings)
    if settings.PLATFORM == "k8s":
        return K8sReconciler(base)
    return base
