"""
Renewal timers: one pending one-shot timer per (instance, certificate type).

A timer fires on its own thread, outside any reconcile pass. It only talks to
the object store and the enroller: it writes the instance status (which makes
the watch re-run the reconcile), re-reads the instance, backs up the current
crypto and renews. The rewritten signcert Secret is seen by the Secret watch,
which registers the certificate restart and runs a pass. A failed renewal is
logged and counted; the instance stays in Warning until the next expiry check
re-arms a timer.

The timer table is shared by every kopf worker thread; all access holds
``_lock``.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Tuple

from ..config import Settings, settings as default_settings
from ..events import CERT_RENEWALS, publish_event
from ..models import DAYS_TO_SECONDS, CertType, ComponentKind, Instance, StatusType, Update
from ..resources.overrides import node_labels
from ..services.kubernetes_service import ObjectStore
from ..status import status_patch
from .backup import backup_crypto
from .manager import CertificateManager, signcert_secret_name

logger = logging.getLogger("ledger-operator.timers")

TimerKey = Tuple[str, CertType]


def daemon_timer(interval: float, function: Callable, args=()) -> threading.Timer:
    timer = threading.Timer(interval, function, args=args)
    timer.daemon = True
    return timer


def cert_status_reason(status_type: StatusType) -> str:
    if status_type == StatusType.DEPLOYED:
        return "allPodsDeployed"
    return "certRenewalRequired"


class RenewalTimerCoordinator:
    def __init__(self, store: ObjectStore, cert_manager: CertificateManager,
                 labels_func: Callable[[Instance], Dict[str, str]] = node_labels,
                 timer_factory: Callable[..., Any] = daemon_timer,
                 settings: Settings = default_settings):
        self.store = store
        self.cert_manager = cert_manager
        self.labels_func = labels_func
        self.timer_factory = timer_factory
        self.settings = settings
        self._timers: Dict[TimerKey, Any] = {}
        self._armed_for: Dict[TimerKey, datetime] = {}
        self._lock = threading.Lock()

    def window(self, instance: Instance) -> int:
        return instance.spec.warning_period_seconds(self.settings.CERT_WARNING_DAYS)

    def can_set_certificate_timer(self, instance: Instance, update: Update) -> bool:
        """
        A timer for a created/updated certificate is only armed once the
        instance is Deployed or already in Warning; otherwise the caller requeues.
        """
        if update.certificates_created or update.certificate_updated():
            return instance.status.type in (StatusType.DEPLOYED, StatusType.WARNING)
        return True

    def set_certificate_timer(self, instance: Instance, cert_type: CertType):
        window = self.window(instance)
        duration = self.cert_manager.get_duration_to_next_renewal(cert_type, instance, window)
        cert_name = signcert_secret_name(cert_type, instance.name)
        logger.info(
            f"Setting timer to renew {cert_name} {window // DAYS_TO_SECONDS} days "
            f"before it expires (fires in {duration:.0f}s)"
        )

        key = (instance.key, cert_type)
        expiry = self.cert_manager.signcert_expiry(cert_type, instance)
        timer = self.timer_factory(
            duration, self._fire,
            args=(instance.kind, instance.namespace, instance.name, cert_type),
        )
        with self._lock:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            self._timers[key] = timer
            self._armed_for[key] = expiry
            timer.start()

    def needs_timer(self, instance: Instance, cert_type: CertType) -> bool:
        """
        True when no timer was ever armed for this certificate or the
        certificate changed since (renewed, replaced). A timer that already
        fired for the same certificate is not re-armed.
        """
        key = (instance.key, cert_type)
        with self._lock:
            if key not in self._timers:
                return True
            armed_for = self._armed_for.get(key)
        return armed_for != self.cert_manager.signcert_expiry(cert_type, instance)

    def cancel_all(self, instance: Instance):
        with self._lock:
            cancelled = [(key, self._timers.pop(key)) for key in list(self._timers)
                         if key[0] == instance.key]
            for key, _ in cancelled:
                self._armed_for.pop(key, None)
        for key, timer in cancelled:
            timer.cancel()
            logger.info(f"Cancelled {key[1].value} renewal timer for {instance.key}")

    def live_timers(self) -> List[TimerKey]:
        with self._lock:
            timers = list(self._timers.items())
        return [k for k, t in timers if t.is_alive()]

    # -- timer thread ----------------------------------------------------------

    def update_cr_status(self, kind: ComponentKind, namespace: str, name: str) -> bool:
        """Write the certificate-derived status; False when it is already current."""
        body = self.store.get_instance(kind, namespace, name)
        instance = Instance.from_body(body)
        status_type, message = self.cert_manager.check_certificates_for_expire(
            instance, self.window(instance)
        )
        patch = status_patch(body.get("status") or {}, status_type,
                             cert_status_reason(status_type), message)
        if patch is None:
            return False
        logger.info(f"Updating status of {instance.key} to {status_type.value} phase")
        self.store.patch_instance_status(kind, namespace, name, patch)
        return True

    def _fire(self, kind: ComponentKind, namespace: str, name: str, cert_type: CertType):
        cert_name = signcert_secret_name(cert_type, name)
        try:
            self.update_cr_status(kind, namespace, name)
        except Exception as e:
            logger.error(f"Failed to update CR status for {namespace}/{name}: {e}")

        try:
            latest = Instance.from_body(self.store.get_instance(kind, namespace, name))
        except Exception as e:
            logger.error(f"Failed to get latest instance {namespace}/{name}: {e}")
            return

        try:
            backup_crypto(self.store, latest, self.labels_func(latest), self.settings)
        except Exception as e:
            logger.error(f"Failed to backup crypto before renewing {cert_name}: {e}")
            return

        try:
            self.cert_manager.renew_cert(cert_type, latest, new_key=False)
        except Exception as e:
            CERT_RENEWALS.labels(cert_type=cert_type.value, result="failure").inc()
            logger.info(
                f"Failed to renew {cert_type.value} certificate: {e}, "
                f"status of {name} remaining in Warning phase"
            )
            publish_event(namespace, name, "CERT_RENEWAL_FAILED", str(e)[:200], "Warning")
            return

        CERT_RENEWALS.labels(cert_type=cert_type.value, result="success").inc()
        logger.info(f"{cert_name} renewal complete")
        publish_event(namespace, name, "CERT_RENEWED", f"{cert_name} renewal complete")
