"""
Certificate manager: reads signing certificates from their secrets, works out
how close they are to expiry, and renews them through an enrollment
collaborator.

Secrets per certificate type (``tls`` / ``ecert``):
  <type>-<name>-signcert   key ``cert.pem``
  <type>-<name>-keystore   key ``key.pem``
"""

import base64
import importlib
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, NamedTuple, Optional, Protocol, Tuple

from cryptography import x509

from ..config import Settings, settings as default_settings
from ..errors import CertificateError, CertificateExpiredError, EnrollmentError
from ..models import CertType, Enrollment, Instance, ResourceKind, StatusType
from ..services.kubernetes_service import ObjectStore

logger = logging.getLogger("ledger-operator.certificates")

SIGNCERT_KEY = "cert.pem"
KEYSTORE_KEY = "key.pem"


class EnrollmentResponse(NamedTuple):
    sign_cert: bytes
    keystore: bytes


class Enroller(Protocol):
    def reenroll(self, enrollment: Enrollment, storage_path: str, cert_pem: bytes,
                 key_pem: bytes, new_key: bool) -> EnrollmentResponse:
        ...


def load_enroller(target: str) -> Optional[Enroller]:
    """Resolve ``module:attribute``; a class is instantiated with no arguments."""
    if not target:
        return None
    module_name, _, attr = target.partition(":")
    obj = getattr(importlib.import_module(module_name), attr or "enroller")
    return obj() if isinstance(obj, type) else obj


def signcert_secret_name(cert_type: CertType, name: str) -> str:
    return f"{cert_type.value}-{name}-signcert"


def keystore_secret_name(cert_type: CertType, name: str) -> str:
    return f"{cert_type.value}-{name}-keystore"


def parse_signcert_secret_name(secret_name: str) -> Optional[Tuple[CertType, str]]:
    """(cert type, instance name) for a ``<type>-<name>-signcert`` Secret, else None."""
    suffix = "-signcert"
    for cert_type in CertType:
        prefix = f"{cert_type.value}-"
        if (secret_name.startswith(prefix) and secret_name.endswith(suffix)
                and len(secret_name) > len(prefix) + len(suffix)):
            return cert_type, secret_name[len(prefix):-len(suffix)]
    return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def decode(value: Optional[str]) -> bytes:
    return base64.b64decode(value) if value else b""


def encode(value: bytes) -> str:
    return base64.b64encode(value).decode()


def get_expire_date(pem: bytes) -> datetime:
    try:
        cert = x509.load_pem_x509_certificate(pem)
    except ValueError as e:
        raise CertificateError(f"failed to get certificate from bytes: {e}") from e
    return cert.not_valid_after_utc


class CertificateManager:
    def __init__(self, store: ObjectStore, enroller: Optional[Enroller] = None,
                 settings: Settings = default_settings,
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.enroller = enroller
        self.settings = settings
        self.clock = clock

    def _secret_value(self, namespace: str, name: str, key: str) -> bytes:
        secret = self.store.get(ResourceKind.SECRET, namespace, name)
        return decode((secret.get("data") or {}).get(key))

    def get_signcert(self, cert_type: CertType, instance: Instance) -> bytes:
        return self._secret_value(
            instance.namespace, signcert_secret_name(cert_type, instance.name), SIGNCERT_KEY
        )

    def get_key(self, cert_type: CertType, instance: Instance) -> bytes:
        return self._secret_value(
            instance.namespace, keystore_secret_name(cert_type, instance.name), KEYSTORE_KEY
        )

    def signcert_expiry(self, cert_type: CertType, instance: Instance) -> datetime:
        return get_expire_date(self.get_signcert(cert_type, instance))

    def expires(self, pem: bytes, window_seconds: int) -> Tuple[bool, Optional[datetime]]:
        expire_date = get_expire_date(pem)
        if expire_date - self.clock() <= timedelta(seconds=window_seconds):
            return True, expire_date
        return False, None

    def certificate_expiring(self, cert_type: CertType, instance: Instance,
                             window_seconds: int) -> Tuple[bool, Optional[datetime]]:
        return self.expires(self.get_signcert(cert_type, instance), window_seconds)

    def check_certificates_for_expire(self, instance: Instance,
                                      window_seconds: int) -> Tuple[StatusType, str]:
        """
        Check the TLS and then the enrollment certificate. Deployed when neither
        expires within the window, Warning when one does, Error when one has
        already expired. The message lists each expiring certificate.
        """
        now = self.clock()
        status = StatusType.DEPLOYED
        messages = []
        for cert_type in (CertType.TLS, CertType.ECERT):
            try:
                expiring, expire_date = self.certificate_expiring(cert_type, instance, window_seconds)
            except CertificateError as e:
                raise CertificateError(f"failed to get {cert_type.value} signcert expiry info: {e}") from e
            if not expiring:
                continue
            cert_name = signcert_secret_name(cert_type, instance.name)
            if expire_date < now:
                status = StatusType.ERROR
                messages.append(f"{cert_name} has expired")
            else:
                if status != StatusType.ERROR:
                    status = StatusType.WARNING
                messages.append(f"{cert_name} expires on {expire_date}")
        return status, ", ".join(messages)

    def get_duration_to_next_renewal(self, cert_type: CertType, instance: Instance,
                                     window_seconds: int) -> float:
        """Seconds until ``notAfter - window``, never negative."""
        cert_name = signcert_secret_name(cert_type, instance.name)
        expire_date = self.signcert_expiry(cert_type, instance)
        now = self.clock()
        if expire_date < now:
            raise CertificateExpiredError(f"{cert_name} has expired")
        renew_date = expire_date - timedelta(seconds=window_seconds)
        return max((renew_date - now).total_seconds(), 0.0)

    def storage_path(self, cert_type: CertType, instance: Instance) -> str:
        return os.path.join(self.settings.CRYPTO_STORAGE_PATH, instance.namespace,
                            instance.name, "reenroller", cert_type.value)

    def renew_cert(self, cert_type: CertType, instance: Instance, new_key: bool = False):
        enrollment_spec = instance.spec.secret.enrollment if instance.spec.secret else None
        if enrollment_spec is None:
            raise EnrollmentError(
                f"instance '{instance.name}' was created with MSP crypto, "
                f"force renewal required for {cert_type.value} certificate"
            )
        enrollment = enrollment_spec.for_cert_type(cert_type)
        if enrollment is None:
            raise EnrollmentError(f"no {cert_type.value} enrollment spec for '{instance.name}'")
        if self.enroller is None:
            raise EnrollmentError("no enroller configured")

        # HSM-held ecert keys never leave the device
        hsm_key = cert_type == CertType.ECERT and instance.hsm_enabled()

        cert = self.get_signcert(cert_type, instance)
        key = b"" if hsm_key else self.get_key(cert_type, instance)

        logger.info(f"Certificate manager renewing {cert_type.value} for {instance.key}")
        try:
            resp = self.enroller.reenroll(
                enrollment, self.storage_path(cert_type, instance), cert, key, new_key
            )
        except EnrollmentError:
            raise
        except Exception as e:
            raise EnrollmentError(
                f"failed to renew {cert_type.value} certificate for instance '{instance.name}': {e}"
            ) from e

        # The signcert goes last: its change is what the Secret watch restarts on
        if not hsm_key:
            self.update_secret(instance, keystore_secret_name(cert_type, instance.name),
                               KEYSTORE_KEY, resp.keystore)
        self.update_secret(instance, signcert_secret_name(cert_type, instance.name),
                           SIGNCERT_KEY, resp.sign_cert)

    def update_secret(self, instance: Instance, name: str, key: str, value: bytes):
        # An enroller running out of process (e.g. HSM job) writes the secret itself
        if not value:
            return
        self.store.patch(ResourceKind.SECRET, instance.namespace, name,
                         {"data": {key: encode(value)}})
