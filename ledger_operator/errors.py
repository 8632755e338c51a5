"""
Error taxonomy.

OperatorError carries a numeric code; a subset of codes is "breaking", meaning
the instance cannot make progress until its spec changes. The kopf layer maps
breaking errors to a permanent failure and everything else to a retry.
"""
from typing import Iterable, Optional

from kubernetes.client import ApiException

INVALID_DEPLOYMENT_CREATE_REQUEST = 1
INVALID_DEPLOYMENT_UPDATE_REQUEST = 2
INVALID_SERVICE_CREATE_REQUEST = 3
INVALID_SERVICE_UPDATE_REQUEST = 4
INVALID_PVC_CREATE_REQUEST = 5
INVALID_PVC_UPDATE_REQUEST = 6
INVALID_CONFIGMAP_CREATE_REQUEST = 7
INVALID_CONFIGMAP_UPDATE_REQUEST = 8
INVALID_SERVICE_ACCOUNT_CREATE_REQUEST = 9
INVALID_SERVICE_ACCOUNT_UPDATE_REQUEST = 10
INVALID_ROLE_CREATE_REQUEST = 11
INVALID_ROLE_UPDATE_REQUEST = 12
INVALID_ROLE_BINDING_CREATE_REQUEST = 13
INVALID_ROLE_BINDING_UPDATE_REQUEST = 14
INVALID_PEER_INIT_SPEC = 15
INVALID_ORDERER_TYPE = 16
INVALID_ORDERER_NODE_CREATE_REQUEST = 17
INVALID_ORDERER_NODE_UPDATE_REQUEST = 18
INVALID_ORDERER_INIT_SPEC = 19
CA_INIT_FAILED = 20
ORDERER_INIT_FAILED = 21
PEER_INIT_FAILED = 22
MIGRATION_FAILED = 23
PEER_MIGRATION_FAILED = 24
ORDERER_MIGRATION_FAILED = 25
INVALID_CUSTOM_RESOURCE_CREATE_REQUEST = 26
CA_MIGRATION_FAILED = 27
INVALID_INGRESS_CREATE_REQUEST = 28
INVALID_INGRESS_UPDATE_REQUEST = 29
INVALID_SECRET_CREATE_REQUEST = 30
INVALID_SECRET_UPDATE_REQUEST = 31
HSM_UNREACHABLE = 32
RESOURCE_DRIFT = 33

BREAKING_ERRORS = frozenset({
    INVALID_DEPLOYMENT_CREATE_REQUEST,
    INVALID_DEPLOYMENT_UPDATE_REQUEST,
    INVALID_SERVICE_CREATE_REQUEST,
    INVALID_SERVICE_UPDATE_REQUEST,
    INVALID_PVC_CREATE_REQUEST,
    INVALID_PVC_UPDATE_REQUEST,
    INVALID_CONFIGMAP_CREATE_REQUEST,
    INVALID_CONFIGMAP_UPDATE_REQUEST,
    INVALID_SERVICE_ACCOUNT_CREATE_REQUEST,
    INVALID_SERVICE_ACCOUNT_UPDATE_REQUEST,
    INVALID_ROLE_CREATE_REQUEST,
    INVALID_ROLE_UPDATE_REQUEST,
    INVALID_ROLE_BINDING_CREATE_REQUEST,
    INVALID_ROLE_BINDING_UPDATE_REQUEST,
    INVALID_PEER_INIT_SPEC,
    INVALID_ORDERER_TYPE,
    INVALID_ORDERER_NODE_CREATE_REQUEST,
    INVALID_ORDERER_NODE_UPDATE_REQUEST,
    INVALID_ORDERER_INIT_SPEC,
    CA_INIT_FAILED,
    ORDERER_INIT_FAILED,
    PEER_INIT_FAILED,
    MIGRATION_FAILED,
    PEER_MIGRATION_FAILED,
    ORDERER_MIGRATION_FAILED,
    INVALID_CUSTOM_RESOURCE_CREATE_REQUEST,
    CA_MIGRATION_FAILED,
    INVALID_INGRESS_CREATE_REQUEST,
    INVALID_INGRESS_UPDATE_REQUEST,
    INVALID_SECRET_CREATE_REQUEST,
    INVALID_SECRET_UPDATE_REQUEST,
})


class OperatorError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self):
        return f"Code: {self.code} - {self.message}"


def is_breaking_error(err: BaseException) -> bool:
    return isinstance(err, OperatorError) and err.code in BREAKING_ERRORS


class DriftError(OperatorError):
    """Live state of a managed resource diverges from the desired state."""

    def __init__(self, instance: str, resource: str, paths: Iterable[str], report=None):
        self.instance = instance
        self.resource = resource
        self.paths = list(paths)
        self.report = report
        super().__init__(
            RESOURCE_DRIFT,
            f"{instance}: {resource} has drifted from desired state at {', '.join(self.paths)}",
        )


class StoreError(Exception):
    """Base for object store failures, wraps the underlying ApiException."""

    def __init__(self, message: str, cause: Optional[ApiException] = None):
        super().__init__(message)
        self.cause = cause


class NotFoundError(StoreError):
    pass


class ConflictError(StoreError):
    pass


def translate_api_exception(e: ApiException, what: str) -> Exception:
    if e.status == 404:
        return NotFoundError(f"{what} not found", e)
    if e.status == 409:
        return ConflictError(f"{what} conflict: {e.reason}", e)
    return e


class CertificateError(Exception):
    pass


class CertificateExpiredError(CertificateError):
    pass


class EnrollmentError(CertificateError):
    pass
