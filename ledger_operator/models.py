"""
Pydantic models for node custom resources, their status, and the documents
the operator keeps in ConfigMaps/Secrets.
"""
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from . import version

DAYS_TO_SECONDS = 24 * 60 * 60


class ComponentKind(str, Enum):
    PEER = "Peer"
    ORDERER = "Orderer"
    CA = "CA"

    @property
    def plural(self) -> str:
        return {"Peer": "peers", "Orderer": "orderers", "CA": "cas"}[self.value]


class ResourceKind(str, Enum):
    DEPLOYMENT = "Deployment"
    SERVICE = "Service"
    PVC = "PersistentVolumeClaim"
    CONFIGMAP = "ConfigMap"
    SECRET = "Secret"
    SERVICE_ACCOUNT = "ServiceAccount"
    ROLE = "Role"
    ROLE_BINDING = "RoleBinding"
    INGRESS = "Ingress"
    JOB = "Job"
    POD = "Pod"


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class CertType(str, Enum):
    ECERT = "ecert"
    TLS = "tls"


class StatusType(str, Enum):
    DEPLOYED = "Deployed"
    DEPLOYING = "Deploying"
    WARNING = "Warning"
    ERROR = "Error"
    INITIALIZED = "Initialized"


class RestartReason(str, Enum):
    ADMIN_CERT = "adminCert"
    ECERT_UPDATE = "ecertUpdate"
    TLS_UPDATE = "tlsUpdate"
    CONFIG_OVERRIDE = "configOverride"
    MIGRATION = "migration"
    NODE_OU = "nodeOU"
    CONFIGMAP_UPDATE = "configMapUpdate"
    RESTART_ACTION = "restartAction"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


# ---------------------------------------------------------------------------
# Spec
# ---------------------------------------------------------------------------

class Enrollment(_CamelModel):
    """Enrollment parameters for one certificate role. Opaque to the core."""
    ca_host: str = Field(default="", alias="cahost")
    ca_port: str = Field(default="", alias="caport")
    ca_name: str = Field(default="", alias="caname")
    ca_tls: Dict[str, Any] = Field(default_factory=dict, alias="catls")
    enroll_id: str = Field(default="", alias="enrollid")
    enroll_secret: str = Field(default="", alias="enrollsecret")
    csr: Dict[str, Any] = Field(default_factory=dict)


class EnrollmentSpec(_CamelModel):
    component: Optional[Enrollment] = None
    tls: Optional[Enrollment] = None

    def for_cert_type(self, cert_type: CertType) -> Optional[Enrollment]:
        return self.tls if cert_type == CertType.TLS else self.component


class SecretSpec(_CamelModel):
    enrollment: Optional[EnrollmentSpec] = None
    msp: Optional[Dict[str, Any]] = None


class HSMSpec(_CamelModel):
    pkcs11_endpoint: str = Field(default="", alias="pkcs11Endpoint")


class ReenrollAction(_CamelModel):
    ecert: bool = False
    ecert_new_key: bool = Field(default=False, alias="ecertNewKey")
    tls_cert: bool = Field(default=False, alias="tlscert")
    tls_cert_new_key: bool = Field(default=False, alias="tlscertNewKey")


class ActionSpec(_CamelModel):
    restart: bool = False
    reenroll: ReenrollAction = Field(default_factory=ReenrollAction)


class CustomNames(_CamelModel):
    pvc: Dict[str, str] = Field(default_factory=dict)


class InstanceSpec(_CamelModel):
    fabric_version: str = Field(default="", alias="fabricVersion")
    images: Dict[str, str] = Field(default_factory=dict)
    replicas: int = 1
    msp_id: str = Field(default="", alias="mspID")
    domain: str = ""
    num_seconds_warning_period: Optional[int] = Field(default=None, alias="numSecondsWarningPeriod")
    custom_names: CustomNames = Field(default_factory=CustomNames, alias="customNames")
    state_db: str = Field(default="leveldb", alias="stateDb")
    hsm: Optional[HSMSpec] = None
    secret: Optional[SecretSpec] = None
    action: ActionSpec = Field(default_factory=ActionSpec)
    config_override: Optional[Dict[str, Any]] = Field(default=None, alias="configoverride")
    disable_node_ou: bool = Field(default=False, alias="disablenodeou")
    storage: Dict[str, Any] = Field(default_factory=dict)
    resources: Dict[str, Any] = Field(default_factory=dict)

    def warning_period_seconds(self, default_days: int) -> int:
        if self.num_seconds_warning_period:
            return self.num_seconds_warning_period
        return default_days * DAYS_TO_SECONDS


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class Condition(_CamelModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[str] = Field(default=None, alias="lastTransitionTime")


class CRStatus(_CamelModel):
    type: Optional[StatusType] = None
    reason: str = ""
    message: str = ""
    status: str = ""
    version: str = ""
    migrated_version: str = Field(default="", alias="migratedVersion")
    last_heartbeat_time: str = Field(default="", alias="lastHeartbeatTime")
    conditions: List[Condition] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Instance
# ---------------------------------------------------------------------------

class Instance(BaseModel):
    """One managed peer/orderer/CA: declared spec plus observed status."""
    model_config = ConfigDict(populate_by_name=True)

    kind: ComponentKind
    name: str
    namespace: str
    uid: str = ""
    api_version: str = Field(default="", alias="apiVersion")
    labels: Dict[str, str] = Field(default_factory=dict)
    spec: InstanceSpec = Field(default_factory=InstanceSpec)
    status: CRStatus = Field(default_factory=CRStatus)

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> "Instance":
        metadata = body.get("metadata", {}) or {}
        return cls(
            kind=ComponentKind(body["kind"]),
            name=metadata["name"],
            namespace=metadata.get("namespace", ""),
            uid=metadata.get("uid", ""),
            api_version=body.get("apiVersion", ""),
            labels=dict(metadata.get("labels") or {}),
            spec=InstanceSpec.model_validate(dict(body.get("spec") or {})),
            status=CRStatus.model_validate(dict(body.get("status") or {})),
        )

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.kind.value}/{self.name}"

    def owner_reference(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind.value,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def using_couchdb(self) -> bool:
        return self.spec.state_db.lower() == "couchdb"

    def hsm_enabled(self) -> bool:
        return self.spec.hsm is not None

    def using_hsm_proxy(self) -> bool:
        return bool(self.spec.hsm and self.spec.hsm.pkcs11_endpoint)

    def release(self) -> str:
        """Declared release, or the one carried by the component image tag."""
        if self.spec.fabric_version:
            return self.spec.fabric_version
        return version.from_image_tag(self.spec.images.get(f"{self.kind.value.lower()}Tag", ""))


# ---------------------------------------------------------------------------
# Update detection
# ---------------------------------------------------------------------------

class Update(BaseModel):
    """What changed between the previous and current spec of an instance."""
    spec_updated: bool = False
    ecert_updated: bool = False
    tls_updated: bool = False
    config_override_updated: bool = False
    node_ou_updated: bool = False
    admin_certs_updated: bool = False
    restart_requested: bool = False
    ecert_reenroll: bool = False
    ecert_new_key_reenroll: bool = False
    tls_reenroll: bool = False
    tls_new_key_reenroll: bool = False
    certificates_created: List[CertType] = Field(default_factory=list)
    # Identifies the change behind this update (spec generation, certificate
    # digest); a reason registered twice for one origin restarts once
    origin: str = ""

    @classmethod
    def from_specs(cls, old: Optional[Mapping[str, Any]], new: Mapping[str, Any]) -> "Update":
        new_spec = InstanceSpec.model_validate(dict(new or {}))
        if old is None:
            return cls(
                spec_updated=True,
                restart_requested=new_spec.action.restart,
                certificates_created=[CertType.TLS, CertType.ECERT],
            )

        old_spec = InstanceSpec.model_validate(dict(old))
        old_msp = (old_spec.secret.msp if old_spec.secret else None) or {}
        new_msp = (new_spec.secret.msp if new_spec.secret else None) or {}
        old_re, new_re = old_spec.action.reenroll, new_spec.action.reenroll

        return cls(
            spec_updated=_without_action(old) != _without_action(new),
            config_override_updated=old_spec.config_override != new_spec.config_override,
            node_ou_updated=old_spec.disable_node_ou != new_spec.disable_node_ou,
            admin_certs_updated=(
                (old_msp.get("component") or {}).get("admincerts")
                != (new_msp.get("component") or {}).get("admincerts")
            ),
            restart_requested=new_spec.action.restart and not old_spec.action.restart,
            ecert_reenroll=new_re.ecert and not old_re.ecert,
            ecert_new_key_reenroll=new_re.ecert_new_key and not old_re.ecert_new_key,
            tls_reenroll=new_re.tls_cert and not old_re.tls_cert,
            tls_new_key_reenroll=new_re.tls_cert_new_key and not old_re.tls_cert_new_key,
        )

    @classmethod
    def for_certificate_change(cls, cert_type: CertType, origin: str = "") -> "Update":
        """A signing certificate was rewritten outside the spec (renewal, external enroller)."""
        if cert_type == CertType.TLS:
            return cls(tls_updated=True, origin=origin)
        return cls(ecert_updated=True, origin=origin)

    def certificate_updated(self) -> bool:
        return self.ecert_updated or self.tls_updated

    def cert_types_updated(self) -> List[CertType]:
        updated = []
        if self.tls_updated:
            updated.append(CertType.TLS)
        if self.ecert_updated:
            updated.append(CertType.ECERT)
        return updated


def _without_action(spec: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in dict(spec).items() if k != "action"}


# ---------------------------------------------------------------------------
# Restart config document (stored in the ledger-operator.restart ConfigMap)
# ---------------------------------------------------------------------------

class RequestStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"


class RestartRequest(_CamelModel):
    status: RequestStatus = RequestStatus.COMPLETE
    request_timestamp: str = Field(default="", alias="requestTimestamp")
    last_action_timestamp: str = Field(default="", alias="lastActionTimestamp")
    sequence: int = 0
    origin: str = ""


class InstanceRestarts(_CamelModel):
    requests: Dict[RestartReason, RestartRequest] = Field(default_factory=dict)

    def pending(self) -> Dict[RestartReason, RestartRequest]:
        return {r: req for r, req in self.requests.items() if req.status == RequestStatus.PENDING}


class RestartConfig(_CamelModel):
    instances: Dict[str, InstanceRestarts] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Crypto backup document (stored in <name>-crypto-backup)
# ---------------------------------------------------------------------------

class CryptoMaterial(_CamelModel):
    signcerts: str = ""
    keystore: str = ""
    cacerts: List[str] = Field(default_factory=list)
    admincerts: List[str] = Field(default_factory=list)
    intermediatecerts: List[str] = Field(default_factory=list)


class CryptoBackup(_CamelModel):
    list: List[CryptoMaterial] = Field(default_factory=list)
    timestamp: str = ""
