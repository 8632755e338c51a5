"""
Job runner: creates the one-shot database migration job for an instance and
reports the state of its migration container.
"""

import copy
import logging
from typing import Dict, NamedTuple, Optional, Protocol

from ..config import Settings, settings as default_settings
from ..errors import NotFoundError, OperatorError, PEER_MIGRATION_FAILED
from ..models import Instance, ResourceKind
from ..resources.overrides import container_name
from ..services.kubernetes_service import ObjectStore

logger = logging.getLogger("ledger-operator.migration")

STATE_DB_VOLUME = "db-data"

# Environment carried from the node container into the migration container
MIGRATION_ENV = (
    "LICENSE",
    "FABRIC_CFG_PATH",
    "CORE_PEER_MSPCONFIGPATH",
    "CORE_PEER_FILESYSTEMPATH",
    "CORE_PEER_TLS_ENABLED",
    "CORE_PEER_TLS_CERT_FILE",
    "CORE_PEER_TLS_KEY_FILE",
    "CORE_PEER_TLS_ROOTCERT_FILE",
    "CORE_PEER_LOCALMSPID",
    "CORE_LEDGER_STATE_COUCHDBCONFIG_USERNAME",
    "CORE_LEDGER_STATE_COUCHDBCONFIG_PASSWORD",
    "CORE_LEDGER_STATE_STATEDATABASE",
)

MIGRATION_COMMAND = (
    'echo "Migrating node database" && peer node upgrade-dbs'
    " && mkdir -p /data/status && ts=$(date +%Y%m%d-%H%M%S)"
    " && touch /data/status/migrated-$ts"
)


def migration_job_name(instance: Instance) -> str:
    return f"{instance.name}-dbmigration"


def migration_selector(instance: Instance) -> Dict[str, str]:
    return {"owner": instance.name, "job-name": migration_job_name(instance)}


class ContainerState(NamedTuple):
    """Observed state of one container across a job's pods."""
    terminated: bool = False
    exit_code: Optional[int] = None
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.terminated and self.exit_code == 0


class JobRunner(Protocol):
    def create_migration_job(self, instance: Instance, job_name: str,
                             selector: Dict[str, str]) -> dict:
        ...

    def container_state(self, job: dict, container: str) -> ContainerState:
        ...


class KubernetesJobRunner:
    def __init__(self, store: ObjectStore, settings: Settings = default_settings):
        self.store = store
        self.settings = settings

    def _primary_container(self, deployment: dict, instance: Instance) -> dict:
        containers = deployment["spec"]["template"]["spec"].get("containers") or []
        for c in containers:
            if c.get("name") == container_name(instance):
                return c
        if containers:
            return containers[0]
        raise OperatorError(
            PEER_MIGRATION_FAILED,
            f"deployment {instance.name} has no container to base the migration job on",
        )

    def build_job(self, instance: Instance, deployment: dict, job_name: str,
                  selector: Dict[str, str]) -> dict:
        pod_spec = deployment["spec"]["template"]["spec"]
        cont = self._primary_container(deployment, instance)

        env = [copy.deepcopy(e) for e in cont.get("env") or [] if e.get("name") in MIGRATION_ENV]
        env.append({"name": "FABRIC_LOGGING_SPEC", "value": "debug"})
        if instance.using_hsm_proxy():
            env.append({"name": "PKCS11_PROXY_SOCKET", "value": instance.spec.hsm.pkcs11_endpoint})

        volumes = copy.deepcopy(pod_spec.get("volumes") or [])
        if instance.using_couchdb():
            volumes = [v for v in volumes if v.get("name") != STATE_DB_VOLUME]
        mounts = [m for m in copy.deepcopy(cont.get("volumeMounts") or [])
                  if any(v.get("name") == m.get("name") for v in volumes)]

        container = {
            "name": self.settings.MIGRATION_CONTAINER,
            "image": cont.get("image"),
            "command": ["sh", "-c", MIGRATION_COMMAND],
            "env": env,
            "volumeMounts": mounts,
        }
        for field in ("imagePullPolicy", "resources", "securityContext"):
            if cont.get(field):
                container[field] = copy.deepcopy(cont[field])

        template_spec = {"restartPolicy": "Never", "containers": [container], "volumes": volumes}
        if pod_spec.get("imagePullSecrets"):
            template_spec["imagePullSecrets"] = copy.deepcopy(pod_spec["imagePullSecrets"])
        if pod_spec.get("serviceAccountName"):
            template_spec["serviceAccountName"] = pod_spec["serviceAccountName"]

        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": job_name,
                "namespace": instance.namespace,
                "labels": dict(selector),
            },
            "spec": {
                "backoffLimit": 0,
                "template": {
                    "metadata": {"labels": dict(selector)},
                    "spec": template_spec,
                },
            },
        }

    def create_migration_job(self, instance: Instance, job_name: str,
                             selector: Dict[str, str]) -> dict:
        try:
            deployment = self.store.get(ResourceKind.DEPLOYMENT, instance.namespace, instance.name)
        except NotFoundError as e:
            raise OperatorError(
                PEER_MIGRATION_FAILED,
                f"cannot create migration job for {instance.key}: {e}",
            ) from e
        job = self.build_job(instance, deployment, job_name, selector)
        logger.info(f"Creating migration job {job_name} for {instance.key}")
        return self.store.create(ResourceKind.JOB, job, owner=instance.owner_reference())

    def container_state(self, job: dict, container: str) -> ContainerState:
        """
        State of ``container`` in the job's pods. A pod whose container has not
        terminated wins over one that has; no pods at all means not terminated yet.
        """
        job_name = job["metadata"]["name"]
        pods = self.store.list(ResourceKind.POD, job["metadata"]["namespace"], {"job-name": job_name})
        state = ContainerState()
        for pod in pods:
            for status in (pod.get("status") or {}).get("containerStatuses") or []:
                if status.get("name") != container:
                    continue
                terminated = (status.get("state") or {}).get("terminated")
                if not terminated:
                    return ContainerState()
                state = ContainerState(True, terminated.get("exitCode"), terminated.get("reason") or "")
        return state
