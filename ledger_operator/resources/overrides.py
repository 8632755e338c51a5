"""
Default desired-state builders and templates.

A builder maps an instance spec onto an object template in place. These are
generic: image, replicas, ports, storage size and a JSON config bundle. A
product layer can register richer builders per kind.
"""
import json
from typing import Dict, List

from ..models import Action, ComponentKind, Instance

# container name, listen port
COMPONENT_CONTAINERS = {
    ComponentKind.PEER: ("peer", 7051),
    ComponentKind.ORDERER: ("orderer", 7050),
    ComponentKind.CA: ("ca", 7054),
}
OPERATIONS_PORT = 9443
DATA_MOUNT_PATH = "/data"
CONFIG_MOUNT_PATH = "/config"
DEFAULT_STORAGE_SIZE = "10Gi"

DEPLOYMENT_TEMPLATE = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {},
    "spec": {
        "replicas": 1,
        "strategy": {"type": "Recreate"},
        "template": {
            "metadata": {},
            "spec": {"containers": [], "volumes": []},
        },
    },
}

SERVICE_TEMPLATE = {
    "apiVersion": "v1",
    "kind": "Service",
    "metadata": {},
    "spec": {"type": "ClusterIP"},
}

PVC_TEMPLATE = {
    "apiVersion": "v1",
    "kind": "PersistentVolumeClaim",
    "metadata": {},
    "spec": {"accessModes": ["ReadWriteOnce"], "resources": {"requests": {}}},
}

CONFIGMAP_TEMPLATE = {
    "apiVersion": "v1",
    "kind": "ConfigMap",
    "metadata": {},
    "data": {},
}

SERVICE_ACCOUNT_TEMPLATE = {
    "apiVersion": "v1",
    "kind": "ServiceAccount",
    "metadata": {},
}

INGRESS_TEMPLATE = {
    "apiVersion": "networking.k8s.io/v1",
    "kind": "Ingress",
    "metadata": {},
    "spec": {"rules": []},
}


def node_labels(instance: Instance) -> Dict[str, str]:
    return {
        "app": instance.name,
        "creator": "ledger-operator",
        "app.kubernetes.io/name": instance.kind.value.lower(),
        "app.kubernetes.io/instance": instance.name,
        "app.kubernetes.io/managed-by": "ledger-operator",
    }


def container_name(instance: Instance) -> str:
    return COMPONENT_CONTAINERS[instance.kind][0]


def pvc_name(instance: Instance) -> str:
    return instance.spec.custom_names.pvc.get(container_name(instance)) or f"{instance.name}-pvc"


def config_map_name(instance: Instance) -> str:
    return f"{instance.name}-config"


def service_name(instance: Instance) -> str:
    return f"{instance.name}-service"


def component_image(instance: Instance) -> str:
    c = container_name(instance)
    image = instance.spec.images.get(f"{c}Image")
    if not image:
        raise ValueError(f"spec.images.{c}Image is required")
    tag = instance.spec.images.get(f"{c}Tag")
    if not tag:
        return image
    sep = "@" if tag.startswith("sha256:") else ":"
    return f"{image}{sep}{tag}"


def _named(items: List[dict], name: str) -> dict:
    for item in items:
        if item.get("name") == name:
            return item
    item = {"name": name}
    items.append(item)
    return item


def deployment_builder(instance: Instance, obj: dict, action: Action):
    name, port = COMPONENT_CONTAINERS[instance.kind]
    spec = obj.setdefault("spec", {})
    spec["replicas"] = instance.spec.replicas
    pod = spec.setdefault("template", {}).setdefault("spec", {})

    container = _named(pod.setdefault("containers", []), name)
    container["image"] = component_image(instance)
    resources = instance.spec.resources.get(name)
    if resources:
        container["resources"] = resources
    elif action == Action.UPDATE:
        container.pop("resources", None)

    if action == Action.UPDATE:
        return

    container["ports"] = [
        {"name": "listen", "containerPort": port, "protocol": "TCP"},
        {"name": "operations", "containerPort": OPERATIONS_PORT, "protocol": "TCP"},
    ]
    container["volumeMounts"] = [
        {"name": "data", "mountPath": DATA_MOUNT_PATH},
        {"name": "config", "mountPath": CONFIG_MOUNT_PATH},
    ]
    volumes = pod.setdefault("volumes", [])
    _named(volumes, "data")["persistentVolumeClaim"] = {"claimName": pvc_name(instance)}
    _named(volumes, "config")["configMap"] = {"name": config_map_name(instance)}
    pod["serviceAccountName"] = instance.name


def service_builder(instance: Instance, obj: dict, action: Action):
    _, port = COMPONENT_CONTAINERS[instance.kind]
    spec = obj.setdefault("spec", {})
    spec["selector"] = {"app": instance.name}
    spec["ports"] = [
        {"name": "listen", "port": port, "targetPort": port, "protocol": "TCP"},
        {"name": "operations", "port": OPERATIONS_PORT, "targetPort": OPERATIONS_PORT, "protocol": "TCP"},
    ]


def pvc_builder(instance: Instance, obj: dict, action: Action):
    storage = instance.spec.storage.get(container_name(instance)) or {}
    spec = obj.setdefault("spec", {})
    spec.setdefault("resources", {}).setdefault("requests", {})["storage"] = storage.get("size", DEFAULT_STORAGE_SIZE)
    if action == Action.CREATE and storage.get("class"):
        spec["storageClassName"] = storage["class"]


def config_map_builder(instance: Instance, obj: dict, action: Action):
    config = {
        "mspID": instance.spec.msp_id,
        "nodeOUs": not instance.spec.disable_node_ou,
        "override": instance.spec.config_override or {},
    }
    obj["data"] = {"config.json": json.dumps(config, sort_keys=True)}


def service_account_builder(instance: Instance, obj: dict, action: Action):
    obj["automountServiceAccountToken"] = False


def ingress_builder(instance: Instance, obj: dict, action: Action):
    if not instance.spec.domain:
        raise ValueError("spec.domain is required for ingress")
    _, port = COMPONENT_CONTAINERS[instance.kind]
    host = f"{instance.namespace}-{instance.name}.{instance.spec.domain}"
    obj.setdefault("spec", {})["rules"] = [{
        "host": host,
        "http": {"paths": [{
            "path": "/",
            "pathType": "ImplementationSpecific",
            "backend": {"service": {"name": service_name(instance), "port": {"number": port}}},
        }]},
    }]
