"""
Rolling backup of certificate material before a renewal overwrites it.

Secret ``<name>-crypto-backup`` holds ``tls-backup.json`` and
``ecert-backup.json``; each is a list of the last ten snapshots plus the time
of the latest one.
"""

import json
import logging
from typing import Dict, Optional

from ..config import Settings, settings as default_settings
from ..errors import NotFoundError
from ..models import CertType, CryptoBackup, CryptoMaterial, Instance, ResourceKind
from ..services.kubernetes_service import ObjectStore
from ..status import now
from .manager import decode, encode

logger = logging.getLogger("ledger-operator.backup")

ITERATIONS = 10


def backup_secret_name(instance: Instance) -> str:
    return f"{instance.name}-crypto-backup"


def backup_key(cert_type: CertType) -> str:
    return f"{cert_type.value}-backup.json"


def _secret_data(store: ObjectStore, namespace: str, name: str) -> Dict[str, str]:
    try:
        return store.get(ResourceKind.SECRET, namespace, name).get("data") or {}
    except NotFoundError:
        return {}


def get_crypto(store: ObjectStore, cert_type: CertType, instance: Instance) -> Optional[CryptoMaterial]:
    """Current material for one certificate type, or None when there is none."""
    prefix = f"{cert_type.value}-{instance.name}"
    ns = instance.namespace
    signcert = _secret_data(store, ns, f"{prefix}-signcert").get("cert.pem", "")
    keystore = _secret_data(store, ns, f"{prefix}-keystore").get("key.pem", "")
    if not signcert and not keystore:
        return None
    return CryptoMaterial(
        signcerts=signcert,
        keystore=keystore,
        cacerts=sorted(_secret_data(store, ns, f"{prefix}-cacerts").values()),
        admincerts=sorted(_secret_data(store, ns, f"{prefix}-admincerts").values()),
        intermediatecerts=sorted(_secret_data(store, ns, f"{prefix}-intermediatecerts").values()),
    )


def updated_backup(raw: Optional[str], material: CryptoMaterial) -> CryptoBackup:
    backup = CryptoBackup.model_validate_json(decode(raw)) if raw else CryptoBackup()
    backup.list = (backup.list + [material])[-ITERATIONS:]
    backup.timestamp = now()
    return backup


def _backup_data(existing: Dict[str, str], crypto: Dict[CertType, CryptoMaterial]) -> Dict[str, str]:
    data = dict(existing)
    for cert_type, material in crypto.items():
        backup = updated_backup(existing.get(backup_key(cert_type)), material)
        data[backup_key(cert_type)] = encode(json.dumps(backup.model_dump()).encode())
    return data


def backup_crypto(store: ObjectStore, instance: Instance, labels: Dict[str, str],
                  settings: Settings = default_settings) -> bool:
    """Snapshot TLS and ecert material. Returns False when there was nothing to back up."""
    crypto = {}
    for cert_type in (CertType.TLS, CertType.ECERT):
        material = get_crypto(store, cert_type, instance)
        if material is not None:
            crypto[cert_type] = material

    if not crypto:
        logger.info(f"No TLS or ecert crypto found for {instance.name}, not performing backup")
        return False

    name = backup_secret_name(instance)
    try:
        store.get(ResourceKind.SECRET, instance.namespace, name)
    except NotFoundError:
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {"name": name, "namespace": instance.namespace, "labels": dict(labels)},
            "data": _backup_data({}, crypto),
        }
        store.create(ResourceKind.SECRET, body, owner=instance.owner_reference())
        return True

    def mutate(fresh: dict) -> dict:
        fresh["data"] = _backup_data(fresh.get("data") or {}, crypto)
        return fresh

    store.resilient_patch(ResourceKind.SECRET, instance.namespace, name, mutate,
                          retries=settings.UPDATE_PATCH_RETRIES)
    return True
