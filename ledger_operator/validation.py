"""
Pre-reconcile checks that gate a pass before any resource is touched.
"""
import logging
import socket
from typing import Optional, Tuple

from .config import Settings, settings as default_settings
from .errors import HSM_UNREACHABLE, OperatorError
from .models import Instance

logger = logging.getLogger("ledger-operator.validation")


def _split_endpoint(endpoint: str) -> Optional[Tuple[str, int]]:
    for scheme in ("tcp://", "tls://"):
        endpoint = endpoint.replace(scheme, "")
    host, sep, port = endpoint.rpartition(":")
    if not sep or not host or not port.isdigit():
        return None
    return host.strip("[]"), int(port)


def is_tcp_reachable(endpoint: str, timeout: float) -> bool:
    """Dial ``host:port`` with a bounded timeout. Any failure means unreachable."""
    target = _split_endpoint(endpoint)
    if target is None:
        logger.warning(f"Malformed endpoint '{endpoint}'")
        return False
    try:
        with socket.create_connection(target, timeout=timeout):
            return True
    except OSError as e:
        logger.debug(f"Dial {endpoint} failed: {e}")
        return False


def check_hsm_reachable(instance: Instance, settings: Settings = default_settings):
    """Raise when the instance uses an HSM proxy that cannot be dialled."""
    if not instance.using_hsm_proxy():
        return
    endpoint = instance.spec.hsm.pkcs11_endpoint
    if not is_tcp_reachable(endpoint, settings.HSM_DIAL_TIMEOUT):
        raise OperatorError(
            HSM_UNREACHABLE,
            f"{instance.name}: HSM proxy endpoint '{endpoint}' is not reachable",
        )
