"""
Lifecycle event publishing (Redis Streams, optional) and Prometheus counters.

Redis is best effort: when REDIS_URL is unset or the server is unreachable the
operator keeps running and events only reach the log.
"""
import json as _json
import logging

import redis
from prometheus_client import Counter

from .config import settings
from .status import now

logger = logging.getLogger("ledger-operator.events")

RESTARTS_TRIGGERED = Counter(
    "ledger_operator_restarts_total",
    "Workload restarts performed by the restart coordinator",
    ["kind"],
)
RESTARTS_DEFERRED = Counter(
    "ledger_operator_restarts_deferred_total",
    "Restart requests deferred by the wait-time throttle",
    ["kind"],
)
CERT_RENEWALS = Counter(
    "ledger_operator_cert_renewals_total",
    "Certificate renewal attempts fired by renewal timers",
    ["cert_type", "result"],
)
DRIFT_DETECTED = Counter(
    "ledger_operator_drift_detected_total",
    "Managed resources found in violation of their desired state",
    ["resource"],
)
DRIFT_RESTORED = Counter(
    "ledger_operator_drift_restored_total",
    "Managed resources patched back to their desired state",
    ["resource"],
)
MIGRATION_JOBS = Counter(
    "ledger_operator_migration_jobs_total",
    "Migration jobs created or finalized",
    ["event"],
)

_redis_client = None


def _get_redis():
    """Lazy-init Redis client. Returns None if unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not settings.REDIS_URL:
        return None
    try:
        _redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        _redis_client.ping()
        logger.info(f"Redis connected: {settings.REDIS_URL}")
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable (non-fatal): {e}")
        _redis_client = None
        return None


def stream_key(namespace: str, name: str) -> str:
    return f"node:events:{namespace}/{name}"


def publish_event(namespace: str, name: str, event_type: str, message: str, phase: str = ""):
    """Publish a lifecycle event to the instance's stream and the global channel."""
    r = _get_redis()
    if not r:
        return
    payload = {
        "type": event_type,
        "message": message,
        "phase": phase,
        "timestamp": now(),
        "node": f"{namespace}/{name}",
    }
    try:
        r.xadd(stream_key(namespace, name), payload, maxlen=100)
        r.publish("node:events", _json.dumps(payload))
    except redis.RedisError as e:
        logger.debug(f"Redis publish failed (non-fatal): {e}")


def drop_stream(namespace: str, name: str):
    r = _get_redis()
    if not r:
        return
    try:
        r.delete(stream_key(namespace, name))
    except redis.RedisError as e:
        logger.debug(f"Redis stream cleanup failed (non-fatal): {e}")
