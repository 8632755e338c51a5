"""
Configuration module: all settings from env vars with sensible defaults.
Follows 12-factor app methodology.

Components take a ``Settings`` instance in their constructor and fall back
to the module-level ``settings`` object, so tests can pass their own.
"""
import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


def _env_list(name: str) -> tuple:
    raw = os.environ.get(name, "")
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = _env_bool("IN_CLUSTER")

    # CRDs
    CRD_GROUP: str = os.environ.get("CRD_GROUP", "ledger.platform.io")
    CRD_VERSION: str = os.environ.get("CRD_VERSION", "v1beta1")

    # Platform variant: "k8s" adds ingress management on top of the base reconciler
    PLATFORM: str = os.environ.get("PLATFORM", "k8s")

    # Observability
    REDIS_URL: str = os.environ.get("REDIS_URL", "")
    METRICS_PORT: int = int(os.environ.get("METRICS_PORT", "0"))

    # Control loop
    MAX_WORKERS: int = int(os.environ.get("MAX_WORKERS", "10"))
    DRIFT_CHECK_INTERVAL: float = float(os.environ.get("DRIFT_CHECK_INTERVAL", "120"))
    REQUEUE_DELAY: float = float(os.environ.get("REQUEUE_DELAY", "10"))

    # Resource manager / drift detection
    DISABLE_DRIFT_CHECKS: bool = _env_bool("DISABLE_DRIFT_CHECKS")
    UPDATE_PATCH_RETRIES: int = int(os.environ.get("UPDATE_PATCH_RETRIES", "3"))
    RESTORE_PATCH_RETRIES: int = int(os.environ.get("RESTORE_PATCH_RETRIES", "2"))
    PATCH_RETRY_DELAY: float = float(os.environ.get("PATCH_RETRY_DELAY", "2"))
    DRIFT_MAX_DEPTH: int = int(os.environ.get("DRIFT_MAX_DEPTH", "20"))
    DRIFT_MAX_DIFF: int = int(os.environ.get("DRIFT_MAX_DIFF", "30"))
    EXTRA_IGNORE_PATHS: tuple = _env_list("EXTRA_IGNORE_PATHS")

    # Restart coordinator
    RESTART_DISABLE_COMPONENTS: bool = _env_bool("RESTART_DISABLE_COMPONENTS")
    RESTART_WAIT_TIME: float = float(os.environ.get("RESTART_WAIT_TIME", "600"))
    RESTART_CONFIG_NAME: str = os.environ.get("RESTART_CONFIG_NAME", "ledger-operator.restart")
    RESTART_CONFIG_RETRIES: int = int(os.environ.get("RESTART_CONFIG_RETRIES", "3"))

    # Certificates
    CERT_WARNING_DAYS: int = int(os.environ.get("CERT_WARNING_DAYS", "30"))
    ENROLLER: str = os.environ.get("ENROLLER", "")
    CRYPTO_STORAGE_PATH: str = os.environ.get("CRYPTO_STORAGE_PATH", "/tmp/ledger-operator")

    # Migration
    MIGRATION_CONTAINER: str = os.environ.get("MIGRATION_CONTAINER", "dbmigration")
    MIGRATION_REQUEUE_DELAY: float = float(os.environ.get("MIGRATION_REQUEUE_DELAY", "10"))

    # Pre-checks
    HSM_DIAL_TIMEOUT: float = float(os.environ.get("HSM_DIAL_TIMEOUT", "3"))


settings = Settings()
