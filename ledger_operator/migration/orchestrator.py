"""
Migration orchestrator: drives the one-shot database migration job an instance
needs when its release crosses a data-format boundary.

    NOT_FOUND --create--> RUNNING --container exit 0--> COMPLETED --cleanup--> done
                             |
                             +-- failed condition: stays RUNNING, left for a human
                             +-- non-zero exit without failed condition: UNKNOWN

Polling is requeue based; nothing here blocks waiting for the job.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .. import version
from ..config import Settings, settings as default_settings
from ..errors import NotFoundError
from ..events import MIGRATION_JOBS, publish_event
from ..models import Instance, ResourceKind
from ..restart.coordinator import RestartCoordinator
from ..services.kubernetes_service import ObjectStore
from .jobs import JobRunner, migration_job_name

logger = logging.getLogger("ledger-operator.migration")


class JobStatus(str, Enum):
    NOT_FOUND = "not-found"
    RUNNING = "running"
    COMPLETED = "completed"
    UNKNOWN = "unknown"


def _failed_condition(job: dict) -> Optional[dict]:
    for cond in (job.get("status") or {}).get("conditions") or []:
        if cond.get("type") == "Failed" and cond.get("status", "True") == "True":
            return cond
    return None


class MigrationOrchestrator:
    def __init__(self, store: ObjectStore, runner: JobRunner, restart: RestartCoordinator,
                 settings: Settings = default_settings):
        self.store = store
        self.runner = runner
        self.restart = restart
        self.settings = settings

    def migration_needed(self, instance: Instance) -> bool:
        target = instance.release()
        if not target or version.equal(instance.status.migrated_version, target):
            return False
        boundaries = version.JOB_BOUNDARIES.get(instance.kind.value, ())
        return bool(version.migration_steps(instance.status.version, target, boundaries))

    def config_migration_steps(self, instance: Instance) -> List[str]:
        """
        Configuration-only boundaries crossed by this upgrade (no job involved).
        Only upgrades within major release 2 have them; an upgrade from 1.x
        rewrites its configuration through the database migration.
        """
        old = instance.status.version
        if version.major_release(old) != version.V2:
            return []
        return version.migration_steps(old, instance.release(), version.CONFIG_BOUNDARIES)

    def check_for_running_jobs(self, namespace: str,
                               selector: Dict[str, str]) -> Tuple[JobStatus, Optional[dict]]:
        jobs = self.store.list(ResourceKind.JOB, namespace, selector)
        if not jobs:
            return JobStatus.NOT_FOUND, None

        # One job per migration request
        job = jobs[0]
        job_name = job["metadata"]["name"]

        failed = _failed_condition(job)
        if failed is not None:
            logger.info(
                f"Job '{job_name}' failed for reason: {failed.get('reason', '')}: "
                f"{failed.get('message', '')}"
            )
            return JobStatus.RUNNING, job

        state = self.runner.container_state(job, self.settings.MIGRATION_CONTAINER)
        if not state.terminated:
            return JobStatus.RUNNING, job
        if state.succeeded:
            return JobStatus.COMPLETED, job
        logger.warning(
            f"Job '{job_name}' container {self.settings.MIGRATION_CONTAINER} terminated "
            f"with exit code {state.exit_code} ({state.reason}) but the job is not marked failed"
        )
        return JobStatus.UNKNOWN, job

    def handle_migration_jobs(self, selector: Dict[str, str], instance: Instance) -> bool:
        """Advance the migration state machine; True while the caller must requeue."""
        status, job = self.check_for_running_jobs(instance.namespace, selector)

        if status == JobStatus.NOT_FOUND:
            if not self.migration_needed(instance):
                return False
            job_name = migration_job_name(instance)
            self.runner.create_migration_job(instance, job_name, selector)
            MIGRATION_JOBS.labels(event="created").inc()
            publish_event(instance.namespace, instance.name, "MIGRATION_STARTED",
                          f"{job_name}: {instance.status.version} -> {instance.release()}")
            return True

        if status in (JobStatus.RUNNING, JobStatus.UNKNOWN):
            return True

        self._finalize(instance, job)
        return False

    def _finalize(self, instance: Instance, job: dict):
        """
        Record the migrated release before cleaning up: once the job is gone a
        missing migratedVersion would start the migration again.
        """
        job_name = job["metadata"]["name"]
        target = instance.release()
        logger.info(f"Migration job '{job_name}' completed, recording {target} and cleaning up...")

        self.store.patch_instance_status(instance.kind, instance.namespace, instance.name,
                                         {"migratedVersion": target})
        self.restart.for_migration(instance, origin=f"migration-{target}")

        self._delete(ResourceKind.JOB, instance.namespace, job_name)
        for pod in self.store.list(ResourceKind.POD, instance.namespace, {"job-name": job_name}):
            self._delete(ResourceKind.POD, instance.namespace, pod["metadata"]["name"])

        if instance.using_couchdb():
            self._delete(ResourceKind.POD, instance.namespace, f"{instance.name}-couchdb")

        MIGRATION_JOBS.labels(event="completed").inc()
        publish_event(instance.namespace, instance.name, "MIGRATION_COMPLETED",
                      f"{job_name} migrated to {target}")

    def _delete(self, kind: ResourceKind, namespace: str, name: str):
        try:
            self.store.delete(kind, namespace, name)
        except NotFoundError:
            logger.debug(f"{kind.value} {namespace}/{name} already gone")
