"""In-memory job registry enforcing the job lifecycle."""

import logging
from collections import Counter
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Optional

from ci_provisioner.errors import IllegalTransitionError, NotFoundError, ValidationError
from ci_provisioner.hosts import KnownHostsProvider
from ci_provisioner.jobs.models import TRANSITIONS, Job, JobStatus, Tool

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRegistry:
    """Authoritative store of job records.

    - Jobs are created PENDING and only move along TRANSITIONS
    - Reports against a terminal job are dropped and counted, not raised
    - Every read returns frozen records, so snapshots are always consistent
    """

    def __init__(
        self,
        hosts: KnownHostsProvider,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._hosts = hosts
        self._clock = clock
        # Insertion-ordered; reversed for newest-first listing
        self._jobs: Dict[str, Job] = {}
        self._lock = RLock()
        self._dropped_events = 0

    def create_job(self, tool: str, target_host: str) -> Job:
        """Allocate a PENDING job after validating tool and host."""
        try:
            tool_value = Tool(tool)
        except ValueError:
            supported = ", ".join(t.value for t in Tool)
            raise ValidationError(f"Unsupported tool '{tool}' (expected one of: {supported})")

        host = (target_host or "").strip()
        if not host:
            raise ValidationError("targetHost is required")
        if not self._hosts.is_known(host):
            raise ValidationError(f"Unknown target host '{host}'")

        now = self._clock()
        job = Job(tool=tool_value, target_host=host, created_at=now, updated_at=now)
        with self._lock:
            self._jobs[job.id] = job

        logger.info(
            "Created job %s: %s on %s", job.id, tool_value.value, host,
            extra={"job_id": job.id, "event_type": "job_created"},
        )
        return job

    def transition(
        self,
        job_id: str,
        new_status: JobStatus,
        message: Optional[str] = None,
    ) -> Job:
        """Move a job to new_status.

        A terminal job is returned unchanged. Raises IllegalTransitionError
        when new_status is not a successor of a non-terminal status.
        """
        new_status = JobStatus(new_status)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job '{job_id}' not found")

            if job.status.is_terminal:
                self._dropped_events += 1
                logger.warning(
                    "Dropped late %s report for job %s (already %s)",
                    new_status.value, job_id, job.status.value,
                    extra={"job_id": job_id, "event_type": "late_event_dropped"},
                )
                return job

            if new_status not in TRANSITIONS[job.status]:
                raise IllegalTransitionError(job_id, job.status.value, new_status.value)

            update = {
                "status": new_status,
                "updated_at": max(self._clock(), job.updated_at),
            }
            if message is not None:
                update["message"] = message
            job = job.model_copy(update=update)
            self._jobs[job_id] = job

        logger.info(
            "Job %s -> %s%s", job_id, new_status.value,
            f" ({message})" if message else "",
            extra={"job_id": job_id, "event_type": "job_transition"},
        )
        return job

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        return job

    def list_jobs(self) -> List[Job]:
        """All jobs, most recently created first."""
        with self._lock:
            return list(reversed(self._jobs.values()))

    def remove(self, job_id: str) -> bool:
        """Forget a terminal job. Non-terminal jobs are kept."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.status.is_terminal:
                return False
            del self._jobs[job_id]
            return True

    def status_counts(self) -> Dict[str, int]:
        with self._lock:
            counts = Counter(job.status.value for job in self._jobs.values())
        return {status.value: counts.get(status.value, 0) for status in JobStatus}

    @property
    def dropped_events(self) -> int:
        return self._dropped_events

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
