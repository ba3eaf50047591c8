"""Callback surface handed to a runner for one job."""

import asyncio
import logging
from typing import Optional

from ci_provisioner.errors import IllegalTransitionError
from ci_provisioner.jobs.broker import LogStreamBroker
from ci_provisioner.jobs.models import Job, JobStatus
from ci_provisioner.jobs.registry import JobRegistry

logger = logging.getLogger(__name__)


class JobReporter:
    """Applies a runner's status reports and log lines for a single job.

    Must be used from the event loop thread. A terminal report closes the
    log channel in the same call as the registry transition, so no line can
    land after the channel is marked closed.
    """

    def __init__(self, job_id: str, registry: JobRegistry, broker: LogStreamBroker):
        self.job_id = job_id
        self._registry = registry
        self._broker = broker

    @property
    def finished(self) -> bool:
        return self._registry.get_job(self.job_id).status.is_terminal

    def log(self, text: str) -> None:
        self._broker.append_line(self.job_id, text)

    def running(self) -> Job:
        return self.report(JobStatus.RUNNING)

    def succeed(self, message: Optional[str] = None) -> Job:
        return self.report(JobStatus.SUCCESS, message)

    def fail(self, message: str) -> Job:
        return self.report(JobStatus.FAILED, message)

    def report(self, status: JobStatus, message: Optional[str] = None) -> Job:
        status = JobStatus(status)
        try:
            job = self._registry.transition(self.job_id, status, message)
        except IllegalTransitionError as exc:
            current = self._registry.get_job(self.job_id)
            if current.status is status:
                logger.warning(
                    "Ignoring repeated %s report for job %s", status.value, self.job_id,
                    extra={"job_id": self.job_id, "event_type": "repeated_report"},
                )
                return current
            logger.error(
                "Runner reported %s; failing job", exc,
                extra={"job_id": self.job_id, "event_type": "illegal_transition"},
            )
            job = self._registry.transition(
                self.job_id,
                JobStatus.FAILED,
                f"Runner reported an illegal transition {exc.current} -> {exc.requested}",
            )

        if job.status.is_terminal:
            self._broker.close(self.job_id)
        return job


class ThreadSafeReporter:
    """Reporter proxy for runners executing in worker threads.

    Each call is queued onto the event loop with call_soon_threadsafe, which
    runs callbacks in the order they were scheduled.
    """

    def __init__(self, reporter: JobReporter, loop: asyncio.AbstractEventLoop):
        self._reporter = reporter
        self._loop = loop
        self.job_id = reporter.job_id

    def log(self, text: str) -> None:
        self._loop.call_soon_threadsafe(self._reporter.log, text)

    def running(self) -> None:
        self._loop.call_soon_threadsafe(self._reporter.running)

    def succeed(self, message: Optional[str] = None) -> None:
        self._loop.call_soon_threadsafe(self._reporter.succeed, message)

    def fail(self, message: str) -> None:
        self._loop.call_soon_threadsafe(self._reporter.fail, message)

    def report(self, status: JobStatus, message: Optional[str] = None) -> None:
        self._loop.call_soon_threadsafe(self._reporter.report, status, message)
