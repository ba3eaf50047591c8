"""Job dispatcher: creates jobs and launches one runner task per job."""

import asyncio
import logging
from typing import Dict, Set

from ci_provisioner.errors import RunnerStartError
from ci_provisioner.jobs.broker import LogStreamBroker
from ci_provisioner.jobs.models import Job
from ci_provisioner.jobs.registry import JobRegistry
from ci_provisioner.jobs.reporter import JobReporter
from ci_provisioner.jobs.runners import JobRunner

logger = logging.getLogger(__name__)


class JobDispatcher:
    """Bridges creation requests to the runner.

    Runs each job as its own asyncio task, up to max_concurrent at a time.
    A job that cannot be launched goes straight from PENDING to FAILED.
    """

    def __init__(
        self,
        registry: JobRegistry,
        broker: LogStreamBroker,
        runner: JobRunner,
        max_concurrent: int = 8,
        shutdown_grace: float = 5.0,
    ):
        self._registry = registry
        self._broker = broker
        self._runner = runner
        self._max_concurrent = max_concurrent
        self._shutdown_grace = shutdown_grace
        self._tasks: Dict[str, asyncio.Task] = {}
        # Every job id ever launched; guards against a second runner
        self._launched: Set[str] = set()
        self._running = False

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        """Wait briefly for in-flight runners, then cancel the rest."""
        self._running = False
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("Waiting up to %.1fs for %d running job(s)", self._shutdown_grace, len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=self._shutdown_grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def dispatch(self, tool: str, target_host: str) -> Job:
        """Create a job and launch its runner. Raises ValidationError on bad input."""
        job = self._registry.create_job(tool, target_host)
        self._broker.open_channel(job.id)

        try:
            self._launch(job)
        except RunnerStartError as e:
            return self._fail_to_start(job, str(e))
        return job

    def _launch(self, job: Job) -> None:
        if job.id in self._launched:
            raise RunnerStartError(f"runner already started for job {job.id}")
        if not self._running:
            raise RunnerStartError("dispatcher is not accepting jobs")
        if len(self._tasks) >= self._max_concurrent:
            raise RunnerStartError(
                f"runner capacity exhausted ({self._max_concurrent} jobs already running)"
            )
        try:
            task = asyncio.get_running_loop().create_task(self._execute(job))
        except RuntimeError as e:
            raise RunnerStartError(f"cannot schedule runner: {e}") from e

        self._launched.add(job.id)
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))

    def _fail_to_start(self, job: Job, reason: str) -> Job:
        message = f"Runner could not be started: {reason}"
        logger.error(
            "Job %s: %s", job.id, message,
            extra={"job_id": job.id, "event_type": "runner_start_failed"},
        )
        reporter = JobReporter(job.id, self._registry, self._broker)
        reporter.log(message)
        return reporter.fail(message)

    async def _execute(self, job: Job) -> None:
        reporter = JobReporter(job.id, self._registry, self._broker)
        try:
            await self._runner.run(job, reporter)
        except RunnerStartError as e:
            self._fail_to_start(job, str(e))
            return
        except asyncio.CancelledError:
            reporter.fail("Runner cancelled during service shutdown")
            raise
        except Exception as e:
            logger.exception(
                "Runner crashed for job %s", job.id,
                extra={"job_id": job.id, "event_type": "runner_crashed"},
            )
            reporter.fail(f"{type(e).__name__}: {e}")
            return

        if not reporter.finished:
            reporter.fail("runner exited without reporting a final status")
