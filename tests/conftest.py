# tests/conftest.py
import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from ci_provisioner.hosts import StaticHostsProvider
from ci_provisioner.jobs.broker import LogStreamBroker
from ci_provisioner.jobs.models import Job, JobStatus
from ci_provisioner.jobs.registry import JobRegistry
from ci_provisioner.jobs.reporter import JobReporter
from ci_provisioner.jobs.runners import JobRunner

HOSTS = ["ci-vm-01", "ci-vm-02"]


class FakeClock:
    """Deterministic clock; advance() moves it, set() may move it backwards."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class RecordingRegistry(JobRegistry):
    """Registry that remembers every applied status per job."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.history: dict = {}

    def create_job(self, tool, target_host):
        job = super().create_job(tool, target_host)
        self.history[job.id] = [job.status]
        return job

    def transition(self, job_id, new_status, message=None):
        before = self.get_job(job_id) if job_id in self.history else None
        job = super().transition(job_id, new_status, message)
        if before is not None and job.status is not before.status:
            self.history[job_id].append(job.status)
        return job


class ScriptedRunner(JobRunner):
    """Runner driven by the test: reports the given lines, then a final status.

    If `gate` is set the runner waits on it after reporting RUNNING.
    """

    def __init__(
        self,
        lines: Optional[List[str]] = None,
        final: JobStatus = JobStatus.SUCCESS,
        message: Optional[str] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.lines = lines if lines is not None else ["Starting install", "Done"]
        self.final = final
        self.message = message
        self.gate = gate
        self.calls: List[Job] = []

    async def run(self, job: Job, reporter: JobReporter) -> None:
        self.calls.append(job)
        reporter.running()
        if self.gate is not None:
            await self.gate.wait()
        for line in self.lines:
            reporter.log(line)
            await asyncio.sleep(0)
        reporter.report(self.final, self.message)


async def wait_for_status(registry: JobRegistry, job_id: str, timeout: float = 2.0) -> Job:
    """Poll until the job is terminal."""

    async def _poll():
        while True:
            job = registry.get_job(job_id)
            if job.status.is_terminal:
                return job
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def hosts():
    return StaticHostsProvider(HOSTS)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(hosts, clock):
    return RecordingRegistry(hosts, clock=clock)


@pytest.fixture
def broker():
    return LogStreamBroker(max_subscriber_buffer=100)
