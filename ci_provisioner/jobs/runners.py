"""Runner interface and the adapters that ship with the service.

The runner is the external collaborator that actually provisions a tool on a
host. It receives the job and a reporter, and reports RUNNING, log lines and
a final SUCCESS/FAILED through that reporter.
"""

import asyncio
import functools
import logging
import shlex
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, List

from ci_provisioner.errors import RunnerStartError
from ci_provisioner.jobs.models import Job, Tool
from ci_provisioner.jobs.reporter import JobReporter, ThreadSafeReporter

logger = logging.getLogger(__name__)


class JobRunner(ABC):
    """Executes one provisioning job.

    Raise RunnerStartError, before reporting RUNNING, when the job could not
    be launched at all.
    """

    @abstractmethod
    async def run(self, job: Job, reporter: JobReporter) -> None:
        ...


# Scripted steps for the simulated runner, formatted with {host}
_SIMULATED_STEPS: Dict[Tool, List[str]] = {
    Tool.JENKINS: [
        "Connecting to {host}",
        "Installing OpenJDK 17",
        "Adding Jenkins LTS package repository",
        "Installing jenkins package",
        "Starting jenkins.service",
        "Jenkins is up at http://{host}:8080",
    ],
    Tool.NEXUS: [
        "Connecting to {host}",
        "Installing OpenJDK 17",
        "Downloading Nexus Repository OSS",
        "Creating nexus system user",
        "Starting nexus.service",
        "Nexus is up at http://{host}:8081",
    ],
    Tool.HARBOR: [
        "Connecting to {host}",
        "Checking docker and docker compose",
        "Downloading Harbor offline installer",
        "Rendering harbor.yml",
        "Running install.sh",
        "Harbor is up at https://{host}",
    ],
    Tool.SONARQUBE: [
        "Connecting to {host}",
        "Tuning vm.max_map_count",
        "Installing PostgreSQL",
        "Downloading SonarQube Community Edition",
        "Starting sonarqube.service",
        "SonarQube is up at http://{host}:9000",
    ],
}


class SimulatedRunner(JobRunner):
    """Walks through canned installation steps. For development and demos."""

    def __init__(self, step_delay: float = 0.5):
        self._step_delay = step_delay

    async def run(self, job: Job, reporter: JobReporter) -> None:
        reporter.running()
        for step in _SIMULATED_STEPS[job.tool]:
            await asyncio.sleep(self._step_delay)
            reporter.log(step.format(host=job.target_host))
        reporter.succeed(f"{job.tool.value} installed on {job.target_host}")


_READ_CHUNK = 64 * 1024


async def _iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Decoded output lines of any length; a final unterminated line is kept."""
    pending = b""
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for raw in complete:
            yield raw.decode("utf-8", errors="replace")
    if pending:
        yield pending.decode("utf-8", errors="replace")


class CommandRunner(JobRunner):
    """Spawns an external provisioning command and streams its output.

    The template may reference {tool}, {host} and {job_id}, e.g.
    "ansible-playbook site.yml -l {host} -t {tool}".
    """

    def __init__(self, command_template: str):
        if not command_template.strip():
            raise ValueError("command_template must not be empty")
        self._template = command_template

    def build_command(self, job: Job) -> List[str]:
        return [
            part.format(tool=job.tool.value, host=job.target_host, job_id=job.id)
            for part in shlex.split(self._template)
        ]

    async def run(self, job: Job, reporter: JobReporter) -> None:
        argv = self.build_command(job)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise RunnerStartError(f"cannot execute {argv[0]!r}: {e}") from e

        logger.info("Job %s: started pid %d: %s", job.id, proc.pid, shlex.join(argv))
        reporter.running()

        try:
            if proc.stdout is not None:
                async for line in _iter_lines(proc.stdout):
                    reporter.log(line)
            returncode = await proc.wait()
        finally:
            # Never leave the child behind when streaming stops early
            if proc.returncode is None:
                logger.warning("Job %s: killing pid %d", job.id, proc.pid)
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()

        if returncode == 0:
            reporter.succeed()
        else:
            reporter.fail(f"command exited with status {returncode}")


class CallableRunner(JobRunner):
    """Runs a synchronous fn(job, reporter) in a thread executor.

    The reporter handed to fn is thread-safe; fn may block freely.
    """

    def __init__(self, fn: Callable[[Job, ThreadSafeReporter], None]):
        self._fn = fn

    async def run(self, job: Job, reporter: JobReporter) -> None:
        loop = asyncio.get_running_loop()
        proxy = ThreadSafeReporter(reporter, loop)
        await loop.run_in_executor(None, functools.partial(self._fn, job, proxy))


def build_runner(mode: str, command: str = "", step_delay: float = 0.5) -> JobRunner:
    """Create the runner selected by settings.runner_mode."""
    if mode == "simulated":
        return SimulatedRunner(step_delay=step_delay)
    if mode == "command":
        if not command.strip():
            raise ValueError("runner_mode 'command' requires runner_command")
        return CommandRunner(command)
    raise ValueError(f"Unknown runner_mode '{mode}' (expected 'simulated' or 'command')")
