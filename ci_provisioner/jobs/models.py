"""Job and log line data models."""

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import uuid


class Tool(str, Enum):
    JENKINS = "jenkins"
    NEXUS = "nexus"
    HARBOR = "harbor"
    SONARQUBE = "sonarqube"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED)


# Valid successors for each status. Terminal statuses have none.
TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCESS, JobStatus.FAILED}),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class Job(BaseModel):
    """One provisioning attempt of a CI tool onto a host.

    Records are frozen: the registry swaps in a new copy on every transition,
    so a reader never sees a status paired with another status's message.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tool: Tool
    target_host: str
    status: JobStatus = JobStatus.PENDING
    created_at: datetime
    updated_at: datetime
    message: Optional[str] = None

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class LogLine(BaseModel):
    """A single line of a job's output, numbered from 1 within the job."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    seq: int
    text: str
    at: datetime
