"""Tool API: list supported tools and start a provisioning job."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ci_provisioner.api.v1.deps import get_dispatcher
from ci_provisioner.jobs.dispatcher import JobDispatcher
from ci_provisioner.jobs.models import Tool

router = APIRouter()


class JobCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Missing host is reported by the registry, not as a 422
    target_host: str = Field("", alias="targetHost")


@router.get("/tools")
async def list_tools():
    return {"tools": [t.value for t in Tool]}


@router.post("/tools/{tool}/jobs", status_code=201)
async def create_tool_job(
    tool: str,
    request: JobCreateRequest,
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """Provision `tool` on `targetHost`. Returns the new job (normally PENDING)."""
    job = await dispatcher.dispatch(tool, request.target_host)
    return job.to_json()
