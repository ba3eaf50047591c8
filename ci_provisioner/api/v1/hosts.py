"""Known hosts API."""

from fastapi import APIRouter, Depends

from ci_provisioner.api.v1.deps import get_hosts
from ci_provisioner.hosts import KnownHostsProvider

router = APIRouter()


@router.get("/hosts")
async def list_hosts(hosts: KnownHostsProvider = Depends(get_hosts)):
    """Hosts a job may target."""
    available = hosts.hosts()
    return {"hosts": available, "count": len(available)}
