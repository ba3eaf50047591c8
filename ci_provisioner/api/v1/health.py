"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter, Depends

from ci_provisioner.api.v1.deps import get_broker, get_dispatcher, get_registry
from ci_provisioner.jobs.broker import LogStreamBroker
from ci_provisioner.jobs.dispatcher import JobDispatcher
from ci_provisioner.jobs.registry import JobRegistry

router = APIRouter()


@router.get("/health")
async def health_check(
    registry: JobRegistry = Depends(get_registry),
    broker: LogStreamBroker = Depends(get_broker),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """Service health, job counts and streaming diagnostics."""
    return {
        "status": "healthy",
        "jobs": registry.status_counts(),
        "dropped_late_events": registry.dropped_events,
        "active_runners": dispatcher.active_count,
        "log_channels": broker.channel_count(),
        "log_subscribers": broker.subscriber_count(),
        "subscriber_overflows": broker.overflows,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
