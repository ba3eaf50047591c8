"""Job API: list jobs, fetch one job, stream a job's log."""

import asyncio
import logging
import re
from typing import AsyncIterator, List

from fastapi import APIRouter, Depends, Request
from starlette.responses import StreamingResponse

from ci_provisioner.api.v1.deps import get_broker, get_registry, get_settings
from ci_provisioner.config import Settings
from ci_provisioner.errors import NotFoundError, TransportError
from ci_provisioner.jobs.broker import LogStreamBroker, SubscriptionState
from ci_provisioner.jobs.registry import JobRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


# Every line terminator SSE recognises
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def format_sse(data: str, event: str = "") -> str:
    """Encode one SSE event. Embedded line breaks become extra data: fields.

    SSE cannot carry a bare CR, so a line such as "10%\\r100%" arrives at the
    client as "10%\\n100%": nothing after the CR is lost.
    """
    lines = [f"event: {event}"] if event else []
    lines.extend(f"data: {part}" for part in _LINE_BREAK.split(data))
    return "\n".join(lines) + "\n\n"


@router.get("/jobs")
async def list_jobs(registry: JobRegistry = Depends(get_registry)) -> List[dict]:
    """All jobs, newest first."""
    return [job.to_json() for job in registry.list_jobs()]


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, registry: JobRegistry = Depends(get_registry)) -> dict:
    return registry.get_job(job_id).to_json()


async def _log_events(
    job_id: str,
    broker: LogStreamBroker,
    registry: JobRegistry,
    request: Request,
    keepalive: float,
) -> AsyncIterator[str]:
    # Subscribed only once the body is iterated, so the finally below always
    # runs for a live subscription
    try:
        subscription = broker.subscribe(job_id)
    except NotFoundError:
        logger.debug("Log channel for job %s was discarded before streaming", job_id)
        return

    try:
        for line in subscription.replay:
            yield format_sse(line.text)

        while True:
            try:
                line = await subscription.next_line(timeout=keepalive)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    logger.debug("Log client for job %s went away", subscription.job_id)
                    return
                yield ": keepalive\n\n"
                continue
            except TransportError as e:
                yield format_sse(str(e), event="error")
                return

            if line is None:
                break
            yield format_sse(line.text)

        # A cancelled subscription (channel discarded) gets no end event
        if subscription.state is SubscriptionState.ENDED:
            try:
                status = registry.get_job(subscription.job_id).status.value
            except NotFoundError:
                status = ""
            yield format_sse(status, event="end")
    finally:
        subscription.cancel()


@router.get("/jobs/{job_id}/logs")
async def stream_job_logs(
    job_id: str,
    request: Request,
    registry: JobRegistry = Depends(get_registry),
    broker: LogStreamBroker = Depends(get_broker),
    settings: Settings = Depends(get_settings),
):
    """Server-sent events: full replay, then live lines, then an `end` event.

    Each unnamed event carries one raw log line. A subscriber that falls too
    far behind gets an `error` event and the stream closes; reconnecting
    starts again from the first line.
    """
    registry.get_job(job_id)
    if not broker.has_channel(job_id):
        raise NotFoundError(f"No log for job '{job_id}'")

    return StreamingResponse(
        _log_events(job_id, broker, registry, request, settings.sse_keepalive_seconds),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
