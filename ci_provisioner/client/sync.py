"""Client-side view of the provisioning service.

Keeps a polled snapshot of the job list and a pushed log stream for the one
job currently selected. A log stream that breaks before the server's `end`
event leaves the view STALLED; it is never retried automatically, because
re-attaching always replays the whole log from the first line.
"""

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Tuple

import httpx

from ci_provisioner.errors import NotFoundError, TransportError, ValidationError
from ci_provisioner.jobs.models import Job

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETE = "complete"
    STALLED = "stalled"


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, str]]:
    """Parse SSE text lines into (event, data) pairs. Comments are skipped.

    An event cut off before its terminating blank line is discarded.
    """
    event = ""
    data: List[str] = []
    async for line in lines:
        if line == "":
            if data:
                yield event, "\n".join(data)
            event, data = "", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)


class JobSyncClient:
    """Job list plus one attached log stream, over the HTTP API."""

    def __init__(
        self,
        base_url: str = "http://localhost:8080",
        client: Optional[httpx.AsyncClient] = None,
        on_change: Optional[Callable[["JobSyncClient"], None]] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(10.0, read=None),
        )
        self._on_change = on_change

        # List view
        self.jobs: Tuple[Job, ...] = ()
        self.refreshing = False

        # Detail view
        self.selected_job_id: Optional[str] = None
        self.logs: List[str] = []
        self.stream_state = StreamState.IDLE
        self.final_status: Optional[str] = None
        self.last_error: Optional[Exception] = None

        self._generation = 0
        self._attach_lock = asyncio.Lock()
        self._stream_task: Optional[asyncio.Task] = None
        self._response: Optional[httpx.Response] = None
        self._poll_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "JobSyncClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self)

    @property
    def selected_job(self) -> Optional[Job]:
        for job in self.jobs:
            if job.id == self.selected_job_id:
                return job
        return None

    # ------------------------------------------------------------------
    # List view
    # ------------------------------------------------------------------

    async def refresh_list(self) -> Tuple[Job, ...]:
        """Fetch the full job list and swap it in as one snapshot."""
        self.refreshing = True
        try:
            response = await self._client.get("/api/v1/jobs")
            response.raise_for_status()
            jobs = tuple(Job.model_validate(item) for item in response.json())
        finally:
            self.refreshing = False
        self.jobs = jobs
        self._changed()
        return jobs

    async def create_job(self, tool: str, target_host: str) -> Job:
        """Request a provisioning job, then refresh the list."""
        response = await self._client.post(
            f"/api/v1/tools/{tool}/jobs",
            json={"targetHost": target_host},
        )
        if 400 <= response.status_code < 500:
            raise ValidationError(_error_detail(response))
        response.raise_for_status()
        job = Job.model_validate(response.json())
        await self.refresh_list()
        return job

    def start_polling(self, interval: float = 5.0) -> None:
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop(interval))

    async def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _poll_loop(self, interval: float) -> None:
        while True:
            try:
                await self.refresh_list()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Job list refresh failed: %s", e)
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Detail view
    # ------------------------------------------------------------------

    async def attach_to_job(self, job_id: str) -> None:
        """Replace any current log subscription with one for job_id.

        Raises NotFoundError if the server does not know the job. Overlapping
        calls are serialized; the last one wins.
        """
        async with self._attach_lock:
            await self._attach(job_id)

    async def _attach(self, job_id: str) -> None:
        await self.detach()
        generation = self._generation

        self.selected_job_id = job_id
        self.logs = []
        self.final_status = None
        self.last_error = None

        request = self._client.build_request(
            "GET",
            f"/api/v1/jobs/{job_id}/logs",
            headers={"Accept": "text/event-stream"},
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            if generation == self._generation:
                self._stall(TransportError(f"Cannot open log stream for job {job_id}: {e}"))
            return

        # detach() ran while the request was in flight
        if generation != self._generation:
            await response.aclose()
            return

        if response.status_code == 404:
            await response.aclose()
            self.selected_job_id = None
            self.stream_state = StreamState.IDLE
            raise NotFoundError(f"Job '{job_id}' not found")
        if response.status_code != 200:
            await response.aclose()
            self._stall(TransportError(f"Log stream for job {job_id} returned HTTP {response.status_code}"))
            return

        self._response = response
        self.stream_state = StreamState.STREAMING
        self._stream_task = asyncio.create_task(self._consume(response, generation))
        self._changed()

    async def detach(self) -> None:
        """Close the active log subscription, if any. Idempotent."""
        # Bumping the generation first makes any line still in flight stale
        self._generation += 1
        task, self._stream_task = self._stream_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        response, self._response = self._response, None
        if response is not None:
            await response.aclose()

        if self.selected_job_id is not None:
            self.selected_job_id = None
            self.logs = []
            self.final_status = None
            self.stream_state = StreamState.IDLE
            self._changed()

    async def wait_for_stream(self) -> StreamState:
        """Wait until the current stream completes or stalls."""
        task = self._stream_task
        if task is not None:
            await asyncio.shield(task)
        return self.stream_state

    def _stall(self, error: TransportError) -> None:
        logger.warning("%s", error)
        self.last_error = error
        self.stream_state = StreamState.STALLED
        self._changed()

    async def _consume(self, response: httpx.Response, generation: int) -> None:
        ended = False
        error: Optional[TransportError] = None
        try:
            async for event, data in iter_sse(response.aiter_lines()):
                if generation != self._generation:
                    return
                if event == "end":
                    self.final_status = data or None
                    ended = True
                    break
                if event == "error":
                    error = TransportError(data)
                    break
                self.logs.append(data)
                self._changed()
        except httpx.HTTPError as e:
            error = TransportError(f"Log stream for job {self.selected_job_id} broke: {e}")
        finally:
            await response.aclose()

        if generation != self._generation:
            return
        if self._response is response:
            self._response = None
        if not ended:
            self._stall(error or TransportError(
                f"Log stream for job {self.selected_job_id} ended without an end event"
            ))
            return

        self.stream_state = StreamState.COMPLETE
        self._changed()
        # Bring the list view in line with the final status just pushed
        try:
            await self.refresh_list()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Job list refresh after stream end failed: %s", e)

    async def close(self) -> None:
        await self.stop_polling()
        await self.detach()
        if self._owns_client:
            await self._client.aclose()
