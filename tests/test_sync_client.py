"""
Tests for the client-side sync layer.
"""
import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from ci_provisioner.api.v1.jobs import format_sse
from ci_provisioner.client.sync import JobSyncClient, StreamState, iter_sse
from ci_provisioner.config import Settings
from ci_provisioner.errors import NotFoundError, TransportError, ValidationError
from ci_provisioner.main import create_app

from conftest import HOSTS, ScriptedRunner

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc).isoformat()


def job_json(job_id, status="RUNNING", tool="jenkins"):
    return {
        "id": job_id,
        "tool": tool,
        "targetHost": "ci-vm-01",
        "status": status,
        "createdAt": NOW,
        "updatedAt": NOW,
        "message": None,
    }


def sse_response(*chunks: bytes, hold: asyncio.Event = None, error: Exception = None):
    async def body():
        for chunk in chunks:
            yield chunk
            await asyncio.sleep(0)
        if hold is not None:
            await hold.wait()
        if error is not None:
            raise error

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())


class FakeServer:
    """Routes requests to canned responses and records what was asked."""

    def __init__(self):
        self.jobs = []
        self.streams = {}
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = request.url.path
        if request.method == "GET" and path == "/api/v1/jobs":
            return httpx.Response(200, json=self.jobs)
        if request.method == "POST" and path.startswith("/api/v1/tools/"):
            tool = path.split("/")[4]
            if tool == "gitlab":
                return httpx.Response(400, json={"detail": "Unsupported tool 'gitlab'"})
            job = job_json(f"job-{len(self.jobs) + 1}", status="PENDING", tool=tool)
            self.jobs.insert(0, job)
            return httpx.Response(201, json=job)
        if path.endswith("/logs"):
            job_id = path.split("/")[4]
            factory = self.streams.get(job_id)
            if factory is None:
                return httpx.Response(404, json={"detail": "not found"})
            return factory()
        return httpx.Response(404)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
async def sync_client(server):
    http = httpx.AsyncClient(transport=httpx.MockTransport(server.handler), base_url="http://test")
    client = JobSyncClient(client=http)
    yield client
    await client.close()
    await http.aclose()


async def _lines(*items):
    for item in items:
        yield item


class TestIterSse:

    async def test_parses_events_and_skips_comments(self):
        lines = ["data: one", "", ": keepalive", "", "data: a", "data: b", "", "event: end", "data: SUCCESS", ""]
        events = [e async for e in iter_sse(_lines(*lines))]
        assert events == [("", "one"), ("", "a\nb"), ("end", "SUCCESS")]

    async def test_empty_data_is_still_an_event(self):
        events = [e async for e in iter_sse(_lines("data: ", ""))]
        assert events == [("", "")]

    async def test_unterminated_event_is_dropped(self):
        events = [e async for e in iter_sse(_lines("data: one", "", "event: end", "data: SUCCESS"))]
        assert events == [("", "one")]

    async def test_carriage_return_line_arrives_whole(self):
        response = httpx.Response(200, content=format_sse("progress 10%\rprogress 100%").encode())
        events = [e async for e in iter_sse(response.aiter_lines())]
        assert events == [("", "progress 10%\nprogress 100%")]


class TestJobList:

    async def test_refresh_replaces_snapshot(self, server, sync_client):
        server.jobs = [job_json("b"), job_json("a", status="SUCCESS")]
        changes = []
        sync_client._on_change = lambda c: changes.append(tuple(j.id for j in c.jobs))

        jobs = await sync_client.refresh_list()

        assert [j.id for j in jobs] == ["b", "a"]
        assert sync_client.jobs == jobs
        assert changes == [("b", "a")]
        assert sync_client.refreshing is False

    async def test_create_job_refreshes_list(self, server, sync_client):
        job = await sync_client.create_job("nexus", "ci-vm-01")

        assert job.status.value == "PENDING"
        assert [j.id for j in sync_client.jobs] == [job.id]
        assert server.requests[-1] == ("GET", "/api/v1/jobs")

    async def test_create_job_validation_error(self, server, sync_client):
        with pytest.raises(ValidationError, match="gitlab"):
            await sync_client.create_job("gitlab", "ci-vm-01")
        assert ("GET", "/api/v1/jobs") not in server.requests

    async def test_polling_refreshes_periodically(self, server, sync_client):
        server.jobs = [job_json("a")]
        sync_client.start_polling(interval=0.01)
        await asyncio.sleep(0.05)
        await sync_client.stop_polling()

        polls = [r for r in server.requests if r == ("GET", "/api/v1/jobs")]
        assert len(polls) >= 2
        assert [j.id for j in sync_client.jobs] == ["a"]


class TestLogStream:

    async def test_stream_completes_on_end_event(self, server, sync_client):
        server.jobs = [job_json("job-1", status="SUCCESS")]
        server.streams["job-1"] = lambda: sse_response(
            b"data: Starting install\n\n", b"data: Done\n\n", b"event: end\ndata: SUCCESS\n\n",
        )

        await sync_client.attach_to_job("job-1")
        state = await sync_client.wait_for_stream()

        assert state is StreamState.COMPLETE
        assert sync_client.logs == ["Starting install", "Done"]
        assert sync_client.final_status == "SUCCESS"
        assert sync_client.selected_job.status.value == "SUCCESS"

    async def test_stream_without_end_event_stalls(self, server, sync_client):
        server.streams["job-1"] = lambda: sse_response(b"data: Starting install\n\n")

        await sync_client.attach_to_job("job-1")
        state = await sync_client.wait_for_stream()

        assert state is StreamState.STALLED
        assert isinstance(sync_client.last_error, TransportError)
        assert sync_client.logs == ["Starting install"]

    async def test_broken_transport_stalls(self, server, sync_client):
        server.streams["job-1"] = lambda: sse_response(
            b"data: one\n\n", error=httpx.ReadError("connection reset"),
        )

        await sync_client.attach_to_job("job-1")
        state = await sync_client.wait_for_stream()

        assert state is StreamState.STALLED
        assert "connection reset" in str(sync_client.last_error)
        assert sync_client.logs == ["one"]

    async def test_server_error_event_stalls(self, server, sync_client):
        server.streams["job-1"] = lambda: sse_response(
            b"data: one\n\n", b"event: error\ndata: fell behind\n\n",
        )

        await sync_client.attach_to_job("job-1")

        assert await sync_client.wait_for_stream() is StreamState.STALLED
        assert str(sync_client.last_error) == "fell behind"

    async def test_unknown_job(self, sync_client):
        with pytest.raises(NotFoundError):
            await sync_client.attach_to_job("missing")
        assert sync_client.stream_state is StreamState.IDLE
        assert sync_client.selected_job_id is None

    async def test_switching_jobs_never_mixes_lines(self, server, sync_client):
        hold = asyncio.Event()
        server.streams["job-a"] = lambda: sse_response(b"data: a1\n\n", b"data: a2\n\n", hold=hold)
        server.streams["job-b"] = lambda: sse_response(
            b"data: b1\n\n", b"event: end\ndata: SUCCESS\n\n",
        )

        await sync_client.attach_to_job("job-a")
        await asyncio.sleep(0.01)
        assert sync_client.logs == ["a1", "a2"]

        await sync_client.attach_to_job("job-b")
        hold.set()
        await sync_client.wait_for_stream()

        assert sync_client.selected_job_id == "job-b"
        assert sync_client.logs == ["b1"]
        assert sync_client.stream_state is StreamState.COMPLETE

    async def test_overlapping_attaches_keep_one_stream(self):
        opened = {}

        async def handler(request):
            job_id = request.url.path.split("/")[4]
            if job_id == "job-a":
                await asyncio.sleep(0.05)
            response = sse_response(f"data: {job_id}\n\n".encode(), hold=asyncio.Event())
            opened[job_id] = response
            return response

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as http:
            client = JobSyncClient(client=http)
            await asyncio.gather(client.attach_to_job("job-a"), client.attach_to_job("job-b"))
            await asyncio.sleep(0.01)

            assert client.selected_job_id == "job-b"
            assert client.stream_state is StreamState.STREAMING
            assert client.logs == ["job-b"]
            assert opened["job-a"].is_closed
            assert not opened["job-b"].is_closed

            await client.close()
            assert opened["job-b"].is_closed

    async def test_detach_during_connect_discards_response(self):
        opened = []
        release = asyncio.Event()

        async def handler(request):
            await release.wait()
            response = sse_response(b"data: late\n\n", hold=asyncio.Event())
            opened.append(response)
            return response

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as http:
            client = JobSyncClient(client=http)
            attach = asyncio.create_task(client.attach_to_job("job-1"))
            await asyncio.sleep(0.01)
            await client.detach()
            release.set()
            await attach

            assert client.stream_state is StreamState.IDLE
            assert client.selected_job_id is None
            assert client.logs == []
            assert opened[0].is_closed
            await client.close()

    async def test_detach_is_idempotent(self, server, sync_client):
        await sync_client.detach()

        server.streams["job-1"] = lambda: sse_response(b"data: x\n\n", hold=asyncio.Event())
        await sync_client.attach_to_job("job-1")
        await sync_client.detach()
        await sync_client.detach()

        assert sync_client.stream_state is StreamState.IDLE
        assert sync_client.selected_job_id is None
        assert sync_client.logs == []

    async def test_reattach_starts_fresh(self, server, sync_client):
        server.streams["job-1"] = lambda: sse_response(
            b"data: one\n\n", b"data: two\n\n", b"event: end\ndata: SUCCESS\n\n",
        )

        await sync_client.attach_to_job("job-1")
        await sync_client.wait_for_stream()
        await sync_client.attach_to_job("job-1")
        await sync_client.wait_for_stream()

        assert sync_client.logs == ["one", "two"]


class TestAgainstApp:

    async def test_create_and_follow_job(self):
        settings = Settings(known_hosts=HOSTS, known_hosts_file=None, job_retention_hours=0)
        app = create_app(settings=settings, runner=ScriptedRunner())

        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
                client = JobSyncClient(client=http)

                job = await client.create_job("jenkins", "ci-vm-01")
                assert [j.id for j in client.jobs] == [job.id]

                for _ in range(200):
                    await client.refresh_list()
                    if client.jobs[0].status.is_terminal:
                        break
                    await asyncio.sleep(0.01)

                await client.attach_to_job(job.id)
                state = await client.wait_for_stream()
                await client.close()

        assert state is StreamState.COMPLETE
        assert client.logs == ["Starting install", "Done"]
        assert client.final_status == "SUCCESS"
