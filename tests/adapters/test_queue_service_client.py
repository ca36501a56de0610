"""Tests for the external queue service HTTP client."""

from typing import Any

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from search_sync.adapters.queue_service_client import QueueServiceClient
from search_sync.core.exceptions import QueueServiceError
from search_sync.schemas.changes import ChangeOperation, JobDescriptor

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def queue_service():
    """Fake queue service recording every job request."""
    state: dict[str, Any] = {"jobs": [], "attempts": 0, "fail_next": 0, "reject": False}

    async def submit(request: web.Request) -> web.Response:
        state["attempts"] += 1
        if state["fail_next"] > 0:
            state["fail_next"] -= 1
            return web.json_response({"success": False, "error": "busy"}, status=503)
        if state["reject"]:
            return web.json_response({"success": False, "error": "bad job"}, status=400)
        state["jobs"].append(await request.json())
        return web.json_response({"success": True, "data": {"id": 17, "status": "waiting"}})

    async def health(request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def stats(request: web.Request) -> web.Response:
        return web.json_response(
            {
                "success": True,
                "data": {"waiting": 2, "active": 1, "completed": 10, "failed": 0, "workers": 4},
            }
        )

    app = web.Application()
    app.router.add_post("/api/v1/queue/jobs", submit)
    app.router.add_get("/health", health)
    app.router.add_get("/api/v1/queue/stats", stats)

    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield server, state
    finally:
        await server.close()


@pytest_asyncio.fixture
async def client(queue_service):
    server, _ = queue_service
    client = QueueServiceClient(str(server.make_url("/")), timeout=2, retries=2, retry_backoff=0)
    try:
        yield client
    finally:
        await client.aclose()


def _job() -> JobDescriptor:
    return JobDescriptor(
        entity_kind="listings",
        operation=ChangeOperation.INSERT,
        entity_id=42,
        payload={"id": 42, "status": "active"},
    )


async def test_submit_job_wire_format(queue_service, client: QueueServiceClient):
    _, state = queue_service

    submission = await client.submit_job(_job())

    assert submission.id == "17"
    assert submission.status == "waiting"
    assert submission.backend == "external"
    assert state["jobs"] == [
        {
            "type": "ELASTICSEARCH_SYNC",
            "data": {
                "table": "listings",
                "operation": "INSERT",
                "recordId": "42",
                "changeData": {"id": 42, "status": "active"},
            },
        }
    ]


async def test_server_errors_are_retried(queue_service, client: QueueServiceClient):
    _, state = queue_service
    state["fail_next"] = 2

    submission = await client.submit_job(_job())

    assert submission.id == "17"
    assert state["attempts"] == 3


async def test_retries_are_bounded(queue_service, client: QueueServiceClient):
    _, state = queue_service
    state["fail_next"] = 10

    with pytest.raises(QueueServiceError) as exc_info:
        await client.submit_job(_job())

    assert exc_info.value.status_code == 503
    assert state["attempts"] == 3


async def test_client_errors_are_not_retried(queue_service, client: QueueServiceClient):
    _, state = queue_service
    state["reject"] = True

    with pytest.raises(QueueServiceError) as exc_info:
        await client.submit_job(_job())

    assert exc_info.value.status_code == 400
    assert state["attempts"] == 1


async def test_health_check(client: QueueServiceClient):
    assert await client.health_check()


async def test_health_check_unreachable_service():
    client = QueueServiceClient("http://127.0.0.1:1", timeout=1, retries=0)
    try:
        assert await client.health_check() is False
    finally:
        await client.aclose()


async def test_get_stats(client: QueueServiceClient):
    stats = await client.get_stats()

    assert stats.waiting == 2
    assert stats.active == 1
    assert stats.completed == 10
    assert stats.delayed == 0
    assert stats.extra == {"workers": 4}
