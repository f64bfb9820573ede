"""Integration tests for REST API endpoints.

Uses httpx AsyncClient with ASGITransport for async HTTP testing, the
in-memory outbox as transport and SQLite for the conversation store.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from colloquy.api.completion import DETERMINISTIC, EXTRACTION
from colloquy.api.rest import create_app
from colloquy.core.approval import ActionApprovalManager
from colloquy.core.context import ContextWindowManager
from colloquy.core.intent import IntentDetector
from colloquy.core.orchestrator import Orchestrator

UTTERANCE = {
    "surface_id": "web",
    "channel_id": "room-1",
    "author_id": "u1",
    "text": "hello there",
}


@pytest_asyncio.fixture
async def client(db, store, completion, executor, outbox, locks, settings):
    context = ContextWindowManager(store, completion, locks, settings)
    approvals = ActionApprovalManager(outbox, executor, locks, settings)
    orchestrator = Orchestrator(
        settings, outbox, IntentDetector(completion), approvals, context, completion, locks
    )
    app = create_app(orchestrator, approvals, db, settings, outbox=outbox)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    await approvals.stop()


async def _request_search(client, completion) -> str:
    completion.replies[DETERMINISTIC] = "search"
    completion.replies[EXTRACTION] = "tokyo weather"
    await client.post("/utterances", json={**UTTERANCE, "text": "what's the weather in Tokyo right now"})
    messages = (await client.get("/channels/room-1/messages")).json()["messages"]
    return messages[0]["approval_request_id"]


# ---------------------------------------------------------------------------
# Utterances
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_post_utterance_delivers_reply(client):
    response = await client.post("/utterances", json=UTTERANCE)
    assert response.status_code == 202
    assert response.json()["conversation"] == "web:room-1:channel-room-1"

    messages = (await client.get("/channels/room-1/messages")).json()["messages"]
    assert [m["content"] for m in messages] == ["This is a test response."]


@pytest.mark.asyncio
async def test_post_utterance_in_thread(client, store):
    response = await client.post("/utterances", json={**UTTERANCE, "thread_id": "t-5"})
    assert response.json()["conversation"] == "web:room-1:t-5"

    messages = (await client.get("/channels/t-5/messages")).json()["messages"]
    assert len(messages) == 1


@pytest.mark.asyncio
async def test_post_utterance_missing_fields(client):
    response = await client.post("/utterances", json={"surface_id": "web"})
    assert response.status_code == 400
    assert "channel_id" in response.json()["error"]


@pytest.mark.asyncio
async def test_post_utterance_invalid_json(client):
    response = await client.post("/utterances", content=b"not json", headers={"content-type": "application/json"})
    assert response.status_code == 400


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pending_action_status(client, completion):
    request_id = await _request_search(client, completion)

    response = await client.get(f"/actions/{request_id}")
    assert response.status_code == 200
    data = response.json()
    assert data["kind"] == "search"
    assert data["query"] == "tokyo weather"
    assert data["status"] == "requested"


@pytest.mark.asyncio
async def test_approve_returns_result(client, completion, executor):
    request_id = await _request_search(client, completion)

    response = await client.post(f"/actions/{request_id}/approve", json={"by": "alice"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "approved"
    assert body["result"]["query"] == "tokyo weather"
    assert executor.searches == ["tokyo weather"]

    result = await client.get(f"/actions/{request_id}/result")
    assert result.status_code == 200
    assert result.json()["kind"] == "search"

    messages = (await client.get("/channels/room-1/messages")).json()["messages"]
    assert "approved by alice" in messages[0]["content"]
    assert messages[-1]["content"] == "This is a test response."


@pytest.mark.asyncio
async def test_second_decision_conflicts(client, completion):
    request_id = await _request_search(client, completion)
    await client.post(f"/actions/{request_id}/deny", json={"by": "bob"})

    response = await client.post(f"/actions/{request_id}/approve")
    assert response.status_code == 409
    response = await client.post(f"/actions/{request_id}/deny")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_deny(client, completion, executor):
    request_id = await _request_search(client, completion)

    response = await client.post(f"/actions/{request_id}/deny", json={"by": "bob"})
    assert response.status_code == 200
    assert response.json() == {"status": "denied"}
    assert executor.searches == []
    assert (await client.get(f"/actions/{request_id}")).status_code == 404


@pytest.mark.asyncio
async def test_unknown_action(client):
    assert (await client.get("/actions/nope")).status_code == 404
    assert (await client.get("/actions/nope/result")).status_code == 404


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_messages_without_outbox(db, settings):
    app = create_app(orchestrator=None, approvals=None, database=db, settings=settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        response = await c.get("/channels/room-1/messages")
    assert response.status_code == 404


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


def test_build_app_defers_component_creation():
    from colloquy.main import _lazy_component, build_app
    from conftest import make_settings

    app = build_app(make_settings())
    assert any(route.path == "/utterances" for route in app.routes)

    components: dict = {}
    proxy = _lazy_component(components, "orchestrator")
    with pytest.raises(RuntimeError, match="not yet initialized"):
        proxy.handle_utterance
    assert not _lazy_component(components, "outbox", optional=True)
