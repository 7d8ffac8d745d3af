"""Tests for the FastAPI relay endpoints."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import uvicorn
from httpx import ASGITransport, AsyncClient

from api.server import RelayServer, create_app, event_stream, events
from core.broker import Broker
from core.config import RelaySettings
from core.subscribers import SubscriberRegistry

EMAIL_FORM = {"to": "a@b.com", "subject": "S", "body": "B"}


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def settings():
    return RelaySettings(email_timeout=5, attendees_timeout=5, heartbeat_interval=5)


@pytest.fixture
async def broker(settings):
    b = Broker(kinds=settings.work_kinds())
    yield b
    b.shutdown()


@pytest.fixture
def app(settings, broker):
    return create_app(settings, broker=broker)


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


async def next_instruction(sub, timeout: float = 2.0) -> tuple[str, dict]:
    """Wait for the next work event on *sub*, skipping the greeting."""
    while True:
        frame = await asyncio.wait_for(sub.queue.get(), timeout=timeout)
        if not frame or not frame.startswith("event: "):
            continue
        event_line, data_line = frame.strip().split("\n")
        event = event_line[len("event: "):]
        if event != "connection":
            return event, json.loads(data_line[len("data: "):])


# ── POST /send-email ─────────────────────────────────────────────────────────

async def test_send_email_resolved_by_report(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/send-email", data=EMAIL_FORM))

    event, instruction = await next_instruction(sub)
    assert event == "email-instruction"
    assert instruction["to"] == "a@b.com"
    assert instruction["callbackUrl"] == "http://test/email-result"
    assert broker.pending_count == 1

    ack = await client.post(
        "/email-result",
        json={"requestId": instruction["requestId"], "success": True},
    )
    assert ack.status_code == 200
    assert ack.json() == {"success": True}

    resp = await asyncio.wait_for(task, 2)
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["message"] == "Email sent successfully to a@b.com"
    assert data["request_id"] == instruction["requestId"]
    assert data["form_data"] == {}
    assert broker.pending_count == 0


async def test_send_email_success_carries_reported_fields(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/send-email", data=EMAIL_FORM))

    _, instruction = await next_instruction(sub)
    await client.post(
        "/email-result",
        json={"requestId": instruction["requestId"], "success": True, "messageId": "msg-9"},
    )
    resp = await asyncio.wait_for(task, 2)
    assert resp.json()["result"] == {**EMAIL_FORM, "messageId": "msg-9"}


async def test_send_email_accepts_json_body(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/send-email", json=EMAIL_FORM))

    _, instruction = await next_instruction(sub)
    await client.post("/email-result", json={"requestId": instruction["requestId"], "success": True})
    resp = await asyncio.wait_for(task, 2)
    assert resp.json()["success"] is True


async def test_send_email_reported_failure_echoes_form(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/send-email", data=EMAIL_FORM))

    _, instruction = await next_instruction(sub)
    await client.post(
        "/email-result",
        json={"requestId": instruction["requestId"], "success": False, "error": "Send button not found"},
    )
    resp = await asyncio.wait_for(task, 2)
    assert resp.status_code == 502
    data = resp.json()
    assert data["success"] is False
    assert data["error"] == "Send button not found"
    assert data["form_data"] == EMAIL_FORM


async def test_send_email_failure_without_reason_uses_default(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/send-email", data=EMAIL_FORM))

    _, instruction = await next_instruction(sub)
    await client.post("/email-result", json={"requestId": instruction["requestId"], "success": False})
    resp = await asyncio.wait_for(task, 2)
    assert resp.json()["error"] == "Failed to send email"


async def test_send_email_without_subscribers_fails_immediately(client, broker):
    resp = await client.post("/send-email", data=EMAIL_FORM)
    assert resp.status_code == 503
    data = resp.json()
    assert data["error"] == "No connected clients to receive the email instruction"
    assert data["form_data"] == EMAIL_FORM
    assert data["connected"] == 0
    assert broker.pending_count == 0


async def test_send_email_missing_field(client, broker):
    sub = broker.subscribers.subscribe()
    resp = await client.post("/send-email", data={"to": "a@b.com", "subject": "S"})
    assert resp.status_code == 400
    data = resp.json()
    assert data["error"] == "All fields are required"
    assert data["form_data"] == {"to": "a@b.com", "subject": "S"}
    assert broker.pending_count == 0
    # greeting only, nothing broadcast
    assert sub.queue.qsize() == 2


async def test_send_email_non_object_json_is_a_validation_error(client, broker):
    broker.subscribers.subscribe()
    resp = await client.post("/send-email", json=["a@b.com"])
    assert resp.status_code == 400


async def test_send_email_times_out_and_ignores_late_report():
    settings = RelaySettings(email_timeout=0.1)
    broker = Broker(kinds=settings.work_kinds())
    app = create_app(settings, broker=broker)
    sub = broker.subscribers.subscribe()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await asyncio.wait_for(client.post("/send-email", data=EMAIL_FORM), 2)
        assert resp.status_code == 504
        data = resp.json()
        assert data["error"] == "Request timed out. Please try again."
        assert data["form_data"] == EMAIL_FORM

        _, instruction = await next_instruction(sub)
        late = await client.post(
            "/email-result",
            json={"requestId": instruction["requestId"], "success": True},
        )
        assert late.json() == {"success": True}
        assert broker.pending_count == 0
    broker.shutdown()


async def test_parked_request_fails_on_shutdown(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/send-email", data=EMAIL_FORM))
    await next_instruction(sub)

    broker.shutdown()
    resp = await asyncio.wait_for(task, 2)
    assert resp.status_code == 503
    assert resp.json()["error"] == "Server shutting down"


# ── POST /get-event-attendees ────────────────────────────────────────────────

async def test_get_attendees_returns_reported_list(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/get-event-attendees", data={"eventId": "ev-42"}))

    event, instruction = await next_instruction(sub)
    assert event == "get-event-attendees"
    assert instruction["eventId"] == "ev-42"
    assert instruction["callbackUrl"] == "http://test/event-attendees-result"

    attendees = [{"name": "Ann", "email": "ann@x.y"}, {"name": "Bob", "email": "bob@x.y"}]
    await client.post(
        "/event-attendees-result",
        json={"requestId": instruction["requestId"], "success": True, "attendees": attendees, "count": 2},
    )
    resp = await asyncio.wait_for(task, 2)
    assert resp.status_code == 200
    data = resp.json()
    assert data["attendees"] == attendees
    assert data["count"] == 2
    assert data["message"] == "Retrieved 2 attendee(s) for event: ev-42"


async def test_get_attendees_success_carries_event_and_report(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/get-event-attendees", json={"eventId": "ev-7"}))

    _, instruction = await next_instruction(sub)
    await client.post(
        "/event-attendees-result",
        json={"requestId": instruction["requestId"], "success": True, "attendees": ["Ann"], "organizer": "Zoe"},
    )
    result = (await asyncio.wait_for(task, 2)).json()["result"]
    assert result["eventId"] == "ev-7"
    assert result["organizer"] == "Zoe"
    assert result["attendees"] == ["Ann"]


async def test_get_attendees_count_defaults_to_list_length(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/get-event-attendees", json={"eventId": "ev-1"}))

    _, instruction = await next_instruction(sub)
    await client.post(
        "/event-attendees-result",
        json={"requestId": instruction["requestId"], "success": True, "attendees": [{"name": "Ann"}]},
    )
    resp = await asyncio.wait_for(task, 2)
    assert resp.json()["count"] == 1


async def test_get_attendees_requires_event_id(client, broker):
    broker.subscribers.subscribe()
    resp = await client.post("/get-event-attendees", data={})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Event ID is required"


async def test_get_attendees_reported_failure_keeps_event_id(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/get-event-attendees", data={"eventId": "ev-7"}))

    _, instruction = await next_instruction(sub)
    await client.post(
        "/event-attendees-result",
        json={"requestId": instruction["requestId"], "success": False},
    )
    resp = await asyncio.wait_for(task, 2)
    assert resp.status_code == 502
    assert resp.json()["error"] == "Failed to retrieve attendees"
    assert resp.json()["form_data"] == {"eventId": "ev-7"}


# ── Form pages ───────────────────────────────────────────────────────────────

HTML = {"Accept": "text/html,application/xhtml+xml"}


async def test_email_form_page(client, broker):
    broker.subscribers.subscribe()
    resp = await client.get("/")
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert '<form method="post" action="/send-email">' in resp.text
    assert "Connected clients: 1" in resp.text


async def test_attendees_form_page(client):
    resp = await client.get("/event-attendees")
    assert resp.status_code == 200
    assert '<form method="post" action="/get-event-attendees">' in resp.text
    assert 'name="eventId" value=""' in resp.text


async def test_browser_submission_without_subscribers_renders_refilled_form(client):
    form = {**EMAIL_FORM, "subject": '<b>"hi"</b>'}
    resp = await client.post("/send-email", data=form, headers=HTML)
    assert resp.status_code == 503
    assert "text/html" in resp.headers["content-type"]
    assert '<p class="error">' in resp.text
    assert 'value="a@b.com"' in resp.text
    assert "&lt;b&gt;&quot;hi&quot;&lt;/b&gt;" in resp.text
    assert "<b>" not in resp.text


async def test_browser_submission_success_renders_message(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/send-email", data=EMAIL_FORM, headers=HTML))

    _, instruction = await next_instruction(sub)
    await client.post("/email-result", json={"requestId": instruction["requestId"], "success": True})
    resp = await asyncio.wait_for(task, 2)
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert '<p class="success">Email sent successfully to a@b.com</p>' in resp.text
    assert 'name="to" value=""' in resp.text


async def test_browser_attendees_success_renders_table(client, broker):
    sub = broker.subscribers.subscribe()
    task = asyncio.create_task(
        client.post("/get-event-attendees", data={"eventId": "ev-42"}, headers=HTML)
    )

    _, instruction = await next_instruction(sub)
    attendees = [{"name": "Ann", "email": "ann@x.y", "status": "accepted"}]
    await client.post(
        "/event-attendees-result",
        json={"requestId": instruction["requestId"], "success": True, "attendees": attendees},
    )
    resp = await asyncio.wait_for(task, 2)
    assert resp.status_code == 200
    assert "Retrieved 1 attendee(s) for event: ev-42" in resp.text
    assert "<td>Ann</td><td>ann@x.y</td><td>accepted</td>" in resp.text


async def test_browser_attendees_validation_error(client):
    resp = await client.post("/get-event-attendees", data={}, headers=HTML)
    assert resp.status_code == 400
    assert '<p class="error">Event ID is required</p>' in resp.text


async def test_json_stays_default_for_api_clients(client):
    resp = await client.post("/send-email", data=EMAIL_FORM, headers={"Accept": "application/json"})
    assert resp.status_code == 503
    assert resp.headers["content-type"] == "application/json"
    assert resp.json()["form_data"] == EMAIL_FORM


# ── Result callbacks ─────────────────────────────────────────────────────────

@pytest.mark.parametrize("path", ["/email-result", "/event-attendees-result"])
async def test_result_for_unknown_request_is_acknowledged(client, path):
    resp = await client.post(path, json={"requestId": "unknown", "success": True})
    assert resp.status_code == 200
    assert resp.json() == {"success": True}


@pytest.mark.parametrize("body", [b"not json", b"[]", b'{"success": true}', b""])
async def test_malformed_result_is_acknowledged(client, body):
    resp = await client.post(
        "/email-result", content=body, headers={"content-type": "application/json"}
    )
    assert resp.status_code == 200
    assert resp.json() == {"success": True}


# ── GET /events ──────────────────────────────────────────────────────────────

async def test_events_endpoint_headers(app):
    request = SimpleNamespace(app=app, client=None, headers={})
    resp = await events(request)
    assert resp.media_type == "text/event-stream"
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.headers["x-accel-buffering"] == "no"
    await resp.body_iterator.aclose()


async def test_event_stream_greets_then_relays():
    registry = SubscriberRegistry()
    stream = event_stream(registry, heartbeat=5)

    assert await stream.__anext__() == ":\n\n"
    assert (await stream.__anext__()).startswith("event: connection\n")
    assert len(registry) == 1

    registry.broadcast("email-instruction", {"to": "a@b.com"})
    frame = await stream.__anext__()
    assert frame.startswith("event: email-instruction\n")

    await stream.aclose()
    assert len(registry) == 0


async def test_event_stream_sends_heartbeat_when_idle():
    registry = SubscriberRegistry()
    stream = event_stream(registry, heartbeat=0.01)
    await stream.__anext__()
    await stream.__anext__()
    assert await stream.__anext__() == ": heartbeat\n\n"
    await stream.aclose()


async def test_event_stream_ends_when_channel_closed():
    registry = SubscriberRegistry()
    stream = event_stream(registry, heartbeat=5)
    await stream.__anext__()
    await stream.__anext__()

    registry.close_all()
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


# ── Diagnostics ──────────────────────────────────────────────────────────────

async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_status_counts(client, broker):
    broker.subscribers.subscribe()
    broker.subscribers.subscribe()
    task = asyncio.create_task(client.post("/send-email", data=EMAIL_FORM))
    while broker.pending_count == 0:
        await asyncio.sleep(0.01)

    resp = await client.get("/status")
    assert resp.json() == {"connected": 2, "pending": 1}

    broker.shutdown()
    await asyncio.wait_for(task, 2)


async def test_sse_test_page(client):
    resp = await client.get("/test-sse")
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert "new EventSource('/events')" in resp.text


async def test_public_url_overrides_callback_base(broker):
    settings = RelaySettings(public_url="https://relay.example.com")
    app = create_app(settings, broker=broker)
    sub = broker.subscribers.subscribe()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        task = asyncio.create_task(client.post("/send-email", data=EMAIL_FORM))
        _, instruction = await next_instruction(sub)
        assert instruction["callbackUrl"] == "https://relay.example.com/email-result"
        broker.report(instruction["requestId"], True)
        await asyncio.wait_for(task, 2)


# ── Server exit ──────────────────────────────────────────────────────────────

async def test_relay_server_releases_broker_before_draining_connections(app, client, broker):
    registry = broker.subscribers
    stream = event_stream(registry, heartbeat=5)
    await stream.__anext__()
    await stream.__anext__()
    sub = next(iter(registry))
    task = asyncio.create_task(client.post("/send-email", data=EMAIL_FORM))
    await next_instruction(sub)

    server = RelayServer(uvicorn.Config(app, log_config=None), broker=broker)
    with patch("uvicorn.Server.shutdown", new_callable=AsyncMock) as drain:
        await server.shutdown()

    drain.assert_awaited_once()
    assert broker.pending_count == 0
    resp = await asyncio.wait_for(task, 2)
    assert resp.status_code == 503
    assert resp.json()["error"] == "Server shutting down"
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
    assert len(registry) == 0
