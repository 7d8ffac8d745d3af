"""FastAPI service layer for the relay."""

import asyncio
import logging
import socket
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse

from api.models import Ack, AttendeesResult, EmailResult, ResultReport, StatusResponse, SubmissionResponse
from api.pages import PAGES, TEST_PAGE, attendees_page, email_page
from core.broker import Broker
from core.config import RelaySettings
from core.errors import NoSubscribers, RelayError, ValidationFailed
from core.state import Outcome, PendingRequest, RequestStatus
from core.subscribers import SubscriberRegistry
from core.work import GET_ATTENDEES, SEND_EMAIL

logger = logging.getLogger(__name__)

router = APIRouter()

_SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}

_TIMEOUT_ERROR = "Request timed out. Please try again."

_ERROR_STATUS = {ValidationFailed: 400, NoSubscribers: 503}

# outcome status -> HTTP status of the parked response when it did not succeed
_FAILURE_STATUS = {
    RequestStatus.REPORTED: 502,
    RequestStatus.TIMED_OUT: 504,
    RequestStatus.SHUTDOWN: 503,
}


def _broker(request: Request) -> Broker:
    return request.app.state.broker


def _settings(request: Request) -> RelaySettings:
    return request.app.state.settings


def _callback_base(request: Request) -> str:
    return _settings(request).public_url or str(request.base_url)


async def _read_fields(request: Request) -> dict[str, Any]:
    """Submitted fields from either a web form or a JSON object body."""
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def _wants_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "")


def _reply(request: Request, kind_name: str, status_code: int, body: SubmissionResponse) -> Response:
    """Browsers get the form page back with the outcome; everyone else gets JSON."""
    if _wants_html(request):
        return HTMLResponse(PAGES[kind_name](body.connected, body), status_code=status_code)
    return JSONResponse(body.model_dump(), status_code=status_code)


# ── SSE ───────────────────────────────────────────────────────────────────────

async def event_stream(registry: SubscriberRegistry, heartbeat: float):
    """Register an agent channel and relay everything written to it.

    Sends ``: heartbeat`` when idle. The channel is unregistered when the
    client goes away (generator closed or cancelled) or the broker closes it.
    """
    sub = registry.subscribe()
    try:
        while True:
            try:
                text = await asyncio.wait_for(sub.queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                if sub.closed:
                    return
                yield ": heartbeat\n\n"
                continue
            if text is None:
                return
            yield text
    finally:
        registry.unsubscribe(sub)


@router.get("/events")
async def events(request: Request):
    """Long-lived SSE channel for browser-extension agents."""
    client = request.client.host if request.client else "?"
    logger.info("SSE connection attempt from %s (%s)", client, request.headers.get("user-agent", "-"))
    return StreamingResponse(
        event_stream(_broker(request).subscribers, _settings(request).heartbeat_interval),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


# ── Form pages ────────────────────────────────────────────────────────────────

@router.get("/", response_class=HTMLResponse)
async def email_form(request: Request):
    return email_page(len(_broker(request).subscribers))


@router.get("/event-attendees", response_class=HTMLResponse)
async def attendees_form(request: Request):
    return attendees_page(len(_broker(request).subscribers))


# ── Parked submissions ────────────────────────────────────────────────────────

async def _park(request: Request, kind_name: str) -> Response:
    broker = _broker(request)
    fields = await _read_fields(request)
    try:
        pending = broker.submit(kind_name, fields, _callback_base(request))
    except RelayError as e:
        return _reply(request, kind_name, _ERROR_STATUS.get(type(e), 500), SubmissionResponse(
            success=False,
            error=e.message,
            form_data=e.fields,
            connected=len(broker.subscribers),
        ))

    outcome = await pending.wait()
    status_code, body = _render(broker, pending, outcome)
    return _reply(request, kind_name, status_code, body)


def _render(broker: Broker, pending: PendingRequest, outcome: Outcome) -> tuple[int, SubmissionResponse]:
    """Turn a resolved request into the status and body its caller was waiting for."""
    kind = broker.kind(pending.kind)
    connected = len(broker.subscribers)

    if outcome.status == RequestStatus.REPORTED and outcome.success:
        body = SubmissionResponse(
            success=True,
            request_id=pending.request_id,
            result={**pending.payload, **outcome.data},
            connected=connected,
        )
        if kind.name == GET_ATTENDEES:
            attendees = outcome.data.get("attendees") or []
            count = outcome.data.get("count")
            body.count = count if count is not None else len(attendees)
            body.attendees = attendees
            body.message = f"Retrieved {body.count} attendee(s) for event: {pending.payload['eventId']}"
        else:
            body.message = f"Email sent successfully to {pending.payload['to']}"
        return 200, body

    if outcome.status == RequestStatus.TIMED_OUT:
        error = _TIMEOUT_ERROR
    else:
        error = outcome.error or kind.failure_error
    return _FAILURE_STATUS[outcome.status], SubmissionResponse(
        success=False,
        error=error,
        request_id=pending.request_id,
        form_data=pending.payload,
        connected=connected,
    )


@router.post("/send-email", response_model=SubmissionResponse)
async def send_email(request: Request):
    """Broadcast an email instruction and wait for an agent to report back."""
    return await _park(request, SEND_EMAIL)


@router.post("/get-event-attendees", response_model=SubmissionResponse)
async def get_event_attendees(request: Request):
    """Ask agents for a calendar event's attendees and wait for the answer."""
    return await _park(request, GET_ATTENDEES)


# ── Agent callbacks ───────────────────────────────────────────────────────────

async def _accept_report(request: Request, model: type[ResultReport]) -> Ack:
    """Hand a result to the broker. The reporter always gets an ack."""
    try:
        report = model.model_validate(await request.json())
    except ValueError as e:
        logger.warning("Malformed result ignored: %s", e)
        return Ack()
    data = report.model_dump(exclude={"request_id", "success", "error"}, exclude_none=True)
    logger.info("Received result for request %s (success=%s)", report.request_id, report.success)
    _broker(request).report(report.request_id, report.success, data=data, error=report.error)
    return Ack()


@router.post("/email-result", response_model=Ack)
async def email_result(request: Request):
    return await _accept_report(request, EmailResult)


@router.post("/event-attendees-result", response_model=Ack)
async def event_attendees_result(request: Request):
    return await _accept_report(request, AttendeesResult)


# ── Diagnostics ───────────────────────────────────────────────────────────────

@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/status", response_model=StatusResponse)
async def status(request: Request):
    broker = _broker(request)
    return StatusResponse(connected=len(broker.subscribers), pending=broker.pending_count)


@router.get("/test-sse", response_class=HTMLResponse)
async def test_sse():
    """Browser page that subscribes to /events and prints what arrives."""
    return TEST_PAGE


# ── App factory ───────────────────────────────────────────────────────────────

def create_app(settings: RelaySettings | None = None, broker: Broker | None = None) -> FastAPI:
    settings = settings or RelaySettings.from_env()
    broker = broker or Broker(
        kinds=settings.work_kinds(),
        subscribers=SubscriberRegistry(queue_size=settings.queue_size),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Relay ready; SSE endpoint at /events")
        yield
        broker.shutdown()

    app = FastAPI(
        title="Mail Relay",
        description="Bridges HTTP requests to browser-extension agents over SSE.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.broker = broker
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


class RelayServer(uvicorn.Server):
    """uvicorn server that releases the broker as soon as it starts to exit.

    uvicorn waits for open connections before it runs the lifespan exit, and
    an ``/events`` stream only ends once its channel is closed. Parked callers
    get their 503 and agent streams end here, inside the grace period.
    """

    def __init__(self, config: uvicorn.Config, broker: Broker):
        super().__init__(config)
        self.broker = broker

    async def shutdown(self, sockets: list[socket.socket] | None = None) -> None:
        logger.info("Stopping: releasing %d pending request(s)", self.broker.pending_count)
        self.broker.shutdown()
        await super().shutdown(sockets=sockets)


app = create_app()
