"""Relay CLI — run the relay server or talk to a running one."""

from __future__ import annotations

import json
import sys
from typing import Any

import click
import httpx
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

_EVENT_COLOR: dict[str, str] = {
    "connection": "blue",
    "email-instruction": "green",
    "get-event-attendees": "cyan",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _client(url: str, timeout: float | None = 30) -> httpx.Client:
    return httpx.Client(base_url=url.rstrip("/"), timeout=timeout)


def _load_file(path: str) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {msg}")
    sys.exit(code)


def _check(resp: httpx.Response) -> None:
    if resp.is_error:
        _die(f"HTTP {resp.status_code}: {resp.text}")


def _post(obj: dict, path: str, payload: dict) -> httpx.Response:
    """POST a submission and wait, however long the relay parks it."""
    try:
        with _client(obj["url"], timeout=None) as c:
            return c.post(path, json=payload)
    except httpx.ConnectError:
        _die(f"Cannot connect to {obj['url']}")


def _print_submission(resp: httpx.Response, json_output: bool) -> None:
    try:
        data = resp.json()
    except ValueError:
        _die(f"HTTP {resp.status_code}: {resp.text}")

    if json_output:
        click.echo(json.dumps(data, indent=2))
        if not data.get("success"):
            sys.exit(1)
        return

    if not data.get("success"):
        _die(data.get("error") or f"HTTP {resp.status_code}")

    console.print(f"[green]OK[/]  {data.get('message', '')}  [dim]{data.get('request_id', '')}[/]")
    attendees = data.get("attendees")
    if attendees:
        table = Table(box=box.SIMPLE)
        table.add_column("Name", style="cyan")
        table.add_column("Email")
        for a in attendees:
            if isinstance(a, dict):
                table.add_row(a.get("name", ""), a.get("email", ""))
            else:
                table.add_row(str(a), "")
        console.print(table)


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--url", "-u",
    default="http://localhost:3000",
    envvar="RELAY_URL",
    show_default=True,
    help="Relay base URL.",
)
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, url: str, json_output: bool) -> None:
    """Mail relay — bridge HTTP requests to browser-extension agents."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["json_output"] = json_output


# ── relay serve ───────────────────────────────────────────────────────────────


@cli.command("serve")
@click.option("--host", default=None, help="Bind host (default: RELAY_HOST or 127.0.0.1).")
@click.option("--port", type=int, default=None, help="Bind port (default: PORT or 3000).")
@click.option("--json-logs", is_flag=True, help="Log one JSON object per line.")
def serve(host: str | None, port: int | None, json_logs: bool) -> None:
    """Run the relay server."""
    import uvicorn

    from api.server import RelayServer, create_app
    from core.config import RelaySettings
    from core.logging_config import setup_logging

    settings = RelaySettings.from_env()
    if host:
        settings.host = host
    if port:
        settings.port = port
    setup_logging(settings.log_level, json_logs=json_logs)

    app = create_app(settings)
    console.print(f"Relay running at http://{settings.host}:{settings.port}")
    console.print(f"  SSE endpoint   http://{settings.host}:{settings.port}/events")
    console.print(f"  SSE test page  http://{settings.host}:{settings.port}/test-sse")
    console.print(f"  Email form     http://{settings.host}:{settings.port}/")
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        timeout_graceful_shutdown=settings.shutdown_grace,
    )
    RelayServer(config, broker=app.state.broker).run()


# ── relay send ────────────────────────────────────────────────────────────────


@cli.command("send")
@click.option("--to", help="Recipient address.")
@click.option("--subject", help="Subject line.")
@click.option("--body", help="Message body (HTML allowed).")
@click.option("--body-file", type=click.Path(exists=True), help="Read the body from a file.")
@click.option("--file", "message_file", type=click.Path(exists=True),
              help="YAML or JSON file with to/subject/body.")
@click.pass_obj
def send(
    obj: dict,
    to: str | None,
    subject: str | None,
    body: str | None,
    body_file: str | None,
    message_file: str | None,
) -> None:
    """Send an email through a connected agent and wait for the outcome."""
    message: dict[str, Any] = _load_file(message_file) if message_file else {}
    if body_file:
        with open(body_file) as f:
            message["body"] = f.read()
    for key, value in (("to", to), ("subject", subject), ("body", body)):
        if value:
            message[key] = value

    missing = [k for k in ("to", "subject", "body") if not message.get(k)]
    if missing:
        _die(f"Missing {', '.join(missing)}")

    if not obj["json_output"]:
        console.print(f"Sending email to [cyan]{message['to']}[/] ...")
    resp = _post(obj, "/send-email", {k: message[k] for k in ("to", "subject", "body")})
    _print_submission(resp, obj["json_output"])


# ── relay attendees ───────────────────────────────────────────────────────────


@cli.command("attendees")
@click.argument("event_id")
@click.pass_obj
def attendees(obj: dict, event_id: str) -> None:
    """List the attendees of a calendar event via a connected agent."""
    resp = _post(obj, "/get-event-attendees", {"eventId": event_id})
    _print_submission(resp, obj["json_output"])


# ── relay status ──────────────────────────────────────────────────────────────


@cli.command("status")
@click.pass_obj
def status(obj: dict) -> None:
    """Show connected agents and parked requests."""
    try:
        with _client(obj["url"]) as c:
            resp = c.get("/status")
    except httpx.ConnectError:
        _die(f"Cannot connect to {obj['url']}")
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        click.echo(json.dumps(data, indent=2))
        return

    color = "green" if data["connected"] else "red"
    console.print(f"Connected agents: [{color}]{data['connected']}[/]")
    console.print(f"Pending requests: {data['pending']}")


# ── relay listen ──────────────────────────────────────────────────────────────


@cli.command("listen")
@click.pass_obj
def listen(obj: dict) -> None:
    """Subscribe to /events and print every event (Ctrl-C to stop)."""
    url = obj["url"].rstrip("/") + "/events"
    event = "message"
    try:
        with httpx.Client(timeout=None) as c:
            with c.stream("GET", url) as resp:
                resp.raise_for_status()
                for line in resp.iter_lines():
                    if line.startswith("event: "):
                        event = line[7:]
                        continue
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError:
                        continue
                    if obj["json_output"]:
                        click.echo(json.dumps({"event": event, "data": data}))
                    else:
                        color = _EVENT_COLOR.get(event, "white")
                        console.print(f"[{color}][{event}][/] {json.dumps(data)}")
                    event = "message"
    except httpx.ConnectError:
        _die(f"Cannot connect to {obj['url']}")
    except KeyboardInterrupt:
        pass
