"""Server-rendered HTML for people using the relay from a browser.

Every value that came from a request or an agent goes through ``escape``.
"""

from html import escape
from typing import Any

from api.models import SubmissionResponse
from core.work import GET_ATTENDEES, SEND_EMAIL

EMAIL_TITLE = "Outlook Email Assistant"
ATTENDEES_TITLE = "Event Attendees Retriever"

_LAYOUT = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{title}</title>
  <style>
    body {{ font-family: sans-serif; max-width: 42em; margin: 2em auto; }}
    label {{ display: block; margin-top: 1em; }}
    input, textarea {{ width: 100%; }}
    .success {{ color: green; }}
    .error {{ color: red; }}
    table {{ border-collapse: collapse; margin-top: 1em; }}
    td, th {{ border: 1px solid #ccc; padding: .3em .6em; text-align: left; }}
  </style>
</head>
<body>
  <nav><a href="/">Send email</a> | <a href="/event-attendees">Event attendees</a> | <a href="/test-sse">SSE test</a></nav>
  <h1>{title}</h1>
  <p id="connected">Connected clients: {connected}</p>
{notice}
{content}
</body>
</html>
"""


def _notice(result: SubmissionResponse | None) -> str:
    if result is None:
        return ""
    if result.success:
        return f'  <p class="success">{escape(result.message or "")}</p>'
    return f'  <p class="error">{escape(result.error or "")}</p>'


def _value(form_data: dict[str, Any], name: str) -> str:
    return escape(str(form_data.get(name) or ""))


def _attendee_cells(attendee: Any) -> str:
    if isinstance(attendee, dict):
        cells = [attendee.get("name"), attendee.get("email"), attendee.get("status") or attendee.get("response")]
    else:
        cells = [attendee, None, None]
    return "".join(f"<td>{escape(str(c))}</td>" if c is not None else "<td></td>" for c in cells)


def email_page(connected: int, result: SubmissionResponse | None = None) -> str:
    form_data = result.form_data if result else {}
    content = f"""  <form method="post" action="/send-email">
    <label>To <input type="email" name="to" value="{_value(form_data, 'to')}" required></label>
    <label>Subject <input type="text" name="subject" value="{_value(form_data, 'subject')}" required></label>
    <label>Body <textarea name="body" rows="8" required>{_value(form_data, 'body')}</textarea></label>
    <button type="submit">Send</button>
  </form>"""
    return _LAYOUT.format(title=EMAIL_TITLE, connected=connected, notice=_notice(result), content=content)


def attendees_page(connected: int, result: SubmissionResponse | None = None) -> str:
    form_data = result.form_data if result else {}
    content = f"""  <form method="post" action="/get-event-attendees">
    <label>Event ID <input type="text" name="eventId" value="{_value(form_data, 'eventId')}" required></label>
    <button type="submit">Get attendees</button>
  </form>"""
    if result is not None and result.success and result.attendees:
        rows = "\n".join(f"      <tr>{_attendee_cells(a)}</tr>" for a in result.attendees)
        content += f"""
  <table>
    <thead><tr><th>Name</th><th>Email</th><th>Response</th></tr></thead>
    <tbody>
{rows}
    </tbody>
  </table>"""
    return _LAYOUT.format(title=ATTENDEES_TITLE, connected=connected, notice=_notice(result), content=content)


# work kind -> page its submissions are rendered on
PAGES = {SEND_EMAIL: email_page, GET_ATTENDEES: attendees_page}


TEST_PAGE = """<!DOCTYPE html>
<html>
<head><title>SSE Test</title></head>
<body>
  <h1>SSE Test Client</h1>
  <div id="status">Connecting...</div>
  <div id="events"></div>
  <script>
    const eventsDiv = document.getElementById('events');
    const statusDiv = document.getElementById('status');
    const show = (text, color) => {
      const div = document.createElement('div');
      div.textContent = text;
      div.style.color = color;
      eventsDiv.appendChild(div);
    };
    const source = new EventSource('/events');
    source.onopen = () => { statusDiv.textContent = 'Connected to SSE'; statusDiv.style.color = 'green'; };
    source.onerror = () => { statusDiv.textContent = 'Error connecting to SSE'; statusDiv.style.color = 'red'; };
    source.addEventListener('connection', e => show('Connection event: ' + JSON.parse(e.data).message, 'blue'));
    source.addEventListener('email-instruction', e => show('Email instruction received: To: ' + JSON.parse(e.data).to, 'green'));
    source.addEventListener('get-event-attendees', e => show('Attendees request received: ' + JSON.parse(e.data).eventId, 'green'));
  </script>
</body>
</html>
"""
