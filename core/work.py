"""Work kinds the relay can broadcast to connected agents."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class WorkKind:
    """Static description of one kind of brokered work.

    ``event`` is the SSE event name agents listen for; ``callback_path`` is
    where they POST the outcome; ``id_prefix`` starts every correlation id
    issued for this kind.
    """
    name: str
    event: str
    id_prefix: str
    callback_path: str
    required: tuple[str, ...]
    timeout: float
    validation_error: str
    no_subscribers_error: str
    failure_error: str

    def missing(self, fields: dict) -> list[str]:
        """Required fields that are absent or blank."""
        return [
            name for name in self.required
            if not str(fields.get(name) or "").strip()
        ]

    def clean(self, fields: dict) -> dict:
        """Keep only the fields agents understand for this kind."""
        return {k: v for k, v in fields.items() if k in self.required}


SEND_EMAIL = "send-email"
GET_ATTENDEES = "get-attendees"


def default_kinds(email_timeout: float = 300.0, attendees_timeout: float = 30.0) -> dict[str, WorkKind]:
    return {
        SEND_EMAIL: WorkKind(
            name=SEND_EMAIL,
            event="email-instruction",
            id_prefix="email",
            callback_path="/email-result",
            required=("to", "subject", "body"),
            timeout=email_timeout,
            validation_error="All fields are required",
            no_subscribers_error="No connected clients to receive the email instruction",
            failure_error="Failed to send email",
        ),
        GET_ATTENDEES: WorkKind(
            name=GET_ATTENDEES,
            event="get-event-attendees",
            id_prefix="req",
            callback_path="/event-attendees-result",
            required=("eventId",),
            timeout=attendees_timeout,
            validation_error="Event ID is required",
            no_subscribers_error="No connected clients to process the request",
            failure_error="Failed to retrieve attendees",
        ),
    }
