"""API request and response models."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# Agents speak camelCase on the wire.
class ResultReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    request_id: str = Field(alias="requestId", min_length=1)
    success: bool = False
    error: str | None = None


class EmailResult(ResultReport):
    pass


class AttendeesResult(ResultReport):
    attendees: list[Any] | None = None
    count: int | None = None


class Ack(BaseModel):
    success: bool = True


class SubmissionResponse(BaseModel):
    """Final state of a parked submission, returned to the original caller."""

    success: bool
    message: str | None = None
    error: str | None = None
    request_id: str | None = None
    form_data: dict[str, Any] = {}
    result: dict[str, Any] = {}         # submitted fields plus whatever the agent reported
    connected: int = 0
    attendees: list[Any] | None = None
    count: int | None = None


class StatusResponse(BaseModel):
    connected: int
    pending: int
