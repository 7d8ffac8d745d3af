"""Pending request state machine types."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RequestStatus(str, Enum):
    PENDING = "pending"
    REPORTED = "reported"
    TIMED_OUT = "timed_out"
    SHUTDOWN = "shutdown"


class Outcome(BaseModel):
    """How a pending request was finally resolved."""

    status: RequestStatus
    success: bool = False
    error: str | None = None
    data: dict[str, Any] = {}


class PendingRequest(BaseModel):
    """One broadcast work item waiting for an agent to report back.

    ``future`` stands in for the parked HTTP response: the submitting
    handler awaits it, and exactly one of report / timeout / shutdown
    sets its result.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    request_id: str
    kind: str
    payload: dict[str, Any]
    instruction: dict[str, Any]
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: RequestStatus = RequestStatus.PENDING
    future: asyncio.Future = Field(exclude=True)
    timer: asyncio.TimerHandle | None = Field(default=None, exclude=True)

    @property
    def age_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.created_at).total_seconds()

    def resolve(self, outcome: Outcome) -> None:
        """Finalize the parked response. Callers must have already removed
        this request from the broker's registry."""
        self.status = outcome.status
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        if not self.future.done():
            self.future.set_result(outcome)

    async def wait(self) -> Outcome:
        return await asyncio.shield(self.future)
