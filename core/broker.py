"""Broker — bridges HTTP callers to SSE agents by correlation id.

A submission is broadcast to every connected agent and parked as a
``PendingRequest``. Whichever of report, timeout or shutdown first pops the
correlation id out of ``_pending`` resolves it; the others find nothing and
do nothing. Everything runs on one event loop, so the registries need no
locking.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any

from core.errors import NoSubscribers, UnknownWorkKind, ValidationFailed
from core.logging_config import bound_request_id
from core.state import Outcome, PendingRequest, RequestStatus
from core.subscribers import SubscriberRegistry
from core.work import WorkKind, default_kinds

logger = logging.getLogger(__name__)


class Broker:
    def __init__(
        self,
        kinds: dict[str, WorkKind] | None = None,
        subscribers: SubscriberRegistry | None = None,
    ):
        self.kinds = kinds if kinds is not None else default_kinds()
        self.subscribers = subscribers if subscribers is not None else SubscriberRegistry()
        self._pending: dict[str, PendingRequest] = {}
        self._seq = itertools.count(1)

    # ── Introspection ────────────────────────────────────────────────────────

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_pending(self, request_id: str) -> PendingRequest | None:
        return self._pending.get(request_id)

    def kind(self, name: str) -> WorkKind:
        try:
            return self.kinds[name]
        except KeyError:
            raise UnknownWorkKind(name) from None

    # ── Submission ───────────────────────────────────────────────────────────

    def new_request_id(self, kind: WorkKind) -> str:
        """``<prefix>_<epoch millis>_<seq>``; the sequence keeps ids issued in
        the same millisecond apart."""
        while True:
            request_id = f"{kind.id_prefix}_{int(time.time() * 1000)}_{next(self._seq)}"
            if request_id not in self._pending:
                return request_id

    def submit(self, kind_name: str, fields: dict[str, Any], callback_base: str) -> PendingRequest:
        """Validate, broadcast and park one work item.

        Raises ValidationFailed or NoSubscribers; in both cases nothing is
        left registered.
        """
        kind = self.kind(kind_name)
        if kind.missing(fields):
            raise ValidationFailed(kind.validation_error, kind=kind.name, fields=fields)

        payload = kind.clean(fields)
        request_id = self.new_request_id(kind)
        instruction = {
            **payload,
            "requestId": request_id,
            "callbackUrl": callback_base.rstrip("/") + kind.callback_path,
        }
        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            request_id=request_id,
            kind=kind.name,
            payload=payload,
            instruction=instruction,
            future=loop.create_future(),
        )

        with bound_request_id(request_id):
            # Registered before the broadcast so an agent that answers
            # immediately still finds its request.
            self._pending[request_id] = pending
            delivered = self.subscribers.broadcast(kind.event, instruction)
            if delivered == 0:
                self._pending.pop(request_id, None)
                logger.warning("No connected clients for %s", kind.name)
                raise NoSubscribers(kind.no_subscribers_error, kind=kind.name, fields=fields)

            pending.timer = loop.call_later(kind.timeout, self._expire, request_id)
            logger.info(
                "Parked %s for %d client(s), timeout %.0fs",
                kind.name, delivered, kind.timeout,
                extra={"kind": kind.name},
            )
        return pending

    # ── Resolution ───────────────────────────────────────────────────────────

    def report(
        self,
        request_id: str,
        success: bool,
        data: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        """Resolve *request_id* with an agent's result.

        Returns False when the id is unknown or already consumed; that is
        not an error for the reporter.
        """
        with bound_request_id(request_id):
            pending = self._pending.pop(request_id, None)
            if pending is None:
                logger.info("Result for unknown or already resolved request ignored")
                return False
            pending.resolve(Outcome(
                status=RequestStatus.REPORTED,
                success=success,
                error=None if success else error,
                data=dict(data or {}),
            ))
            logger.info(
                "Resolved %s by report (success=%s) after %.2fs",
                pending.kind, success, pending.age_seconds,
            )
            return True

    def _expire(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        with bound_request_id(request_id):
            pending.resolve(Outcome(status=RequestStatus.TIMED_OUT, error="Request timed out"))
            logger.warning("Resolved %s by timeout", pending.kind)

    def shutdown(self) -> None:
        """Fail every parked request and close every agent channel."""
        for request_id in list(self._pending):
            pending = self._pending.pop(request_id, None)
            if pending is not None:
                pending.resolve(Outcome(status=RequestStatus.SHUTDOWN, error="Server shutting down"))
        self.subscribers.close_all()
        logger.info("Broker shut down")
