"""Append-only lifecycle event log and notifiers.

Every state transition, retry, drift finding and withdrawal is recorded as
an immutable LifecycleEvent. The log answers:
- "How did request X get to its current state?"
- "Which accounts drifted, and when?"
- "Which failures need an operator?"

Events are never updated or deleted. When the log is backed by a file,
each event is appended as one JSON line.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .lifecycle import RequestState

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of lifecycle events."""

    TRANSITION = "Transition"
    RETRYING = "Retrying"
    WITHDRAWN = "Withdrawn"
    DRIFT_DETECTED = "DriftDetected"
    DRIFT_REMEDIATED = "DriftRemediated"
    ORPHAN_DETECTED = "OrphanDetected"
    ACCOUNT_MOVED = "AccountMoved"


# Event kinds that signal an operator needs to look at something
ATTENTION_KINDS: frozenset[EventKind] = frozenset(
    {EventKind.DRIFT_DETECTED, EventKind.ORPHAN_DETECTED}
)


@dataclass(frozen=True)
class LifecycleEvent:
    """Immutable record of something that happened to a request or account."""

    sequence: int
    request_id: str
    kind: EventKind
    from_state: RequestState | None = None
    to_state: RequestState | None = None
    detail: str = ""
    account_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "sequence": self.sequence,
            "request_id": self.request_id,
            "kind": self.kind.value,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value if self.to_state else None,
            "detail": self.detail,
            "account_id": self.account_id,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LifecycleEvent:
        from_state = data.get("from_state")
        to_state = data.get("to_state")
        return cls(
            sequence=data["sequence"],
            request_id=data["request_id"],
            kind=EventKind(data["kind"]),
            from_state=RequestState(from_state) if from_state else None,
            to_state=RequestState(to_state) if to_state else None,
            detail=data.get("detail", ""),
            account_id=data.get("account_id"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


Subscriber = Callable[[LifecycleEvent], None]


class EventLog:
    """Append-only event stream with synchronous subscribers.

    Subscriber failures are logged and do not affect the append or the
    other subscribers; the event is already recorded when they run.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._events: list[LifecycleEvent] = []
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        if path is not None and path.exists():
            self._load(path)

    def _load(self, path: Path) -> None:
        with path.open(encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    self._events.append(LifecycleEvent.from_dict(json.loads(line)))
        logger.info("Loaded event log", extra={"path": str(path), "events": len(self._events)})

    def subscribe(self, subscriber: Subscriber) -> None:
        """Register a callable invoked with every appended event."""
        self._subscribers.append(subscriber)

    def append(
        self,
        request_id: str,
        kind: EventKind,
        from_state: RequestState | None = None,
        to_state: RequestState | None = None,
        detail: str = "",
        account_id: str | None = None,
    ) -> LifecycleEvent:
        """Record a new event and notify subscribers."""
        with self._lock:
            event = LifecycleEvent(
                sequence=len(self._events) + 1,
                request_id=request_id,
                kind=kind,
                from_state=from_state,
                to_state=to_state,
                detail=detail,
                account_id=account_id,
            )
            self._events.append(event)
            if self._path is not None:
                with self._path.open("a", encoding="utf-8") as fh:
                    fh.write(json.dumps(event.to_dict()) + "\n")

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    extra={"sequence": event.sequence, "kind": event.kind.value},
                )
        return event

    def events(
        self,
        request_id: str | None = None,
        kind: EventKind | None = None,
        account_id: str | None = None,
    ) -> list[LifecycleEvent]:
        """Return recorded events in append order, optionally filtered."""
        with self._lock:
            snapshot = list(self._events)
        return [
            e
            for e in snapshot
            if (request_id is None or e.request_id == request_id)
            and (kind is None or e.kind == kind)
            and (account_id is None or e.account_id == account_id)
        ]

    def __len__(self) -> int:
        return len(self._events)


class LoggingNotifier:
    """Writes every lifecycle event to the structured logger.

    Failed requests and drift or orphan findings are logged above INFO so
    that log-based alerting can page an operator.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def __call__(self, event: LifecycleEvent) -> None:
        level = logging.INFO
        if event.to_state == RequestState.FAILED:
            level = logging.ERROR
        elif event.kind in ATTENTION_KINDS:
            level = logging.WARNING

        self._log.log(
            level,
            f"Lifecycle event: {event.kind.value}",
            extra={
                "event": event.to_dict(),
                # Flatten key fields for easier querying
                "request_id": event.request_id,
                "account_id": event.account_id,
                "from_state": event.from_state.value if event.from_state else None,
                "to_state": event.to_state.value if event.to_state else None,
            },
        )
