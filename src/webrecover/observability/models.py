"""Data models for the recovery audit trail.

Every decision, generator invocation, sandboxed execution, cache action and
infrastructure error is captured as an AuditEvent and appended to a JSONL
file, one event per line.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AuditEventType(str, Enum):
    """Types of audit events."""

    DECISION = "decision"
    INVOCATION = "invocation"
    EXECUTION = "execution"
    ERROR = "error"
    CACHE = "cache"


@dataclass
class AuditEvent:
    """One entry in the append-only audit log.

    Attributes:
        event_type: What kind of event this is.
        session_id: Generator client session that produced the event.
        duration_ms: Time spent in the audited operation.
        data: Event payload (decision, solution summary, execution result).
        timestamp: When the event occurred.
    """

    event_type: AuditEventType
    session_id: str
    duration_ms: float = 0.0
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def succeeded(self) -> bool:
        """True for execution events whose payload reports success."""
        return self.event_type == AuditEventType.EXECUTION and bool(self.data.get("success"))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
            "event_type": self.event_type.value,
            "duration_ms": self.duration_ms,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        """Create AuditEvent from dictionary."""
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"])
            if isinstance(data["timestamp"], str)
            else data["timestamp"],
            session_id=data.get("session_id", ""),
            event_type=AuditEventType(data["event_type"]),
            duration_ms=float(data.get("duration_ms", 0.0)),
            data=data.get("data") or {},
        )

    def to_jsonl(self) -> str:
        """Convert event to JSONL format."""
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    @classmethod
    def from_jsonl(cls, line: str) -> AuditEvent:
        """Parse event from JSONL line."""
        return cls.from_dict(json.loads(line))

    def __str__(self) -> str:
        """String representation for display."""
        return f"{self.timestamp.strftime('%H:%M:%S')} [{self.session_id[-8:]}] {self.event_type.value}"


@dataclass
class AuditFilter:
    """Filter criteria for querying audit events.

    Attributes:
        event_types: Filter by specific event types.
        session_id: Filter by session ID.
        since: Only events at or after this time.
        limit: Maximum number of events to return (newest first).
    """

    event_types: list[AuditEventType] | None = None
    session_id: str | None = None
    since: datetime | None = None
    limit: int = 100

    def matches(self, event: AuditEvent) -> bool:
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.session_id and event.session_id != self.session_id:
            return False
        if self.since and event.timestamp < self.since:
            return False
        return True
