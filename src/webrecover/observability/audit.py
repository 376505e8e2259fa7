"""Append-only audit log for generator activity.

Events are kept in a bounded in-memory window for statistics and appended
to a JSONL file when a path is configured. A retention trim drops events
older than the configured number of days from both.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .models import AuditEvent, AuditEventType, AuditFilter

logger = logging.getLogger(__name__)


class AuditLog:
    """JSONL-backed audit trail.

    Attributes:
        path: JSONL file events are appended to, or None for memory only.
        enabled: When False, log() still returns the event but records nothing.
        retention_days: Age after which trim() discards events.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        enabled: bool = True,
        retention_days: int = 30,
        max_memory_events: int = 10000,
    ):
        self.path = Path(path) if path else None
        self.enabled = enabled
        self.retention_days = retention_days
        self._events: deque[AuditEvent] = deque(maxlen=max_memory_events)
        self._lock = threading.Lock()

    def log(
        self,
        event_type: AuditEventType | str,
        session_id: str,
        duration_ms: float = 0.0,
        data: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Record an event.

        Args:
            event_type: Type of event.
            session_id: Session the event belongs to.
            duration_ms: Duration of the audited operation.
            data: Event payload.

        Returns:
            The recorded event.
        """
        if isinstance(event_type, str):
            event_type = AuditEventType(event_type)

        event = AuditEvent(
            event_type=event_type,
            session_id=session_id,
            duration_ms=duration_ms,
            data=data or {},
        )
        if not self.enabled:
            return event

        with self._lock:
            self._events.append(event)
            if self.path is not None:
                self._append(self.path, event)
        return event

    def _append(self, path: Path, event: AuditEvent) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(event.to_jsonl() + "\n")
        except OSError as e:
            logger.warning(f"Failed to write audit log {path}: {e}")

    def events(self, filter_: AuditFilter | None = None) -> list[AuditEvent]:
        """Query in-memory events, newest first."""
        filter_ = filter_ or AuditFilter()
        with self._lock:
            snapshot = list(self._events)
        matching = [e for e in reversed(snapshot) if filter_.matches(e)]
        return matching[: filter_.limit]

    def read_file(self) -> list[AuditEvent]:
        """Read every parseable event from the JSONL file."""
        if self.path is None or not self.path.exists():
            return []

        events = []
        with open(self.path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(AuditEvent.from_jsonl(line))
                except (ValueError, KeyError) as e:
                    logger.debug(f"Skipping malformed audit line: {e}")
        return events

    def load(self) -> int:
        """Replace in-memory events with those read from the file.

        Returns:
            Number of events loaded.
        """
        events = self.read_file()
        with self._lock:
            self._events = deque(events, maxlen=self._events.maxlen)
            return len(self._events)

    def trim(self, now: datetime | None = None) -> int:
        """Drop events older than the retention window.

        The JSONL file is filtered into a temporary file without holding the
        lock, so log() is never blocked by the rewrite. Lines appended while
        the rewrite runs are carried over before the temporary file replaces
        the original.

        Returns:
            Number of in-memory events removed.
        """
        cutoff = (now or datetime.now()) - timedelta(days=self.retention_days)

        with self._lock:
            before = len(self._events)
            kept = [e for e in self._events if e.timestamp > cutoff]
            self._events = deque(kept, maxlen=self._events.maxlen)
            removed = before - len(kept)

        if self.path is not None and self.path.exists():
            try:
                self._rewrite_file(self.path, cutoff)
            except OSError as e:
                logger.warning(f"Failed to trim audit log {self.path}: {e}")

        if removed:
            logger.debug(f"Trimmed {removed} audit events older than {self.retention_days} days")
        return removed

    def _rewrite_file(self, path: Path, cutoff: datetime) -> None:
        with open(path, "rb") as f:
            snapshot = f.read()
        # Only whole lines; a partial trailing line is carried over below
        offset = snapshot.rfind(b"\n") + 1
        retained = self._retained_lines(snapshot[:offset].decode(), cutoff)

        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w") as f:
            f.writelines(retained)

        with self._lock:
            with open(path, "rb") as src:
                src.seek(offset)
                appended = src.read()
            with open(tmp_path, "ab") as f:
                f.write(appended)
            os.replace(tmp_path, path)

    def _retained_lines(self, text: str, cutoff: datetime) -> list[str]:
        retained = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                event = AuditEvent.from_jsonl(line)
            except (ValueError, KeyError) as e:
                logger.debug(f"Dropping malformed audit line: {e}")
                continue
            if event.timestamp > cutoff:
                retained.append(line + "\n")
        return retained

    def clear(self) -> None:
        """Forget in-memory events. The file is left untouched."""
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        return len(self._events)

    def statistics(self, days: int = 7) -> dict[str, Any]:
        """Summarize recorded events.

        Returns:
            Totals by type, mean duration, execution success rate and a
            per-day trend for the last `days` days.
        """
        with self._lock:
            events = list(self._events)

        by_type: dict[str, int] = {}
        total_duration = 0.0
        executions = 0
        successes = 0

        for event in events:
            by_type[event.event_type.value] = by_type.get(event.event_type.value, 0) + 1
            total_duration += event.duration_ms
            if event.event_type == AuditEventType.EXECUTION:
                executions += 1
                if event.succeeded:
                    successes += 1

        today = datetime.now().date()
        trends = []
        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            day_events = [e for e in events if e.timestamp.date() == day]
            trends.append(
                {
                    "date": day.isoformat(),
                    "events": len(day_events),
                    "successes": sum(1 for e in day_events if e.succeeded),
                }
            )

        return {
            "total_events": len(events),
            "events_by_type": by_type,
            "average_response_time_ms": total_duration / len(events) if events else 0.0,
            "success_rate": successes / executions if executions else 0.0,
            "recent_trends": trends,
        }
