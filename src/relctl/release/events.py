"""Append-only release event log."""

import json
import os
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any

from relctl.core.exceptions import StateError
from relctl.core.logging import StructuredLogger
from relctl.release.models import EventKind, ReleaseEvent, ReleaseStatus, utcnow

logger = StructuredLogger(__name__)


class EventLog:
    """Record every release state transition for audit and crash recovery.

    Entries are JSON lines appended to ``events.jsonl`` and fsynced before
    ``append`` returns, so a transition is durable before the engine commits
    it to the release record.
    """

    FILENAME = "events.jsonl"

    def __init__(self, log_dir: str | Path):
        """Initialize event log.

        Args:
            log_dir: Directory holding the log file
        """
        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._log_dir / self.FILENAME
        self._lock = threading.Lock()
        self._sequence = self._last_sequence()

    @property
    def path(self) -> Path:
        return self._path

    def _last_sequence(self) -> int:
        last = 0
        for event in self._iter_events():
            last = max(last, event.sequence)
        return last

    def _iter_events(self):
        if not self._path.exists():
            return

        with open(self._path) as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield ReleaseEvent.from_dict(json.loads(line))
                except (ValueError, KeyError) as e:
                    # A torn final line from a crash mid-write is expected
                    logger.warning(f"Skipping unreadable event at line {line_no}: {e}")

    def append(self, event: ReleaseEvent) -> ReleaseEvent:
        """Durably append an event and return it with its sequence number."""
        with self._lock:
            self._sequence += 1
            event.sequence = self._sequence
            line = json.dumps(event.to_dict(), default=str)

            try:
                with open(self._path, "a") as f:
                    f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                self._sequence -= 1
                raise StateError(
                    f"Failed to append event: {e}",
                    details={"release_id": event.release_id},
                )

        logger.debug(
            "Recorded event",
            release=event.release_id,
            kind=event.kind.value,
            to_state=event.to_state.value if event.to_state else None,
            marker=event.marker,
        )
        return event

    def record_transition(
        self,
        release_id: str,
        target_id: str,
        from_state: ReleaseStatus,
        to_state: ReleaseStatus,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> ReleaseEvent:
        return self.append(
            ReleaseEvent(
                release_id=release_id,
                target_id=target_id,
                kind=EventKind.TRANSITION,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                details=details or {},
            )
        )

    def record_marker(
        self,
        release_id: str,
        target_id: str,
        marker: str,
        details: dict[str, Any] | None = None,
    ) -> ReleaseEvent:
        return self.append(
            ReleaseEvent(
                release_id=release_id,
                target_id=target_id,
                kind=EventKind.MARKER,
                marker=marker,
                details=details or {},
            )
        )

    def events(
        self,
        release_id: str | None = None,
        target_id: str | None = None,
    ) -> list[ReleaseEvent]:
        """Read events in append order, optionally filtered."""
        result: list[ReleaseEvent] = []
        for event in self._iter_events():
            if release_id and event.release_id != release_id:
                continue
            if target_id and event.target_id != target_id:
                continue
            result.append(event)
        return result

    def transitions(self, release_id: str) -> list[ReleaseEvent]:
        return [e for e in self.events(release_id) if e.kind == EventKind.TRANSITION]

    def markers(self, release_id: str) -> list[str]:
        return [e.marker for e in self.events(release_id) if e.kind == EventKind.MARKER and e.marker]

    def replay(self) -> dict[str, ReleaseEvent]:
        """Latest transition per release, reconstructed from the log."""
        latest: dict[str, ReleaseEvent] = {}
        for event in self._iter_events():
            if event.kind == EventKind.TRANSITION:
                latest[event.release_id] = event
        return latest

    def get_stats(self, days: int = 30) -> dict[str, Any]:
        """Get release outcome statistics.

        Args:
            days: Number of days to include

        Returns:
            Statistics summary
        """
        cutoff = utcnow() - timedelta(days=days)
        outcomes = {
            ReleaseStatus.PROMOTED: "promoted",
            ReleaseStatus.ROLLED_BACK: "rolled_back",
            ReleaseStatus.FAILED: "failed",
        }
        stats: dict[str, Any] = {
            "promoted": 0,
            "rolled_back": 0,
            "failed": 0,
            "targets": {},
        }

        for event in self._iter_events():
            if event.kind != EventKind.TRANSITION or event.timestamp < cutoff:
                continue
            key = outcomes.get(event.to_state)
            if key is None:
                continue

            stats[key] += 1
            per_target = stats["targets"].setdefault(
                event.target_id, {"promoted": 0, "rolled_back": 0, "failed": 0}
            )
            per_target[key] += 1

        return stats
