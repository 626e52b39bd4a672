"""Timeline event logger.

Appends JSONL lifecycle events to <log_dir>/timeline.jsonl so a failed run
can be reconstructed after the fact: which process started when, how long
it took to become healthy, and which teardown steps failed.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


TIMELINE_FILE = "timeline.jsonl"


def utc_now_iso() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class EventType(str, Enum):
    """Timeline event types."""
    # Scope events
    SUITE_SETUP = "suite_setup"
    SUITE_READY = "suite_ready"
    SUITE_SKIPPED = "suite_skipped"
    SUITE_TEARDOWN = "suite_teardown"
    TEST_SETUP = "test_setup"
    TEST_READY = "test_ready"
    TEST_TEARDOWN = "test_teardown"
    TEARDOWN_ERROR = "teardown_error"

    # Process events
    PROCESS_START = "process_start"
    PROCESS_READY = "process_ready"
    PROCESS_FAILED = "process_failed"
    PROCESS_STOP = "process_stop"
    PROCESS_KILLED = "process_killed"


class TimelineLogger:
    """Logger for timeline events in JSONL format.

    Each event is written as a single JSON line with at minimum:
    - ts: ISO 8601 timestamp
    - event: Event type from EventType enum
    """

    def __init__(self, timeline_path: Path, run_id: Optional[str] = None):
        """Initialize timeline logger.

        Args:
            timeline_path: Path to timeline.jsonl file.
            run_id: Identifier included in every event.
        """
        self.timeline_path = timeline_path
        self.run_id = run_id

        self.timeline_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.timeline_path.exists():
            self.timeline_path.touch()

    def log(
        self,
        event: EventType,
        process: Optional[str] = None,
        scope: Optional[str] = None,
        test: Optional[str] = None,
        pid: Optional[int] = None,
        status: Optional[str] = None,
        duration_ms: Optional[int] = None,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Log an event to the timeline.

        Returns:
            The event dict that was written.
        """
        event_data: Dict[str, Any] = {
            "ts": utc_now_iso(),
            "event": event.value if isinstance(event, EventType) else event,
        }

        if self.run_id:
            event_data["run_id"] = self.run_id
        if process is not None:
            event_data["process"] = process
        if scope is not None:
            event_data["scope"] = scope
        if test is not None:
            event_data["test"] = test
        if pid is not None:
            event_data["pid"] = pid
        if status is not None:
            event_data["status"] = status
        if duration_ms is not None:
            event_data["duration_ms"] = duration_ms
        if error is not None:
            event_data["error"] = error
        if details is not None:
            event_data["details"] = details

        line = json.dumps(event_data, separators=(",", ":"), default=str) + "\n"
        with self.timeline_path.open("a", encoding="utf-8") as f:
            f.write(line)

        return event_data

    # Convenience methods for common events

    def process_start(self, name: str, pid: int, log_path: Path) -> Dict[str, Any]:
        return self.log(
            EventType.PROCESS_START,
            process=name,
            pid=pid,
            details={"log_path": str(log_path)},
        )

    def process_ready(self, name: str, pid: int, duration_ms: int) -> Dict[str, Any]:
        return self.log(
            EventType.PROCESS_READY,
            process=name,
            pid=pid,
            status="running",
            duration_ms=duration_ms,
        )

    def process_failed(
        self,
        name: str,
        error: str,
        log_path: Optional[Path] = None,
        duration_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        return self.log(
            EventType.PROCESS_FAILED,
            process=name,
            status="failed",
            error=error,
            duration_ms=duration_ms,
            details={"log_path": str(log_path)} if log_path else None,
        )

    def process_stop(
        self,
        name: str,
        pid: Optional[int],
        returncode: Optional[int],
        forced: bool = False,
    ) -> Dict[str, Any]:
        """Log process stop; forced stops are recorded as PROCESS_KILLED."""
        return self.log(
            EventType.PROCESS_KILLED if forced else EventType.PROCESS_STOP,
            process=name,
            pid=pid,
            status="stopped",
            details={"returncode": returncode},
        )

    def scope_event(self, event: EventType, scope: str, test: Optional[str] = None) -> Dict[str, Any]:
        return self.log(event, scope=scope, test=test)

    def teardown_error(self, scope: str, step: str, error: str) -> Dict[str, Any]:
        """Log a teardown step that raised and was suppressed."""
        return self.log(
            EventType.TEARDOWN_ERROR,
            scope=scope,
            status="suppressed",
            error=error,
            details={"step": step},
        )

    def read_events(self) -> List[Dict[str, Any]]:
        """Read all events from the timeline.

        Returns:
            List of event dictionaries.
        """
        events = []
        if self.timeline_path.exists():
            with self.timeline_path.open("r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        try:
                            events.append(json.loads(line))
                        except json.JSONDecodeError:
                            pass  # Skip malformed lines
        return events

    def get_events_by_type(self, event_type: EventType) -> List[Dict[str, Any]]:
        """Get all events of a specific type."""
        target = event_type.value if isinstance(event_type, EventType) else event_type
        return [e for e in self.read_events() if e.get("event") == target]

    def get_events_for_process(self, name: str) -> List[Dict[str, Any]]:
        return [e for e in self.read_events() if e.get("process") == name]


def create_timeline_logger(log_dir: Path, run_id: Optional[str] = None) -> TimelineLogger:
    """Create a timeline logger writing to <log_dir>/timeline.jsonl."""
    return TimelineLogger(log_dir / TIMELINE_FILE, run_id=run_id)
