"""
Progress Tracker - session-scoped batch progress.

Provides:
- One session per batch invocation, polled by external callers
- Monotonic completed/failed counters
- Cooperative cancellation flag checked by the orchestrator
- Optional JSON persistence so another process can poll
- Time-based garbage collection of old sessions
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MAX_DETAIL_LINES = 200


class SessionStatus(str, Enum):
    """Lifecycle status of a progress session."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class ProgressSession:
    """State of one batch run."""

    session_id: str
    created_at: str
    updated_at: str
    status: SessionStatus = SessionStatus.IDLE
    category: str = ""
    total: int = 0
    completed: int = 0
    failed: int = 0
    details: list[str] = field(default_factory=list)
    current_key: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    error: str | None = None
    cancel_requested: bool = False
    completed_at: str | None = None

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(min(self.completed + self.failed, self.total) / self.total * 100, 1)

    @property
    def is_finished(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.ERROR)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        data["percent"] = self.percent
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressSession":
        """Create from dictionary."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = SessionStatus(values.get("status", "idle"))
        return cls(**values)


class ProgressTracker:
    """
    Store of progress sessions.

    Example:
        tracker = ProgressTracker(Path(".recon-sync-progress.json"))

        session = tracker.create(category="date_range", total=250)
        tracker.update(session.session_id, status="running", completed=10)
        tracker.add_detail(session.session_id, "Synced invoice 1699-abc")

        # From another process
        snapshot = ProgressTracker(Path(".recon-sync-progress.json")).get(sid)
    """

    MONOTONIC_FIELDS = ("completed", "failed")

    def __init__(
        self,
        state_file: Path | str | None = None,
        ttl_hours: float = 24.0,
        flush_interval: float = 0.0,
    ) -> None:
        """
        Initialize progress tracker.

        Args:
            state_file: Optional JSON file shared with pollers
            ttl_hours: Sessions older than this are removed by cleanup()
            flush_interval: Minimum seconds between counter writes to the
                state file, and between reads of shared cancel flags.
                Status changes are always written at once.
        """
        self.state_file = Path(state_file) if state_file else None
        self.ttl = timedelta(hours=ttl_hours)
        self._sessions: dict[str, ProgressSession] = {}
        self._forgotten: set[str] = set()
        self.flush_interval = flush_interval
        self._last_flush = float("-inf")
        self._last_shared_read = float("-inf")
        self._dirty = False
        self._load()

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _load(self) -> None:
        if not self.state_file or not self.state_file.exists():
            return
        try:
            data = json.loads(self.state_file.read_text())
            self._sessions = {
                sid: ProgressSession.from_dict(item)
                for sid, item in data.get("sessions", {}).items()
            }
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Could not load progress file %s: %s", self.state_file, e)
            self._sessions = {}

    def _read_shared(self) -> dict[str, dict[str, Any]]:
        """Raw sessions currently in the shared file."""
        if not self.state_file or not self.state_file.exists():
            return {}
        try:
            data = json.loads(self.state_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.debug("Could not read progress file: %s", e)
            return {}
        sessions = data.get("sessions", {})
        return sessions if isinstance(sessions, dict) else {}

    def _apply_shared_cancel_flags(self, shared: dict[str, dict[str, Any]]) -> None:
        for sid, item in shared.items():
            session = self._sessions.get(sid)
            if session is not None and isinstance(item, dict) and item.get("cancel_requested"):
                session.cancel_requested = True

    def _save(self, force: bool = True) -> None:
        if not self.state_file:
            return
        now = time.monotonic()
        if not force and now - self._last_flush < self.flush_interval:
            self._dirty = True
            return
        shared = self._read_shared()
        # A cancel flag written by a poller must survive our next write
        self._apply_shared_cancel_flags(shared)
        sessions = {
            sid: item
            for sid, item in shared.items()
            if sid not in self._sessions and sid not in self._forgotten
        }
        sessions.update({sid: s.to_dict() for sid, s in self._sessions.items()})
        payload = {
            "updated_at": self._now(),
            "sessions": sessions,
        }
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2))
        os.replace(tmp, self.state_file)
        self._last_flush = now
        self._last_shared_read = now
        self._dirty = False

    def flush(self) -> None:
        """Write counter changes held back by the flush interval."""
        if self._dirty:
            self._save()

    def create(
        self,
        session_id: str | None = None,
        category: str = "",
        total: int = 0,
        **extra: Any,
    ) -> ProgressSession:
        """Create a new session; an existing id is replaced."""
        now = self._now()
        session = ProgressSession(
            session_id=session_id or uuid.uuid4().hex,
            created_at=now,
            updated_at=now,
            category=category,
            total=total,
        )
        for name, value in extra.items():
            if not hasattr(session, name):
                raise ValueError(f"Unknown progress field: {name}")
            setattr(session, name, value)
        self._sessions[session.session_id] = session
        self._save()
        return session

    def get(self, session_id: str) -> ProgressSession | None:
        return self._sessions.get(session_id)

    def _require(self, session_id: str) -> ProgressSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown progress session: {session_id}")
        return session

    def update(self, session_id: str, **changes: Any) -> ProgressSession:
        """
        Merge field changes into a session.

        Raises:
            KeyError: unknown session
            ValueError: unknown field, or a counter moving backwards
        """
        session = self._require(session_id)

        for name, value in changes.items():
            if name in ("session_id", "created_at") or not hasattr(session, name):
                raise ValueError(f"Cannot update progress field: {name}")
            if name in self.MONOTONIC_FIELDS and value < getattr(session, name):
                raise ValueError(
                    f"{name} cannot decrease ({getattr(session, name)} -> {value})"
                )

        for name, value in changes.items():
            if name == "status":
                value = SessionStatus(value)
                if value in (SessionStatus.COMPLETED, SessionStatus.ERROR):
                    session.completed_at = self._now()
            setattr(session, name, value)

        session.updated_at = self._now()
        self._save(force="status" in changes)
        return session

    def increment(
        self,
        session_id: str,
        completed: int = 0,
        failed: int = 0,
        current_key: str | None = None,
    ) -> ProgressSession:
        session = self._require(session_id)
        changes: dict[str, Any] = {
            "completed": session.completed + completed,
            "failed": session.failed + failed,
        }
        if current_key is not None:
            changes["current_key"] = current_key
        return self.update(session_id, **changes)

    def add_detail(self, session_id: str, line: str) -> None:
        session = self._require(session_id)
        session.details.append(line)
        if len(session.details) > MAX_DETAIL_LINES:
            del session.details[: len(session.details) - MAX_DETAIL_LINES]
        session.updated_at = self._now()
        self._save(force=False)

    def request_cancel(self, session_id: str) -> bool:
        """Flag a running session for cancellation. False if not running."""
        self.flush()
        if self.state_file and self.state_file.exists():
            self._load()
        session = self._sessions.get(session_id)
        if session is None or session.is_finished:
            return False
        session.cancel_requested = True
        session.updated_at = self._now()
        self._save()
        return True

    def is_cancelled(self, session_id: str) -> bool:
        """Checked between records; picks up flags set by other processes."""
        now = time.monotonic()
        if now - self._last_shared_read >= self.flush_interval:
            self._last_shared_read = now
            self._apply_shared_cancel_flags(self._read_shared())
        session = self._sessions.get(session_id)
        return bool(session and session.cancel_requested)

    def delete(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None) is not None
        self._forgotten.add(session_id)
        if removed:
            self._save()
        return removed

    def list_sessions(self) -> list[ProgressSession]:
        """Sessions newest first."""
        return sorted(
            self._sessions.values(),
            key=lambda s: s.created_at,
            reverse=True,
        )

    def cleanup(self, now: datetime | None = None) -> int:
        """Delete sessions older than the TTL. Returns the number removed."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.ttl
        expired = [
            sid
            for sid, session in self._sessions.items()
            if datetime.fromisoformat(session.created_at) < cutoff
        ]
        for sid in expired:
            del self._sessions[sid]
            self._forgotten.add(sid)
        if expired:
            logger.info("Removed %d expired progress sessions", len(expired))
            self._save()
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
