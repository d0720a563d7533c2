"""Append-only per-session audit trail with capped retention."""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .config import CadenceConfig, load_config
from .constants import DEFAULT_LOCK_TIMEOUT, DEFAULT_MAX_EVENTS, DEFAULT_TRIM_INTERVAL
from .contracts import TimelineEvent, Verdict, base_key
from .persistence.locking import atomic_write_text, session_lock
from .persistence.paths import SessionPaths, validate_session_id
from .registry import WorkflowRegistry, get_registry

logger = logging.getLogger(__name__)


class StageReliability(BaseModel):
    """pass@k figures for one stage base."""

    attempts: List[str] = Field(default_factory=list)
    pass1: bool = False
    pass3: bool = False
    pass_consecutive3: Optional[bool] = None

    @classmethod
    def from_attempts(cls, attempts: List[str]) -> "StageReliability":
        passed = [a == Verdict.PASS.value for a in attempts]
        return cls(
            attempts=list(attempts),
            pass1=bool(passed) and passed[0],
            pass3=any(passed[:3]),
            pass_consecutive3=all(passed[-3:]) if len(passed) >= 3 else None,
        )


class ReliabilityReport(BaseModel):
    session_id: str
    stages: Dict[str, StageReliability] = Field(default_factory=dict)
    stage_count: int = 0
    pass1_count: int = 0
    pass3_count: int = 0
    pass1_rate: Optional[float] = None
    pass3_rate: Optional[float] = None


class EventLog(ABC):
    """Registry-checked event log.

    Subclasses store raw records; trimming happens every ``trim_interval``
    appends, counted by the backend rather than by this process.
    """

    def __init__(
        self,
        registry: Optional[WorkflowRegistry] = None,
        max_events: int = DEFAULT_MAX_EVENTS,
        trim_interval: int = DEFAULT_TRIM_INTERVAL,
    ) -> None:
        self.registry = registry or get_registry()
        self.max_events = max_events
        self.trim_interval = trim_interval

    # ------------------------------------------------------------------
    @abstractmethod
    def _append_record(self, session_id: str, record: Dict[str, Any]) -> int:
        """Persist ``record`` and return the session's running append count.

        Must trim the log when the returned count hits ``trim_interval``.
        """

    @abstractmethod
    def _load_records(self, session_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def trim(self, session_id: str, max_count: Optional[int] = None) -> int:
        """Keep only the newest ``max_count`` events. Returns how many were dropped."""

    # ------------------------------------------------------------------
    def append(
        self, session_id: str, event_type: str, payload: Optional[Dict[str, Any]] = None
    ) -> TimelineEvent:
        definition = self.registry.get_event_definition(event_type)
        event = TimelineEvent(
            type=definition.type,
            category=definition.category,
            label=definition.label,
            payload=dict(payload or {}),
        )
        self._append_record(session_id, event.to_record())
        return event

    def query(
        self,
        session_id: str,
        type: Optional[str] = None,
        category: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[TimelineEvent]:
        """Events oldest-first; ``limit`` keeps the most recent N."""

        records = self._load_records(session_id)
        if type:
            records = [r for r in records if r.get("type") == type]
        if category:
            records = [r for r in records if r.get("category") == category]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return [TimelineEvent.from_record(r) for r in records]

    def latest(self, session_id: str, event_type: str) -> Optional[TimelineEvent]:
        events = self.query(session_id, type=event_type, limit=1)
        return events[0] if events else None

    def count(
        self, session_id: str, type: Optional[str] = None, category: Optional[str] = None
    ) -> int:
        return len(self.query(session_id, type=type, category=category))

    def compute_reliability(self, session_id: str) -> ReliabilityReport:
        """pass@1 / pass@3 per stage base from ``stage:complete`` events."""

        attempts: Dict[str, List[str]] = defaultdict(list)
        for record in self._load_records(session_id):
            if record.get("type") != "stage:complete":
                continue
            stage = record.get("stage")
            result = record.get("result")
            if not stage or not result:
                continue
            attempts[base_key(stage)].append(str(result))

        stages = {base: StageReliability.from_attempts(a) for base, a in attempts.items()}
        stage_count = len(stages)
        pass1_count = sum(1 for s in stages.values() if s.pass1)
        pass3_count = sum(1 for s in stages.values() if s.pass3)
        return ReliabilityReport(
            session_id=session_id,
            stages=stages,
            stage_count=stage_count,
            pass1_count=pass1_count,
            pass3_count=pass3_count,
            pass1_rate=pass1_count / stage_count if stage_count else None,
            pass3_rate=pass3_count / stage_count if stage_count else None,
        )

    # ------------------------------------------------------------------
    def _due_for_trim(self, count: int) -> bool:
        return count > 0 and count % self.trim_interval == 0

    def _trim_limit(self, max_count: Optional[int]) -> int:
        max_count = self.max_events if max_count is None else max_count
        if max_count < 0:
            raise ValueError(f"max_count must be >= 0, got {max_count}")
        return max_count


class FileEventLog(EventLog):
    """JSONL log at ``<home>/sessions/<id>/timeline.jsonl``.

    Appends and trims serialise on the session lock file; the append count
    lives in ``timeline.count`` beside the log.
    """

    def __init__(
        self,
        home: str,
        registry: Optional[WorkflowRegistry] = None,
        max_events: int = DEFAULT_MAX_EVENTS,
        trim_interval: int = DEFAULT_TRIM_INTERVAL,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        super().__init__(registry=registry, max_events=max_events, trim_interval=trim_interval)
        self.paths = SessionPaths(home)
        self.lock_timeout = lock_timeout

    def _read_counter(self, session_id: str) -> int:
        try:
            return int(self.paths.timeline_counter(session_id).read_text().strip() or 0)
        except FileNotFoundError:
            return 0
        except ValueError:
            logger.warning(f"Resetting unreadable timeline counter for session {session_id}")
            return 0

    def _append_record(self, session_id: str, record: Dict[str, Any]) -> int:
        self.paths.ensure_session_dir(session_id)
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
        with session_lock(self.paths.lock(session_id), self.lock_timeout):
            fd = os.open(
                str(self.paths.timeline(session_id)),
                os.O_WRONLY | os.O_APPEND | os.O_CREAT,
                0o644,
            )
            try:
                os.write(fd, line.encode("utf-8"))
            finally:
                os.close(fd)
            count = self._read_counter(session_id) + 1
            atomic_write_text(self.paths.timeline_counter(session_id), str(count))
            if self._due_for_trim(count):
                self._trim_unlocked(session_id, self.max_events)
        return count

    def _load_records(self, session_id: str) -> List[Dict[str, Any]]:
        path = self.paths.timeline(session_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        records: List[Dict[str, Any]] = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Skipping corrupt timeline line {lineno} in {path}")
        return records

    def _trim_unlocked(self, session_id: str, max_count: int) -> int:
        path = self.paths.timeline(session_id)
        try:
            lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
        except FileNotFoundError:
            return 0
        dropped = len(lines) - max_count
        if dropped <= 0:
            return 0
        kept = lines[dropped:]
        atomic_write_text(path, "".join(f"{line}\n" for line in kept))
        logger.info(f"Trimmed {dropped} timeline events for session {session_id}")
        return dropped

    def trim(self, session_id: str, max_count: Optional[int] = None) -> int:
        max_count = self._trim_limit(max_count)
        validate_session_id(session_id)
        with session_lock(self.paths.lock(session_id), self.lock_timeout):
            return self._trim_unlocked(session_id, max_count)


class InMemoryEventLog(EventLog):
    """Process-local event log, paired with the in-memory store."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._records: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._counts: Dict[str, int] = defaultdict(int)
        self._lock = threading.RLock()

    def _append_record(self, session_id: str, record: Dict[str, Any]) -> int:
        validate_session_id(session_id)
        with self._lock:
            self._records[session_id].append(record)
            self._counts[session_id] += 1
            count = self._counts[session_id]
            if self._due_for_trim(count):
                self.trim(session_id, self.max_events)
        return count

    def _load_records(self, session_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._records.get(session_id, []))

    def trim(self, session_id: str, max_count: Optional[int] = None) -> int:
        max_count = self._trim_limit(max_count)
        with self._lock:
            records = self._records.get(session_id, [])
            dropped = len(records) - max_count
            if dropped <= 0:
                return 0
            self._records[session_id] = records[dropped:]
        return dropped


_event_log_instance: EventLog | None = None


def get_event_log(
    config: Optional[CadenceConfig] = None,
    registry: Optional[WorkflowRegistry] = None,
) -> EventLog:
    """Factory for the event log matching ``config.store.backend``."""

    global _event_log_instance
    if _event_log_instance is not None and config is None and registry is None:
        return _event_log_instance

    config = config or load_config()
    registry = registry or get_registry(config.registry_path)
    options = dict(
        registry=registry,
        max_events=config.timeline.max_events,
        trim_interval=config.timeline.trim_interval,
    )
    if config.store.backend == "inmemory":
        _event_log_instance = InMemoryEventLog(**options)
    else:
        _event_log_instance = FileEventLog(
            config.home_path, lock_timeout=config.store.lock_timeout, **options
        )
    return _event_log_instance
