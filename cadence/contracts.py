"""Core state contracts for the cadence workflow scheduler."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import STAGE_KEY_SEPARATOR
from .utils.clock import utcnow


class StageStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    REJECT = "reject"
    ISSUES = "issues"


class StageMode(str, Enum):
    """Whether a verification stage writes specs up front or verifies a build."""

    SPEC = "spec"
    VERIFY = "verify"


class StopReason(str, Enum):
    MANUAL = "manual"
    MAX_ITERATIONS = "max-iterations"
    CONSECUTIVE_ERRORS = "consecutive-errors"
    COMPLETED_CLEAN = "completed-clean"
    COMPLETED_ABORTED = "completed-aborted"


class StageKey(BaseModel):
    """Structural stage key: a registry base key plus its occurrence index.

    The textual form is ``BASE`` for the first occurrence and ``BASE:n`` for
    every later one, which is what gets persisted.
    """

    model_config = ConfigDict(frozen=True)

    base: str
    occurrence: int = Field(default=1, ge=1)

    @classmethod
    def parse(cls, value: str) -> "StageKey":
        """Parse ``TEST`` or ``TEST:2`` into a structural key."""
        base, sep, suffix = value.partition(STAGE_KEY_SEPARATOR)
        if not base:
            raise ValueError(f"Stage key must have a base: {value!r}")
        if not sep:
            return cls(base=base)
        if not suffix.isdigit() or int(suffix) < 2:
            raise ValueError(f"Stage key suffix must be an integer >= 2: {value!r}")
        return cls(base=base, occurrence=int(suffix))

    def __str__(self) -> str:
        if self.occurrence == 1:
            return self.base
        return f"{self.base}{STAGE_KEY_SEPARATOR}{self.occurrence}"


def base_key(key: str) -> str:
    """Return the registry base of a textual stage key.

    Raises ``ValueError`` for malformed keys such as ``TEST:x``.
    """
    return StageKey.parse(key).base


def expand_stage_keys(stage_list: Iterable[str]) -> List[StageKey]:
    """Give repeated stages unique keys: ``[TEST, DEV, TEST]`` -> ``TEST, DEV, TEST:2``."""
    seen: Counter[str] = Counter()
    keys: List[StageKey] = []
    for base in stage_list:
        seen[base] += 1
        keys.append(StageKey(base=base, occurrence=seen[base]))
    return keys


class StageRuntime(BaseModel):
    """Runtime status of one stage key within a session."""

    status: StageStatus = StageStatus.PENDING
    result: Optional[Verdict] = None
    mode: Optional[StageMode] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ActiveExecutor(BaseModel):
    """An executor currently working on a stage key."""

    stage: str
    started_at: datetime = Field(default_factory=utcnow)


class SessionWorkflowState(BaseModel):
    """One run of a workflow, persisted as a single document per session."""

    session_id: str
    workflow_type: str
    created_at: datetime = Field(default_factory=utcnow)
    current_stage: Optional[str] = None
    stages: Dict[str, StageRuntime] = Field(default_factory=dict)
    active_executors: Dict[str, ActiveExecutor] = Field(default_factory=dict)
    fail_count: int = 0
    reject_count: int = 0
    feature_name: Optional[str] = None
    escalation: Optional[str] = None
    converged_groups: List[str] = Field(default_factory=list)
    revision: int = 0

    def stage_keys(self) -> List[str]:
        return list(self.stages)

    def keys_for_base(self, base: str) -> List[str]:
        """All keys sharing ``base``, in insertion order."""
        return [key for key in self.stages if base_key(key) == base]

    def first_pending(self) -> Optional[str]:
        for key, runtime in self.stages.items():
            if runtime.status == StageStatus.PENDING:
                return key
        return None

    def all_completed(self) -> bool:
        return all(s.status == StageStatus.COMPLETED for s in self.stages.values())

    def has_failed_stage(self) -> bool:
        return any(s.result == Verdict.FAIL for s in self.stages.values())

    def progress(self) -> tuple[int, int]:
        """Return ``(completed, total)`` stage counts."""
        completed = sum(
            1 for s in self.stages.values() if s.status == StageStatus.COMPLETED
        )
        return completed, len(self.stages)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, data: str) -> "SessionWorkflowState":
        return cls.model_validate_json(data)


class LoopState(BaseModel):
    """Bounded continuation tracking for one session."""

    session_id: str
    iteration: int = 0
    stopped: bool = False
    consecutive_errors: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    stopped_at: Optional[datetime] = None
    stop_reason: Optional[StopReason] = None
    stop_detail: Optional[str] = None
    revision: int = 0

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, data: str) -> "LoopState":
        return cls.model_validate_json(data)


_ENVELOPE_FIELDS = ("ts", "type", "category", "label")


class TimelineEvent(BaseModel):
    """One audit record. Payload fields are flattened into the JSONL line."""

    ts: datetime = Field(default_factory=utcnow)
    type: str
    category: str
    label: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "ts": self.ts.isoformat(),
            "type": self.type,
            "category": self.category,
            "label": self.label,
        }
        for key, value in self.payload.items():
            record.setdefault(key, value)
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "TimelineEvent":
        payload = {k: v for k, v in record.items() if k not in _ENVELOPE_FIELDS}
        return cls(
            ts=record["ts"],
            type=record["type"],
            category=record.get("category", ""),
            label=record.get("label", record["type"]),
            payload=payload,
        )
