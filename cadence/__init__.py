"""Cadence: stage scheduling and loop governance for multi-executor workflows."""

from .config import CadenceConfig, load_config
from .contracts import (
    LoopState,
    SessionWorkflowState,
    StageKey,
    StageMode,
    StageRuntime,
    StageStatus,
    StopReason,
    TimelineEvent,
    Verdict,
)
from .engine import DelegationResult, StageReport, WorkflowEngine
from .governor import Outcome, check_threshold, classify_outcome
from .loop import LoopController, LoopDecision
from .persistence import get_store
from .registry import DEFAULT_REGISTRY, StageKind, get_registry, load_registry
from .scheduler import NextStep, next_step_hint
from .timeline import ReliabilityReport, get_event_log

__version__ = "0.1.0"
__all__ = [
    "CadenceConfig",
    "load_config",
    "SessionWorkflowState",
    "StageRuntime",
    "StageKey",
    "StageStatus",
    "StageMode",
    "StageKind",
    "StopReason",
    "LoopState",
    "TimelineEvent",
    "Verdict",
    "WorkflowEngine",
    "DelegationResult",
    "StageReport",
    "Outcome",
    "classify_outcome",
    "check_threshold",
    "LoopController",
    "LoopDecision",
    "NextStep",
    "next_step_hint",
    "ReliabilityReport",
    "get_store",
    "get_event_log",
    "get_registry",
    "load_registry",
    "DEFAULT_REGISTRY",
]
