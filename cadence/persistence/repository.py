"""State store abstraction for session workflow and loop documents."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

from pydantic import BaseModel

from ..constants import DEFAULT_MAX_CONFLICT_RETRIES, LOOP_DOCUMENT, WORKFLOW_DOCUMENT
from ..contracts import (
    LoopState,
    SessionWorkflowState,
    StageMode,
    StageRuntime,
    expand_stage_keys,
)
from ..errors import ConflictError, InvalidTransformError, SessionNotFoundError
from ..registry import StageKind, WorkflowRegistry, get_registry
from ..utils.retry import sleep_before_retry

logger = logging.getLogger(__name__)

Document = TypeVar("Document", SessionWorkflowState, LoopState)
WorkflowTransform = Callable[[SessionWorkflowState], SessionWorkflowState]
LoopTransform = Callable[[LoopState], LoopState]


class StateStore(Protocol):
    """Protocol for session state persistence backends."""

    def initialize(
        self,
        session_id: str,
        workflow_type: str,
        stage_keys: Iterable[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> SessionWorkflowState:
        """Create (or overwrite) the workflow state for a session."""

    def read(self, session_id: str) -> Optional[SessionWorkflowState]:
        """Return the current workflow state or ``None``."""

    def mutate(self, session_id: str, transform: WorkflowTransform) -> SessionWorkflowState:
        """Apply ``transform`` to the stored state and persist the result."""

    def read_loop(self, session_id: str) -> Optional[LoopState]:
        """Return the loop document or ``None`` if none was written yet."""

    def mutate_loop(self, session_id: str, transform: LoopTransform) -> LoopState:
        """Apply ``transform`` to the loop document, creating it if needed."""

    def list_sessions(self) -> List[str]:
        """Return ids of all sessions with a workflow state."""


def build_initial_state(
    session_id: str,
    workflow_type: str,
    stage_keys: Iterable[str],
    registry: WorkflowRegistry,
    feature_name: Optional[str] = None,
) -> SessionWorkflowState:
    """Expand ``stage_keys`` into a fresh state with every stage pending.

    Verification stages run in ``verify`` mode once a build stage precedes
    them and in ``spec`` mode otherwise.
    """

    registry.get_workflow_template(workflow_type)
    stages: Dict[str, StageRuntime] = {}
    seen_build = False
    for key in expand_stage_keys(stage_keys):
        kind = registry.get_stage_definition(key.base).kind
        mode = None
        if kind == StageKind.VERIFICATION:
            mode = StageMode.VERIFY if seen_build else StageMode.SPEC
        if kind == StageKind.BUILD:
            seen_build = True
        stages[str(key)] = StageRuntime(mode=mode)

    return SessionWorkflowState(
        session_id=session_id,
        workflow_type=workflow_type,
        current_stage=next(iter(stages), None),
        stages=stages,
        feature_name=feature_name,
    )


class BaseStateStore(ABC):
    """Revision-checked document store.

    Backends supply raw document access and a per-session critical section;
    this class implements the read, transform, compare-and-swap cycle.
    A missing document has revision 0.
    """

    def __init__(
        self,
        registry: Optional[WorkflowRegistry] = None,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
    ) -> None:
        self.registry = registry or get_registry()
        self.max_conflict_retries = max_conflict_retries

    # ------------------------------------------------------------------
    @abstractmethod
    def _read_text(self, session_id: str, document: str) -> Optional[str]:
        """Return the raw document or ``None`` when it does not exist."""

    @abstractmethod
    def _write_text(self, session_id: str, document: str, text: str) -> None:
        """Replace the raw document atomically."""

    @abstractmethod
    def _locked(self, session_id: str) -> AbstractContextManager[Any]:
        """Critical section serialising writers of one session."""

    @abstractmethod
    def list_sessions(self) -> List[str]:
        ...

    # ------------------------------------------------------------------
    def _disk_revision(self, session_id: str, document: str) -> int:
        raw = self._read_text(session_id, document)
        if raw is None:
            return 0
        return int(json.loads(raw).get("revision", 0))

    def _swap(
        self,
        session_id: str,
        document: str,
        record: BaseModel,
        expected: Optional[int],
    ) -> bool:
        """Write ``record`` if the stored revision still equals ``expected``.

        ``expected=None`` writes unconditionally. On success the record's
        revision is one past the revision it replaced.
        """

        with self._locked(session_id):
            current = self._disk_revision(session_id, document)
            if expected is not None and current != expected:
                return False
            record.revision = current + 1  # type: ignore[attr-defined]
            self._write_text(session_id, document, record.model_dump_json(indent=2))
        return True

    def _mutate(
        self,
        session_id: str,
        document: str,
        load: Callable[[], Optional[Document]],
        transform: Callable[[Document], Document],
        model: type,
    ) -> Document:
        for attempt in range(self.max_conflict_retries + 1):
            current = load()
            if current is None:
                raise SessionNotFoundError(session_id)
            expected = current.revision
            updated = transform(current)
            if not isinstance(updated, model):
                raise InvalidTransformError(
                    f"Transform for {document} returned {type(updated).__name__}, "
                    f"expected {model.__name__}"
                )
            if self._swap(session_id, document, updated, expected):
                return updated
            logger.warning(
                f"Revision conflict on {document} for session {session_id} "
                f"(attempt {attempt + 1}/{self.max_conflict_retries + 1})"
            )
            if attempt < self.max_conflict_retries:
                sleep_before_retry(attempt)
        raise ConflictError(
            f"Could not update {document} for session {session_id} after "
            f"{self.max_conflict_retries + 1} attempts"
        )

    # ------------------------------------------------------------------
    def initialize(
        self,
        session_id: str,
        workflow_type: str,
        stage_keys: Iterable[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> SessionWorkflowState:
        extra = extra or {}
        state = build_initial_state(
            session_id,
            workflow_type,
            stage_keys,
            self.registry,
            feature_name=extra.get("feature_name"),
        )
        self._swap(session_id, WORKFLOW_DOCUMENT, state, expected=None)
        logger.info(
            f"Initialized {workflow_type} workflow for session {session_id} "
            f"with {len(state.stages)} stages"
        )
        return state

    def read(self, session_id: str) -> Optional[SessionWorkflowState]:
        raw = self._read_text(session_id, WORKFLOW_DOCUMENT)
        if raw is None:
            return None
        return SessionWorkflowState.from_json(raw)

    def mutate(self, session_id: str, transform: WorkflowTransform) -> SessionWorkflowState:
        return self._mutate(
            session_id,
            WORKFLOW_DOCUMENT,
            lambda: self.read(session_id),
            transform,
            SessionWorkflowState,
        )

    def read_loop(self, session_id: str) -> Optional[LoopState]:
        raw = self._read_text(session_id, LOOP_DOCUMENT)
        if raw is None:
            return None
        return LoopState.from_json(raw)

    def mutate_loop(self, session_id: str, transform: LoopTransform) -> LoopState:
        def load() -> LoopState:
            return self.read_loop(session_id) or LoopState(session_id=session_id)

        return self._mutate(session_id, LOOP_DOCUMENT, load, transform, LoopState)
