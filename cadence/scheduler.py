"""Stage scheduling over a workflow state snapshot.

Every function here takes a :class:`SessionWorkflowState` and returns a
new state (or a derived value) without touching storage, so each can be
passed to ``StateStore.mutate`` as, or inside, a transform.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from .contracts import (
    ActiveExecutor,
    SessionWorkflowState,
    StageKey,
    StageStatus,
    Verdict,
    base_key,
)
from .errors import StageTransitionError, UnknownStageError
from .registry import WorkflowRegistry
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


class NextStepKind(str, Enum):
    NONE = "none"
    WAIT = "wait"
    ESCALATED = "escalated"
    RETRY = "retry"
    PARALLEL = "parallel"
    SINGLE = "single"


class NextStep(BaseModel):
    """What the driver should do next for a session."""

    kind: NextStepKind
    stages: List[str] = Field(default_factory=list)
    executors: List[str] = Field(default_factory=list)
    message: str = ""


def _copy(state: SessionWorkflowState) -> SessionWorkflowState:
    return state.model_copy(deep=True)


def _refresh_current_stage(state: SessionWorkflowState) -> None:
    state.current_stage = state.first_pending()


def _require_key(state: SessionWorkflowState, stage_key: str) -> None:
    if stage_key not in state.stages:
        raise UnknownStageError(
            f"Stage {stage_key!r} is not part of session {state.session_id}"
        )


def advance_on_completion(
    state: SessionWorkflowState,
    stage_key: str,
    result: Verdict,
    now: Optional[datetime] = None,
) -> SessionWorkflowState:
    """Mark ``stage_key`` completed with ``result`` and move ``current_stage`` on.

    Any executor still bound to the key is released.
    """

    _require_key(state, stage_key)
    if state.stages[stage_key].status == StageStatus.COMPLETED:
        raise StageTransitionError(f"Stage {stage_key!r} is already completed")

    state = _copy(state)
    runtime = state.stages[stage_key]
    runtime.status = StageStatus.COMPLETED
    runtime.result = Verdict(result)
    runtime.completed_at = now or utcnow()
    for executor, active in list(state.active_executors.items()):
        if active.stage == stage_key:
            del state.active_executors[executor]
    _refresh_current_stage(state)
    return state


def find_active_or_next_pending_key(
    state: SessionWorkflowState, stage_base: str
) -> Optional[str]:
    """Resolve an executor report for ``stage_base`` to a concrete key.

    Priority: the unsuffixed key if active, then any suffixed key of the base
    if active, then the first pending key of the base. ``None`` means the
    report cannot be attributed and should be ignored.
    """

    keys = state.keys_for_base(stage_base)
    active = [StageKey.parse(k) for k in keys if state.stages[k].status == StageStatus.ACTIVE]
    if active:
        return str(min(active, key=lambda k: k.occurrence))
    for key in keys:
        if state.stages[key].status == StageStatus.PENDING:
            return key
    return None


def detect_parallel_convergence(
    state: SessionWorkflowState,
    workflow_type: str,
    registry: WorkflowRegistry,
    just_completed: Optional[str] = None,
) -> Optional[str]:
    """Return the name of the parallel group that ``just_completed`` converged.

    Only groups referenced by the workflow template are considered, only when
    at least two member keys are present, and only when ``just_completed`` is
    the member that completed last. Groups listed in
    ``state.converged_groups`` have already been reported and are skipped,
    so a retried member does not converge its group a second time.
    When ``just_completed`` is omitted the most recently completed key is
    used. The first matching group in template order wins.
    """

    if just_completed is None:
        finished = [
            (runtime.completed_at, key)
            for key, runtime in state.stages.items()
            if runtime.status == StageStatus.COMPLETED and runtime.completed_at
        ]
        if not finished:
            return None
        just_completed = max(finished)[1]

    for group in registry.groups_for_workflow(workflow_type):
        if group.name in state.converged_groups:
            continue
        relevant = [k for k in state.stages if base_key(k) in group.members]
        if len(relevant) < 2 or just_completed not in relevant:
            continue
        runtimes = [state.stages[k] for k in relevant]
        if any(r.status != StageStatus.COMPLETED for r in runtimes):
            continue
        last = max(r.completed_at for r in runtimes if r.completed_at is not None)
        if state.stages[just_completed].completed_at == last:
            return group.name
    return None


def _retry_candidate(state: SessionWorkflowState) -> Optional[str]:
    for key, runtime in state.stages.items():
        if runtime.status == StageStatus.COMPLETED and runtime.result in (
            Verdict.FAIL,
            Verdict.REJECT,
        ):
            return key
    return None


def _parallel_run(
    state: SessionWorkflowState, registry: WorkflowRegistry
) -> List[str]:
    keys = state.stage_keys()
    start = keys.index(state.current_stage)
    earlier_done = any(
        state.stages[k].status == StageStatus.COMPLETED for k in keys[:start]
    )
    if not earlier_done:
        return []
    current_base = base_key(state.current_stage)
    for group in registry.groups_for_workflow(state.workflow_type):
        if current_base not in group.members:
            continue
        run: List[str] = []
        for key in keys[start:]:
            if state.stages[key].status != StageStatus.PENDING:
                break
            if base_key(key) not in group.members:
                break
            run.append(key)
        if len(run) > 1:
            return run
    return []


def next_step_hint(state: SessionWorkflowState, registry: WorkflowRegistry) -> NextStep:
    """Suggest the next delegation for ``state``."""

    if state.current_stage is None:
        return NextStep(kind=NextStepKind.NONE, message="No stages remaining")

    if state.active_executors:
        executors = list(state.active_executors)
        return NextStep(
            kind=NextStepKind.WAIT,
            stages=[a.stage for a in state.active_executors.values()],
            executors=executors,
            message=f"Waiting for active executors: {', '.join(executors)}",
        )

    if state.escalation:
        return NextStep(kind=NextStepKind.ESCALATED, message=state.escalation)

    failed = _retry_candidate(state)
    if failed is not None:
        definition = registry.get_stage_definition(failed)
        return NextStep(
            kind=NextStepKind.RETRY,
            stages=[failed],
            executors=[definition.executor],
            message=f"Retry {definition.display} with {definition.executor}",
        )

    run = _parallel_run(state, registry)
    if run:
        definitions = [registry.get_stage_definition(k) for k in run]
        return NextStep(
            kind=NextStepKind.PARALLEL,
            stages=run,
            executors=[d.executor for d in definitions],
            message="Delegate in parallel: " + " + ".join(d.display for d in definitions),
        )

    definition = registry.get_stage_definition(state.current_stage)
    return NextStep(
        kind=NextStepKind.SINGLE,
        stages=[state.current_stage],
        executors=[definition.executor],
        message=f"Delegate {definition.display} to {definition.executor}",
    )


def activate_stage(
    state: SessionWorkflowState,
    stage_base: str,
    executor: str,
    now: Optional[datetime] = None,
) -> SessionWorkflowState:
    """Mark the stage ``executor`` was delegated to as active."""

    key = find_active_or_next_pending_key(state, stage_base)
    if key is None:
        raise StageTransitionError(
            f"No active or pending {stage_base!r} stage in session {state.session_id}"
        )
    now = now or utcnow()
    state = _copy(state)
    runtime = state.stages[key]
    if runtime.status == StageStatus.PENDING:
        runtime.status = StageStatus.ACTIVE
        runtime.started_at = now
    state.active_executors[executor] = ActiveExecutor(stage=key, started_at=now)
    _refresh_current_stage(state)
    return state


def release_executor(state: SessionWorkflowState, executor: str) -> SessionWorkflowState:
    if executor not in state.active_executors:
        return state
    state = _copy(state)
    del state.active_executors[executor]
    return state


def mark_converged(state: SessionWorkflowState, group: str) -> SessionWorkflowState:
    """Remember that ``group`` has been reported as converged."""
    if group in state.converged_groups:
        return state
    state = _copy(state)
    state.converged_groups.append(group)
    return state


def retry_stage(
    state: SessionWorkflowState,
    stage_key: str,
    executor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SessionWorkflowState:
    """Reopen a failed or rejected stage under the same key."""

    _require_key(state, stage_key)
    runtime = state.stages[stage_key]
    if runtime.status != StageStatus.COMPLETED or runtime.result not in (
        Verdict.FAIL,
        Verdict.REJECT,
    ):
        raise StageTransitionError(
            f"Stage {stage_key!r} can only be retried after a fail or reject"
        )

    now = now or utcnow()
    state = _copy(state)
    runtime = state.stages[stage_key]
    runtime.status = StageStatus.ACTIVE
    runtime.result = None
    runtime.started_at = now
    runtime.completed_at = None
    if executor is not None:
        state.active_executors[executor] = ActiveExecutor(stage=stage_key, started_at=now)
    _refresh_current_stage(state)
    logger.info(f"Retrying stage {stage_key} in session {state.session_id}")
    return state


def skipped_prerequisites(state: SessionWorkflowState, stage_base: str) -> List[str]:
    """Pending keys that precede the first ``stage_base`` key.

    A non-empty result means delegating ``stage_base`` now would skip them.
    """

    keys = state.keys_for_base(stage_base)
    if not keys:
        return []
    ordered = state.stage_keys()
    first = ordered.index(keys[0])
    return [
        k for k in ordered[:first] if state.stages[k].status == StageStatus.PENDING
    ]


def progress(state: SessionWorkflowState) -> Tuple[int, int]:
    return state.progress()
