"""Driver-facing facade tying the store, scheduler, governor, loop and log together."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .config import CadenceConfig, load_config
from .contracts import LoopState, SessionWorkflowState, StageMode, StageStatus, Verdict
from .errors import StageTransitionError
from .governor import check_threshold, classify_outcome, escalate, record_outcome
from .loop import CompletionSignal, LoopController, LoopDecision
from .persistence import StateStore, get_store
from .registry import WorkflowRegistry, get_registry
from .scheduler import (
    NextStep,
    activate_stage,
    advance_on_completion,
    detect_parallel_convergence,
    find_active_or_next_pending_key,
    mark_converged,
    next_step_hint,
    release_executor,
    retry_stage,
    skipped_prerequisites,
)
from .timeline import EventLog, get_event_log

logger = logging.getLogger(__name__)


class DelegationStatus(str, Enum):
    ACCEPTED = "accepted"
    REFUSED = "refused"
    UNRECOGNIZED = "unrecognized"


class DelegationResult(BaseModel):
    status: DelegationStatus
    executor: str
    stage_key: Optional[str] = None
    retry: bool = False
    mode: Optional[StageMode] = None
    skipped: List[str] = Field(default_factory=list)
    message: str = ""

    @property
    def accepted(self) -> bool:
        return self.status == DelegationStatus.ACCEPTED


class StageReport(BaseModel):
    """Everything the driver needs after an executor reported back."""

    recognized: bool
    executor: str
    stage_key: Optional[str] = None
    verdict: Optional[Verdict] = None
    source: Optional[str] = None
    fail_count: int = 0
    reject_count: int = 0
    escalated: bool = False
    escalation: Optional[str] = None
    converged_group: Optional[str] = None
    next_step: Optional[NextStep] = None


class WorkflowStatus(BaseModel):
    state: SessionWorkflowState
    loop: Optional[LoopState] = None
    completed: int
    total: int
    next_step: NextStep


def _retryable_key(state: SessionWorkflowState, stage_base: str) -> Optional[str]:
    """Most recent completed key of ``stage_base`` that failed or was rejected."""
    for key in reversed(state.keys_for_base(stage_base)):
        runtime = state.stages[key]
        if runtime.status == StageStatus.COMPLETED and runtime.result in (
            Verdict.FAIL,
            Verdict.REJECT,
        ):
            return key
    return None


class WorkflowEngine:
    """Synchronous operations a driver calls for one session at a time.

    All durable changes go through ``StateStore.mutate``; timeline events
    are appended after the change they describe has been committed.
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        timeline: Optional[EventLog] = None,
        registry: Optional[WorkflowRegistry] = None,
        config: Optional[CadenceConfig] = None,
    ) -> None:
        self.config = config or load_config()
        self.registry = registry or get_registry(self.config.registry_path)
        self.store = store or get_store(self.config, self.registry)
        self.timeline = timeline or get_event_log(self.config, self.registry)
        self.loop = LoopController(self.store, self.timeline, self.registry)

    # ------------------------------------------------------------------
    def start(
        self, session_id: str, workflow_type: str, feature_name: Optional[str] = None
    ) -> SessionWorkflowState:
        """Initialize ``session_id`` from the ``workflow_type`` template."""

        template = self.registry.get_workflow_template(workflow_type)
        state = self.store.initialize(
            session_id, workflow_type, template.stages, {"feature_name": feature_name}
        )
        self.timeline.append(
            session_id,
            "workflow:start",
            {
                "workflow_type": workflow_type,
                "stages": state.stage_keys(),
                "feature_name": feature_name,
            },
        )
        return state

    # ------------------------------------------------------------------
    def _plan_delegation(
        self, state: SessionWorkflowState, stage_base: str
    ) -> tuple[Optional[str], bool, str]:
        """Return ``(key, is_retry, refusal)`` for delegating ``stage_base``."""

        key = find_active_or_next_pending_key(state, stage_base)
        if key is not None:
            return key, False, ""
        failed = _retryable_key(state, stage_base)
        if failed is None:
            return None, False, f"No remaining {stage_base} stage to delegate"
        if state.escalation:
            return None, False, f"Escalated, retries disabled: {state.escalation}"
        return failed, True, ""

    def delegate(self, session_id: str, executor: str) -> DelegationResult:
        """Record that ``executor`` is being handed its stage.

        Refused when earlier stages are still pending, or when the only
        candidate is a failed stage and the session has been escalated.
        """

        definition = self.registry.stage_for_executor(executor)
        state = self.store.read(session_id)
        if definition is None or state is None or not state.keys_for_base(definition.key):
            return DelegationResult(
                status=DelegationStatus.UNRECOGNIZED,
                executor=executor,
                message=f"{executor} has no stage in session {session_id}",
            )

        stage_base = definition.key
        skipped = skipped_prerequisites(state, stage_base)
        if skipped:
            logger.info(
                f"Refusing {executor} for session {session_id}: "
                f"pending prerequisites {', '.join(skipped)}"
            )
            return DelegationResult(
                status=DelegationStatus.REFUSED,
                executor=executor,
                skipped=skipped,
                message=f"Complete {', '.join(skipped)} before {definition.display}",
            )

        key, is_retry, refusal = self._plan_delegation(state, stage_base)
        if key is None:
            return DelegationResult(
                status=DelegationStatus.REFUSED, executor=executor, message=refusal
            )

        active_before: Dict[str, int] = {}

        def transform(current: SessionWorkflowState) -> SessionWorkflowState:
            active_before["count"] = len(current.active_executors)
            key_now, retry_now, refusal_now = self._plan_delegation(current, stage_base)
            if key_now is None:
                raise StageTransitionError(refusal_now)
            if retry_now:
                return retry_stage(current, key_now, executor=executor)
            return activate_stage(current, stage_base, executor)

        updated = self.store.mutate(session_id, transform)
        key = updated.active_executors[executor].stage
        mode = updated.stages[key].mode

        self.timeline.append(session_id, "agent:delegate", {"agent": executor, "stage": key})
        self.timeline.append(
            session_id,
            "stage:start",
            {"stage": key, "mode": mode.value if mode else None, "retry": is_retry},
        )
        if active_before.get("count") == 1 and len(updated.active_executors) >= 2:
            self.timeline.append(
                session_id,
                "parallel:start",
                {
                    "agents": list(updated.active_executors),
                    "stages": [a.stage for a in updated.active_executors.values()],
                },
            )
        return DelegationResult(
            status=DelegationStatus.ACCEPTED,
            executor=executor,
            stage_key=key,
            retry=is_retry,
            mode=mode,
        )

    # ------------------------------------------------------------------
    def report(self, session_id: str, executor: str, report_text: str) -> StageReport:
        """Classify ``executor``'s report and advance the session.

        Reports that cannot be tied to a stage are ignored apart from
        releasing the executor and logging a ``system:warning`` event.
        """

        definition = self.registry.stage_for_executor(executor)
        state = self.store.read(session_id)
        if definition is None or state is None:
            logger.warning(f"Ignoring report from {executor} for session {session_id}")
            return StageReport(recognized=False, executor=executor)

        stage_base = definition.key
        outcome = classify_outcome(report_text, self.registry.stage_kind(stage_base))
        verdict = outcome.verdict
        max_retries = self.registry.get_defaults().max_retries
        result: Dict[str, Any] = {}

        def transform(current: SessionWorkflowState) -> SessionWorkflowState:
            result.clear()
            key = find_active_or_next_pending_key(current, stage_base)
            if key is None:
                return release_executor(current, executor)
            result["key"] = key
            current = advance_on_completion(current, key, verdict)
            current = release_executor(current, executor)
            current = record_outcome(current, key, verdict)
            if verdict == Verdict.FAIL and check_threshold(current.fail_count, max_retries):
                current = escalate(
                    current,
                    f"Retry limit reached ({current.fail_count}/{max_retries} failures), "
                    f"human intervention required",
                )
            elif verdict == Verdict.REJECT and check_threshold(
                current.reject_count, max_retries
            ):
                current = escalate(
                    current,
                    f"Rejection limit reached ({current.reject_count}/{max_retries}), "
                    f"human intervention required",
                )

            if verdict not in (Verdict.FAIL, Verdict.REJECT):
                group = detect_parallel_convergence(
                    current, current.workflow_type, self.registry, key
                )
                if group:
                    result["converged"] = group
                    current = mark_converged(current, group)
            return current

        if find_active_or_next_pending_key(state, stage_base) is None:
            return self._ignore_report(session_id, executor, state)

        updated = self.store.mutate(session_id, transform)
        key = result.get("key")
        if key is None:
            # the stage was completed by someone else between read and write
            return self._ignore_report(session_id, executor)

        self.timeline.append(
            session_id,
            "agent:complete",
            {"agent": executor, "stage": key, "result": verdict.value},
        )
        self.timeline.append(
            session_id, "stage:complete", {"stage": key, "result": verdict.value}
        )
        logger.info(f"Stage {key} of session {session_id} completed: {verdict.value}")

        converged = None
        if verdict in (Verdict.FAIL, Verdict.REJECT):
            if updated.escalation:
                self.timeline.append(
                    session_id,
                    "error:fatal",
                    {
                        "stage": key,
                        "reason": updated.escalation,
                        "fail_count": updated.fail_count,
                        "reject_count": updated.reject_count,
                    },
                )
            else:
                self.timeline.append(
                    session_id,
                    "stage:retry",
                    {
                        "stage": key,
                        "result": verdict.value,
                        "fail_count": updated.fail_count,
                        "reject_count": updated.reject_count,
                    },
                )
        else:
            converged = result.get("converged")
            if converged:
                self.timeline.append(session_id, "parallel:converge", {"group": converged})
            loop = self.store.read_loop(session_id)
            if loop is not None and loop.consecutive_errors > 0:
                self.loop.reset_errors(session_id)

        return StageReport(
            recognized=True,
            executor=executor,
            stage_key=key,
            verdict=verdict,
            source=outcome.source,
            fail_count=updated.fail_count,
            reject_count=updated.reject_count,
            escalated=updated.escalation is not None,
            escalation=updated.escalation,
            converged_group=converged,
            next_step=next_step_hint(updated, self.registry),
        )

    def _ignore_report(
        self,
        session_id: str,
        executor: str,
        state: Optional[SessionWorkflowState] = None,
    ) -> StageReport:
        # only the executor binding is released; stages and counters stay as they are
        if state is not None and executor in state.active_executors:
            self.store.mutate(session_id, lambda s: release_executor(s, executor))
        logger.warning(
            f"Report from {executor} matches no active or pending stage "
            f"in session {session_id}"
        )
        self.timeline.append(
            session_id,
            "system:warning",
            {"warning": "unrecognized-report", "agent": executor},
        )
        return StageReport(recognized=False, executor=executor)

    def report_error(self, session_id: str, executor: str, error: str) -> LoopState:
        """Record that ``executor`` crashed rather than reporting a verdict."""

        state = self.store.read(session_id)
        if state is not None and executor in state.active_executors:
            self.store.mutate(session_id, lambda s: release_executor(s, executor))
        self.timeline.append(session_id, "agent:error", {"agent": executor, "error": error})
        return self.loop.record_error(session_id)

    # ------------------------------------------------------------------
    def retry(
        self, session_id: str, stage_base: str, executor: Optional[str] = None
    ) -> DelegationResult:
        """Reopen the latest failed or rejected ``stage_base`` key."""

        definition = self.registry.get_stage_definition(stage_base)
        executor = executor or definition.executor
        state = self.store.read(session_id)
        if state is None:
            return DelegationResult(
                status=DelegationStatus.UNRECOGNIZED,
                executor=executor,
                message=f"No workflow for session {session_id}",
            )
        if state.escalation:
            return DelegationResult(
                status=DelegationStatus.REFUSED,
                executor=executor,
                message=f"Escalated, retries disabled: {state.escalation}",
            )
        if _retryable_key(state, definition.key) is None:
            return DelegationResult(
                status=DelegationStatus.REFUSED,
                executor=executor,
                message=f"No failed or rejected {definition.key} stage to retry",
            )

        chosen: Dict[str, str] = {}

        def transform(current: SessionWorkflowState) -> SessionWorkflowState:
            key = _retryable_key(current, definition.key)
            if key is None or current.escalation:
                raise StageTransitionError(f"{definition.key} can no longer be retried")
            chosen["key"] = key
            return retry_stage(current, key, executor=executor)

        updated = self.store.mutate(session_id, transform)
        key = chosen["key"]
        mode = updated.stages[key].mode
        self.timeline.append(
            session_id,
            "stage:start",
            {"stage": key, "mode": mode.value if mode else None, "retry": True},
        )
        return DelegationResult(
            status=DelegationStatus.ACCEPTED,
            executor=executor,
            stage_key=key,
            retry=True,
            mode=mode,
        )

    # ------------------------------------------------------------------
    def check(
        self, session_id: str, external_complete: CompletionSignal = None
    ) -> LoopDecision:
        return self.loop.check_and_advance(session_id, external_complete)

    def stop(self, session_id: str, reason: str = "Stopped manually") -> LoopState:
        return self.loop.exit_manually(session_id, reason)

    def status(self, session_id: str) -> Optional[WorkflowStatus]:
        """Read-only snapshot of a session."""

        state = self.store.read(session_id)
        if state is None:
            return None
        completed, total = state.progress()
        return WorkflowStatus(
            state=state,
            loop=self.store.read_loop(session_id),
            completed=completed,
            total=total,
            next_step=next_step_hint(state, self.registry),
        )
