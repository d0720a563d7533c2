"""Bounded continue/stop cycle for a session."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Literal, Optional, Union

from pydantic import BaseModel

from .contracts import LoopState, SessionWorkflowState, StopReason
from .persistence import StateStore
from .registry import RegistryDefaults, WorkflowRegistry, get_registry
from .scheduler import NextStep, next_step_hint
from .timeline import EventLog
from .utils.clock import format_duration, utcnow

logger = logging.getLogger(__name__)

CompletionSignal = Union[bool, Callable[[SessionWorkflowState], bool], None]


class LoopDecision(BaseModel):
    """Outcome of one loop check."""

    action: Literal["exit", "continue"]
    reason: Optional[StopReason] = None
    detail: str = ""
    iteration: int = 0
    next_step: Optional[NextStep] = None


class LoopController:
    """Decide whether a session keeps going, stopping on the first of:
    manual stop, iteration ceiling, consecutive-error ceiling, completion.
    """

    def __init__(
        self,
        store: StateStore,
        timeline: EventLog,
        registry: Optional[WorkflowRegistry] = None,
    ) -> None:
        self.store = store
        self.timeline = timeline
        self.registry = registry or get_registry()

    # ------------------------------------------------------------------
    def _stop_condition(
        self,
        loop: LoopState,
        state: SessionWorkflowState,
        completion_signal: Optional[bool],
        defaults: RegistryDefaults,
    ) -> Optional[tuple[StopReason, str]]:
        if loop.iteration >= defaults.max_iterations:
            return (
                StopReason.MAX_ITERATIONS,
                f"Reached maximum iterations ({loop.iteration}/{defaults.max_iterations})",
            )
        if loop.consecutive_errors >= defaults.max_consecutive_errors:
            return (
                StopReason.CONSECUTIVE_ERRORS,
                f"{loop.consecutive_errors} consecutive errors, loop paused",
            )
        if state.all_completed() and completion_signal is not False:
            duration = format_duration(state.created_at)
            if state.has_failed_stage():
                return (
                    StopReason.COMPLETED_ABORTED,
                    f"Workflow {state.workflow_type} finished with failed stages "
                    f"(fail {state.fail_count}, reject {state.reject_count}) in {duration}",
                )
            return (
                StopReason.COMPLETED_CLEAN,
                f"Workflow {state.workflow_type} completed in {duration}",
            )
        return None

    def _continuation(
        self, loop: LoopState, state: SessionWorkflowState, defaults: RegistryDefaults
    ) -> tuple[str, NextStep]:
        hint = next_step_hint(state, self.registry)
        done, total = state.progress()
        lines = [
            f"[Loop {loop.iteration}/{defaults.max_iterations}] Progress {done}/{total}",
            hint.message or "Continue with the next step",
        ]
        if state.escalation and hint.message != state.escalation:
            lines.append(f"Escalated: {state.escalation}")
        return "\n".join(lines), hint

    # ------------------------------------------------------------------
    def check_and_advance(
        self, session_id: str, external_complete: CompletionSignal = None
    ) -> LoopDecision:
        """Run one loop check and persist its effect.

        ``external_complete`` is an optional extra completion signal (a bool
        or a callable given the workflow state); ``False`` keeps an
        otherwise finished workflow looping.
        """

        state = self.store.read(session_id)
        if state is None:
            return LoopDecision(action="exit", detail=f"No workflow for session {session_id}")

        defaults = self.registry.get_defaults()
        signal = external_complete(state) if callable(external_complete) else external_complete
        outcome: Dict[str, Any] = {}

        def transform(loop: LoopState) -> LoopState:
            outcome.clear()
            if loop.stopped:
                outcome["decision"] = LoopDecision(
                    action="exit",
                    reason=loop.stop_reason or StopReason.MANUAL,
                    detail=loop.stop_detail or "Loop stopped",
                    iteration=loop.iteration,
                )
                return loop

            outcome["started"] = loop.iteration == 0
            stop = self._stop_condition(loop, state, signal, defaults)
            if stop is not None:
                reason, detail = stop
                loop.stopped = True
                loop.stopped_at = utcnow()
                loop.stop_reason = reason
                loop.stop_detail = detail
                outcome["stopped"] = True
                outcome["decision"] = LoopDecision(
                    action="exit", reason=reason, detail=detail, iteration=loop.iteration
                )
                return loop

            loop.iteration += 1
            detail, hint = self._continuation(loop, state, defaults)
            outcome["decision"] = LoopDecision(
                action="continue", detail=detail, iteration=loop.iteration, next_step=hint
            )
            return loop

        self.store.mutate_loop(session_id, transform)
        decision: LoopDecision = outcome["decision"]

        if outcome.get("started"):
            self.timeline.append(
                session_id, "loop:start", {"workflow_type": state.workflow_type}
            )
        if outcome.get("stopped"):
            self._emit_stop(session_id, decision.iteration, decision.reason, decision.detail)
            self._emit_completion(session_id, state, decision.reason)
        elif decision.action == "continue":
            done, total = state.progress()
            self.timeline.append(
                session_id,
                "loop:advance",
                {"iteration": decision.iteration, "progress": f"{done}/{total}"},
            )
        return decision

    def _emit_stop(
        self, session_id: str, iteration: int, reason: Optional[StopReason], detail: str
    ) -> None:
        payload = {
            "iteration": iteration,
            "reason": reason.value if reason else None,
            "detail": detail,
        }
        self.timeline.append(session_id, "loop:complete", payload)
        self.timeline.append(session_id, "session:end", payload)
        logger.info(f"Loop for session {session_id} stopped: {detail}")

    def _emit_completion(
        self, session_id: str, state: SessionWorkflowState, reason: Optional[StopReason]
    ) -> None:
        duration = format_duration(state.created_at)
        if reason == StopReason.COMPLETED_CLEAN:
            self.timeline.append(
                session_id,
                "workflow:complete",
                {"workflow_type": state.workflow_type, "duration": duration},
            )
        elif reason == StopReason.COMPLETED_ABORTED:
            self.timeline.append(
                session_id,
                "workflow:abort",
                {
                    "workflow_type": state.workflow_type,
                    "fail_count": state.fail_count,
                    "reject_count": state.reject_count,
                    "duration": duration,
                },
            )

    # ------------------------------------------------------------------
    def exit_manually(self, session_id: str, reason: str = "Stopped manually") -> LoopState:
        """Stop the loop for ``session_id``; later checks exit with ``manual``."""

        newly_stopped = []

        def transform(loop: LoopState) -> LoopState:
            newly_stopped.clear()
            if loop.stopped:
                return loop
            loop.stopped = True
            loop.stopped_at = utcnow()
            loop.stop_reason = StopReason.MANUAL
            loop.stop_detail = reason
            newly_stopped.append(True)
            return loop

        loop = self.store.mutate_loop(session_id, transform)
        if newly_stopped:
            self._emit_stop(session_id, loop.iteration, StopReason.MANUAL, reason)
        return loop

    def record_error(self, session_id: str) -> LoopState:
        def transform(loop: LoopState) -> LoopState:
            loop.consecutive_errors += 1
            return loop

        loop = self.store.mutate_loop(session_id, transform)
        logger.warning(
            f"Session {session_id} has {loop.consecutive_errors} consecutive errors"
        )
        return loop

    def reset_errors(self, session_id: str) -> LoopState:
        def transform(loop: LoopState) -> LoopState:
            loop.consecutive_errors = 0
            return loop

        return self.store.mutate_loop(session_id, transform)

    def status(self, session_id: str) -> Optional[LoopState]:
        return self.store.read_loop(session_id)
