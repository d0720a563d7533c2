"""Exception hierarchy for cadence."""

from __future__ import annotations


class CadenceError(Exception):
    """Base class for all cadence errors."""


class ProgrammingError(CadenceError):
    """Caller defect. Never recoverable at runtime."""


class UnknownWorkflowError(ProgrammingError):
    """Workflow type is not present in the registry."""


class UnknownStageError(ProgrammingError):
    """Stage key is not present in the registry or in a session state."""


class UnknownParallelGroupError(ProgrammingError):
    """Parallel group name is not present in the registry."""


class UnknownEventTypeError(ProgrammingError):
    """Timeline event type is not part of the registry's closed set."""


class InvalidTransformError(ProgrammingError):
    """A state transform did not return a state object."""


class InvalidSessionIdError(ProgrammingError):
    """Session id cannot be mapped onto durable storage."""


class StageTransitionError(ProgrammingError):
    """Requested stage transition is not allowed by the stage state machine."""


class SessionNotFoundError(CadenceError, LookupError):
    """Mutation was requested for a session that was never initialized."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"No workflow state for session {session_id!r}")
        self.session_id = session_id


class ConflictError(CadenceError):
    """Concurrent writers kept invalidating the revision this writer read."""


class LockTimeoutError(ConflictError):
    """The per-session advisory lock could not be acquired in time."""
