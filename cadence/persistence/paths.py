"""Filesystem layout of durable session data."""

from __future__ import annotations

import os
import re
from pathlib import Path

from ..constants import (
    LOCK_FILE,
    LOOP_DOCUMENT,
    SESSIONS_DIRNAME,
    TIMELINE_COUNTER,
    TIMELINE_DOCUMENT,
    WORKFLOW_DOCUMENT,
)
from ..errors import InvalidSessionIdError

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_session_id(session_id: str) -> str:
    """Reject ids that could escape the sessions directory."""

    if not isinstance(session_id, str) or not _SESSION_ID_RE.match(session_id):
        raise InvalidSessionIdError(f"Invalid session id: {session_id!r}")
    return session_id


class SessionPaths:
    """Resolve per-session document paths under ``<home>/sessions/<id>/``."""

    def __init__(self, home: str | os.PathLike[str]) -> None:
        self.home = Path(home).expanduser()
        self.sessions_dir = self.home / SESSIONS_DIRNAME

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / validate_session_id(session_id)

    def document(self, session_id: str, name: str) -> Path:
        return self.session_dir(session_id) / name

    def workflow(self, session_id: str) -> Path:
        return self.document(session_id, WORKFLOW_DOCUMENT)

    def loop(self, session_id: str) -> Path:
        return self.document(session_id, LOOP_DOCUMENT)

    def timeline(self, session_id: str) -> Path:
        return self.document(session_id, TIMELINE_DOCUMENT)

    def timeline_counter(self, session_id: str) -> Path:
        return self.document(session_id, TIMELINE_COUNTER)

    def lock(self, session_id: str) -> Path:
        return self.document(session_id, LOCK_FILE)

    def ensure_session_dir(self, session_id: str) -> Path:
        path = self.session_dir(session_id)
        path.mkdir(parents=True, exist_ok=True)
        return path
