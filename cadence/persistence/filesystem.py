"""Durable JSON document store under ``<home>/sessions/<id>/``."""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, List, Optional

from ..constants import DEFAULT_LOCK_TIMEOUT, DEFAULT_MAX_CONFLICT_RETRIES, WORKFLOW_DOCUMENT
from ..registry import WorkflowRegistry
from .locking import atomic_write_text, session_lock
from .paths import SessionPaths
from .repository import BaseStateStore


class FileSystemStateStore(BaseStateStore):
    """Store each session's documents as JSON files.

    Writes go through a temp file and ``os.replace``; revision checks run
    under an exclusive ``flock`` on the session's lock file, which makes the
    store safe for concurrent processes sharing one home directory.
    """

    def __init__(
        self,
        home: str,
        registry: Optional[WorkflowRegistry] = None,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        super().__init__(registry=registry, max_conflict_retries=max_conflict_retries)
        self.paths = SessionPaths(home)
        self.lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    def _read_text(self, session_id: str, document: str) -> Optional[str]:
        path = self.paths.document(session_id, document)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write_text(self, session_id: str, document: str, text: str) -> None:
        self.paths.ensure_session_dir(session_id)
        atomic_write_text(self.paths.document(session_id, document), text)

    def _locked(self, session_id: str) -> AbstractContextManager[Any]:
        return session_lock(self.paths.lock(session_id), self.lock_timeout)

    def list_sessions(self) -> List[str]:
        if not self.paths.sessions_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.paths.sessions_dir.iterdir()
            if (entry / WORKFLOW_DOCUMENT).is_file()
        )
