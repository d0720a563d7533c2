"""In-memory implementation of the state store."""

from __future__ import annotations

import threading
from contextlib import AbstractContextManager
from typing import Any, Dict, List, Optional, Tuple

from ..constants import WORKFLOW_DOCUMENT
from .paths import validate_session_id
from .repository import BaseStateStore


class InMemoryStateStore(BaseStateStore):
    """Store session documents in local memory.

    Useful for tests or ephemeral runs. Data is not persisted across
    process restarts; the same revision checks apply as on disk.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._documents: Dict[Tuple[str, str], str] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    def _read_text(self, session_id: str, document: str) -> Optional[str]:
        validate_session_id(session_id)
        with self._lock:
            return self._documents.get((session_id, document))

    def _write_text(self, session_id: str, document: str, text: str) -> None:
        with self._lock:
            self._documents[(session_id, document)] = text

    def _locked(self, session_id: str) -> AbstractContextManager[Any]:
        return self._lock

    def list_sessions(self) -> List[str]:
        with self._lock:
            return sorted(sid for sid, doc in self._documents if doc == WORKFLOW_DOCUMENT)
