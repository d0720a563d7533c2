"""Persistence layer for cadence session state."""

from __future__ import annotations

from typing import Optional

from ..config import CadenceConfig, load_config
from ..registry import WorkflowRegistry, get_registry
from .filesystem import FileSystemStateStore
from .inmemory import InMemoryStateStore
from .paths import SessionPaths, validate_session_id
from .repository import BaseStateStore, StateStore, build_initial_state

_store_instance: StateStore | None = None


def get_store(
    config: Optional[CadenceConfig] = None,
    registry: Optional[WorkflowRegistry] = None,
) -> StateStore:
    """Factory function to obtain a state store.

    The backend is selected by ``config.store.backend``. Without arguments
    the first store built is cached and returned on later calls.
    """

    global _store_instance
    if _store_instance is not None and config is None and registry is None:
        return _store_instance

    config = config or load_config()
    registry = registry or get_registry(config.registry_path)

    if config.store.backend == "inmemory":
        _store_instance = InMemoryStateStore(
            registry=registry,
            max_conflict_retries=config.store.max_conflict_retries,
        )
    elif config.store.backend == "filesystem":
        _store_instance = FileSystemStateStore(
            config.home_path,
            registry=registry,
            max_conflict_retries=config.store.max_conflict_retries,
            lock_timeout=config.store.lock_timeout,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.store.backend}")

    return _store_instance


__all__ = [
    "StateStore",
    "BaseStateStore",
    "FileSystemStateStore",
    "InMemoryStateStore",
    "SessionPaths",
    "build_initial_state",
    "validate_session_id",
    "get_store",
]
