"""Workflow registry: stage catalogue, templates, parallel groups and events."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import yaml

from . import defaults
from .models import (
    EventDefinition,
    ParallelGroup,
    RegistryDefaults,
    StageDefinition,
    StageKind,
    WorkflowRegistry,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)


def build_registry(
    stages: Dict[str, Dict[str, Any]],
    workflows: Dict[str, Dict[str, Any]],
    parallel_groups: Dict[str, list],
    registry_defaults: Dict[str, int],
    events: Dict[str, Dict[str, str]],
) -> WorkflowRegistry:
    """Assemble a validated registry from plain mapping sections."""

    return WorkflowRegistry(
        stages={k: StageDefinition(key=k, **v) for k, v in stages.items()},
        workflows={k: WorkflowTemplate(key=k, **v) for k, v in workflows.items()},
        parallel_groups={
            k: ParallelGroup(name=k, members=list(v)) for k, v in parallel_groups.items()
        },
        defaults=RegistryDefaults(**registry_defaults),
        events={k: EventDefinition(type=k, **v) for k, v in events.items()},
    )


DEFAULT_REGISTRY = build_registry(
    defaults.STAGES,
    defaults.WORKFLOWS,
    defaults.PARALLEL_GROUPS,
    defaults.DEFAULTS,
    defaults.EVENTS,
)


def load_registry(path: str) -> WorkflowRegistry:
    """Load a registry from YAML, merged over the built-in one.

    Each top-level section (``stages``, ``workflows``, ``parallel_groups``,
    ``defaults``, ``events``) replaces built-in entries by key; keys the file
    does not mention keep their built-in values.
    """

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Registry file {path} must contain a mapping")

    stages = {**defaults.STAGES, **(data.get("stages") or {})}
    workflows = {**defaults.WORKFLOWS, **(data.get("workflows") or {})}
    groups = {**defaults.PARALLEL_GROUPS, **(data.get("parallel_groups") or {})}
    registry_defaults = {**defaults.DEFAULTS, **(data.get("defaults") or {})}
    events = {**defaults.EVENTS, **(data.get("events") or {})}

    registry = build_registry(stages, workflows, groups, registry_defaults, events)
    logger.info(
        f"Loaded registry from {path}: {len(registry.stages)} stages, "
        f"{len(registry.workflows)} workflows"
    )
    return registry


_registry_instance: Optional[WorkflowRegistry] = None


def get_registry(path: Optional[str] = None) -> WorkflowRegistry:
    """Return the registry in use, loading ``path`` when one is given."""

    global _registry_instance
    if path is not None:
        _registry_instance = load_registry(path)
        return _registry_instance
    if _registry_instance is None:
        _registry_instance = DEFAULT_REGISTRY
    return _registry_instance


__all__ = [
    "StageKind",
    "StageDefinition",
    "WorkflowTemplate",
    "ParallelGroup",
    "RegistryDefaults",
    "EventDefinition",
    "WorkflowRegistry",
    "DEFAULT_REGISTRY",
    "build_registry",
    "load_registry",
    "get_registry",
]
