"""Pydantic models describing the workflow registry."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..contracts import StageKey, base_key
from ..errors import (
    UnknownEventTypeError,
    UnknownParallelGroupError,
    UnknownStageError,
    UnknownWorkflowError,
)


class StageKind(str, Enum):
    """Behavioural family of a stage, used to classify executor reports."""

    PLANNING = "planning"
    BUILD = "build"
    REVIEW = "review"
    VERIFICATION = "verification"
    ADVISORY = "advisory"
    RETROSPECTIVE = "retrospective"
    DOCUMENTATION = "documentation"
    OTHER = "other"


class StageDefinition(BaseModel):
    """One workflow phase and the external executor it is delegated to."""

    model_config = ConfigDict(frozen=True)

    key: str
    label: str
    icon: str = ""
    executor: str
    kind: StageKind = StageKind.OTHER
    color: Optional[str] = None

    @field_validator("key")
    @classmethod
    def _ensure_base_key(cls, v: str) -> str:
        if not v or base_key(v) != v:
            raise ValueError("stage key must be a non-empty base key without suffix")
        return v

    @property
    def display(self) -> str:
        return f"{self.icon} {self.label}".strip()


class WorkflowTemplate(BaseModel):
    """A named workflow shape: ordered (possibly repeating) stage list."""

    model_config = ConfigDict(frozen=True)

    key: str
    label: str = ""
    stages: List[str]
    parallel_groups: List[str] = Field(default_factory=list)


class ParallelGroup(BaseModel):
    """Stages whose simultaneous completion triggers one combined notification."""

    model_config = ConfigDict(frozen=True)

    name: str
    members: List[str]


class RegistryDefaults(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=1)
    max_iterations: int = Field(default=100, ge=1)
    max_consecutive_errors: int = Field(default=3, ge=1)


class EventDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    label: str
    category: str


class WorkflowRegistry(BaseModel):
    """Immutable configuration snapshot shared by every cadence component."""

    model_config = ConfigDict(frozen=True)

    stages: Dict[str, StageDefinition] = Field(default_factory=dict)
    workflows: Dict[str, WorkflowTemplate] = Field(default_factory=dict)
    parallel_groups: Dict[str, ParallelGroup] = Field(default_factory=dict)
    defaults: RegistryDefaults = RegistryDefaults()
    events: Dict[str, EventDefinition] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_references(self) -> "WorkflowRegistry":
        for group in self.parallel_groups.values():
            unknown = [m for m in group.members if m not in self.stages]
            if unknown:
                raise ValueError(f"parallel group {group.name!r} has unknown stages {unknown}")
        for template in self.workflows.values():
            unknown = [s for s in template.stages if s not in self.stages]
            if unknown:
                raise ValueError(f"workflow {template.key!r} has unknown stages {unknown}")
            missing = [g for g in template.parallel_groups if g not in self.parallel_groups]
            if missing:
                raise ValueError(f"workflow {template.key!r} has unknown parallel groups {missing}")
        executors = [d.executor for d in self.stages.values()]
        if len(executors) != len(set(executors)):
            raise ValueError("each executor may be bound to only one stage")
        return self

    # ------------------------------------------------------------------
    def get_stage_definition(self, key: str) -> StageDefinition:
        definition = self.find_stage(key)
        if definition is None:
            raise UnknownStageError(f"Unknown stage: {key!r}")
        return definition

    def find_stage(self, key: str) -> Optional[StageDefinition]:
        """Soft lookup; accepts suffixed keys such as ``TEST:2``."""
        try:
            return self.stages.get(StageKey.parse(key).base)
        except ValueError:
            return None

    def stage_kind(self, key: str) -> StageKind:
        definition = self.find_stage(key)
        return definition.kind if definition else StageKind.OTHER

    def stage_for_executor(self, executor: str) -> Optional[StageDefinition]:
        for definition in self.stages.values():
            if definition.executor == executor:
                return definition
        return None

    def get_workflow_template(self, workflow_type: str) -> WorkflowTemplate:
        template = self.workflows.get(workflow_type)
        if template is None:
            raise UnknownWorkflowError(
                f"Unknown workflow type: {workflow_type!r} "
                f"(available: {', '.join(self.workflows)})"
            )
        return template

    def get_parallel_group_members(self, name: str) -> List[str]:
        group = self.parallel_groups.get(name)
        if group is None:
            raise UnknownParallelGroupError(f"Unknown parallel group: {name!r}")
        return list(group.members)

    def groups_for_workflow(self, workflow_type: str) -> List[ParallelGroup]:
        """Parallel groups that apply to ``workflow_type``, in template order."""
        template = self.get_workflow_template(workflow_type)
        return [self.parallel_groups[name] for name in template.parallel_groups]

    def get_defaults(self) -> RegistryDefaults:
        return self.defaults

    def get_event_definition(self, event_type: str) -> EventDefinition:
        definition = self.events.get(event_type)
        if definition is None:
            raise UnknownEventTypeError(f"Unknown timeline event type: {event_type!r}")
        return definition
