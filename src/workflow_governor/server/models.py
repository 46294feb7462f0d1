"""Pydantic models for the REST adapter."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from workflow_governor.workflow.models import (
    AutomationLevel,
    Priority,
    WorkflowAction,
    WorkflowState,
)


class CreateWorkflowRequest(BaseModel):
    task_description: str = Field(min_length=1)
    session_id: str | None = None
    priority: Priority = "medium"
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    automation_level: AutomationLevel = "semi_auto"
    assignee: str | None = None
    actor: str | None = None


class TransitionBody(BaseModel):
    action: WorkflowAction
    actor: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TransitionResponse(BaseModel):
    session_id: str
    action: WorkflowAction
    from_state: WorkflowState
    current_state: WorkflowState
    rules_executed: list[str] = Field(default_factory=list)


class SnapshotRequest(BaseModel):
    description: str | None = None


class VersionRequest(BaseModel):
    label: str


class RuleEnabledRequest(BaseModel):
    enabled: bool


class RuleSummary(BaseModel):
    id: str
    name: str
    kind: str
    priority: int
    enabled: bool
    category: str
    description: str = ""
    tags: list[str] = Field(default_factory=list)
