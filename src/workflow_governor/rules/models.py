"""Rule definitions and execution records.

Rules hold callables (conditions, custom handlers), so they are dataclasses.
Execution records are plain data and use pydantic so they can be returned from
the REST API as-is.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from workflow_governor.rules.conditions import Condition
from workflow_governor.rules.paths import DataOperation, PathError, split_path
from workflow_governor.rules.schema import ObjectSchema
from workflow_governor.workflow.models import (
    RecoveryStrategy,
    SnapshotTrigger,
    WorkflowAction,
    WorkflowContext,
    WorkflowState,
)

NotificationLevel = Literal["info", "warning", "error", "critical"]
RuleKind = Literal["standard", "schema", "recovery"]


# Actions


@dataclass(frozen=True, slots=True)
class StateTransitionAction:
    """Force a state change. Skips the transition table but is recorded in history."""

    target: WorkflowState
    action: WorkflowAction
    reason: str = ""


# Identity and lifecycle fields; state changes go through StateTransitionAction.
PROTECTED_PATHS = frozenset({"session_id", "current_state", "state_history"})


@dataclass(frozen=True, slots=True)
class DataUpdate:
    path: str
    value: object
    operation: DataOperation = "set"

    def __post_init__(self) -> None:
        root = split_path(self.path)[0]
        if root in PROTECTED_PATHS:
            raise PathError(f"{root!r} cannot be changed by a data update ({self.path})")


@dataclass(frozen=True, slots=True)
class DataUpdateAction:
    updates: tuple[DataUpdate, ...]


@dataclass(frozen=True, slots=True)
class NotificationAction:
    level: NotificationLevel
    message: str


@dataclass(frozen=True, slots=True)
class SnapshotAction:
    trigger: SnapshotTrigger = SnapshotTrigger.AUTOMATIC
    description: str = ""


@dataclass(frozen=True, slots=True)
class RecoveryAction:
    strategy: RecoveryStrategy
    target: WorkflowState | None = None
    reason: str = ""


@dataclass(frozen=True, slots=True)
class CustomAction:
    """Injected callback receiving the mutable context; returns success."""

    handler: Callable[[WorkflowContext], bool]
    description: str = ""


RuleAction = (
    StateTransitionAction
    | DataUpdateAction
    | NotificationAction
    | SnapshotAction
    | RecoveryAction
    | CustomAction
)


# Constraints


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Daily window; ``start > end`` wraps around midnight."""

    start: time
    end: time

    @classmethod
    def parse(cls, start: str, end: str) -> TimeWindow:
        return cls(time.fromisoformat(start), time.fromisoformat(end))

    def contains(self, moment: time) -> bool:
        moment = moment.replace(tzinfo=None)
        if self.start <= self.end:
            return self.start <= moment <= self.end
        return moment >= self.start or moment <= self.end


@dataclass(frozen=True, slots=True)
class RuleConstraints:
    required_states: frozenset[WorkflowState] = frozenset()
    blocked_states: frozenset[WorkflowState] = frozenset()
    max_executions: int | None = None
    cooldown_seconds: float | None = None
    time_window: TimeWindow | None = None


# Rules


@dataclass(slots=True)
class Rule:
    id: str
    name: str
    condition: Condition
    action: RuleAction
    priority: int = 0
    enabled: bool = True
    description: str = ""
    category: str = "general"
    tags: frozenset[str] = frozenset()
    constraints: RuleConstraints = field(default_factory=RuleConstraints)


@dataclass(slots=True)
class SchemaValidationRule:
    """Validate the value at ``path`` and run ``on_pass`` or ``on_fail``."""

    id: str
    name: str
    path: str
    schema: ObjectSchema
    on_pass: RuleAction | None = None
    on_fail: RuleAction | None = None
    priority: int = 0
    enabled: bool = True
    description: str = ""
    category: str = "validation"
    tags: frozenset[str] = frozenset()
    constraints: RuleConstraints = field(default_factory=RuleConstraints)


@dataclass(frozen=True, slots=True)
class FailurePattern:
    """Which failures a recovery rule handles. Empty fields match anything."""

    error_types: frozenset[str] = frozenset()
    message_pattern: str | None = None
    states: frozenset[WorkflowState] = frozenset()
    min_consecutive_failures: int | None = None

    def matches(self, context: WorkflowContext, error: BaseException) -> bool:
        if self.error_types:
            names = {cls.__name__ for cls in type(error).__mro__}
            if not names & self.error_types:
                return False
        if self.message_pattern is not None and not re.search(self.message_pattern, str(error)):
            return False
        if self.states and context.current_state not in self.states:
            return False
        if self.min_consecutive_failures is not None:
            # The failure being handled counts as one.
            attempts = context.failure_info.recovery_attempts if context.failure_info else 0
            if attempts + 1 < self.min_consecutive_failures:
                return False
        return True


@dataclass(frozen=True, slots=True)
class DelayedAction:
    delay_seconds: float
    action: RuleAction


@dataclass(frozen=True, slots=True)
class Escalation:
    """Heavier action run once recovery attempts reach ``threshold``."""

    threshold: int
    action: RuleAction


@dataclass(slots=True)
class FailureRecoveryRule:
    id: str
    name: str
    pattern: FailurePattern
    immediate: RuleAction
    delayed: DelayedAction | None = None
    escalation: Escalation | None = None
    priority: int = 0
    enabled: bool = True
    description: str = ""
    category: str = "recovery"
    tags: frozenset[str] = frozenset()
    constraints: RuleConstraints = field(default_factory=RuleConstraints)


AnyRule = Rule | SchemaValidationRule | FailureRecoveryRule


# Results


class RuleImpact(BaseModel):
    state_changed: bool = False
    data_modified: bool = False
    notifications_sent: bool = False
    snapshots_created: bool = False

    model_config = ConfigDict(frozen=True)


class RuleExecutionResult(BaseModel):
    rule_id: str
    rule_kind: RuleKind = "standard"
    session_id: str
    success: bool
    timestamp: datetime
    duration_ms: float = 0.0
    condition_result: bool
    action_executed: bool
    changes: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    error: str | None = None
    impact: RuleImpact = Field(default_factory=RuleImpact)

    model_config = ConfigDict(frozen=True)


class RuleEngineStatistics(BaseModel):
    total_rules: int
    enabled_rules: int
    execution_count: int
    successful_executions: int
    failed_executions: int
    average_execution_time_ms: float
    category_stats: dict[str, int] = Field(default_factory=dict)
    recent_executions: list[RuleExecutionResult] = Field(default_factory=list)
