"""Workflow context model.

The context is the single aggregate root of a governed workflow. The state
machine, the rules engine and the stores all exchange :class:`WorkflowContext`
instances (or the sub-structures defined here).
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Priority = Literal["low", "medium", "high", "critical"]
AutomationLevel = Literal["manual", "semi_auto", "full_auto"]
MilestoneStatus = Literal["pending", "in_progress", "completed", "blocked"]
ErrorSeverity = Literal["info", "warning", "error", "fatal"]
QualityGate = Literal["passed", "failed", "pending"]
SuiteType = Literal["unit", "integration", "e2e", "performance", "security"]
SuiteStatus = Literal["pending", "running", "passed", "failed"]
ChecklistCategory = Literal[
    "code", "documentation", "testing", "security", "performance", "quality"
]
ChecklistStatus = Literal["pending", "approved", "rejected"]
ApprovalStatus = Literal["pending", "approved", "rejected", "conditional"]

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,199}$")
# Snapshot ids embed the session id plus a 23 character suffix.
SESSION_ID_MAX_LENGTH = 150


class WorkflowState(str, Enum):
    INIT = "INIT"
    ANALYZE = "ANALYZE"
    PLAN = "PLAN"
    IMPLEMENT = "IMPLEMENT"
    TEST = "TEST"
    REVIEW = "REVIEW"
    COMPLETE = "COMPLETE"
    PAUSED = "PAUSED"
    FAILED = "FAILED"


# Linear pipeline order; PAUSED and FAILED sit outside it.
PIPELINE_STATES: tuple[WorkflowState, ...] = (
    WorkflowState.INIT,
    WorkflowState.ANALYZE,
    WorkflowState.PLAN,
    WorkflowState.IMPLEMENT,
    WorkflowState.TEST,
    WorkflowState.REVIEW,
    WorkflowState.COMPLETE,
)

ACTIVE_STATES: frozenset[WorkflowState] = frozenset(
    {
        WorkflowState.ANALYZE,
        WorkflowState.PLAN,
        WorkflowState.IMPLEMENT,
        WorkflowState.TEST,
        WorkflowState.REVIEW,
    }
)


class WorkflowAction(str, Enum):
    INITIALIZE = "INITIALIZE"
    START_ANALYSIS = "START_ANALYSIS"
    COMPLETE_ANALYSIS = "COMPLETE_ANALYSIS"
    START_PLANNING = "START_PLANNING"
    COMPLETE_PLANNING = "COMPLETE_PLANNING"
    START_IMPLEMENTATION = "START_IMPLEMENTATION"
    COMPLETE_IMPLEMENTATION = "COMPLETE_IMPLEMENTATION"
    START_TESTING = "START_TESTING"
    COMPLETE_TESTING = "COMPLETE_TESTING"
    START_REVIEW = "START_REVIEW"
    COMPLETE_REVIEW = "COMPLETE_REVIEW"
    FINALIZE = "FINALIZE"
    SKIP = "SKIP"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    FAIL = "FAIL"
    RETRY = "RETRY"
    ROLLBACK = "ROLLBACK"


class SnapshotTrigger(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    ERROR = "error"
    MILESTONE = "milestone"


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    ROLLBACK = "rollback"
    PAUSE = "pause"
    SKIP = "skip"
    ESCALATE = "escalate"
    MANUAL = "manual"


class InvalidIdentifierError(ValueError):
    """Raised for session ids or version labels that cannot be used as file names."""


def validate_identifier(value: str, *, kind: str = "identifier") -> str:
    if not isinstance(value, str) or not _IDENTIFIER_RE.match(value):
        raise InvalidIdentifierError(f"Invalid {kind}: {value!r}")
    return value


def validate_session_id(value: str) -> str:
    validate_identifier(value, kind="session id")
    if len(value) > SESSION_ID_MAX_LENGTH:
        raise InvalidIdentifierError(
            f"Invalid session id: longer than {SESSION_ID_MAX_LENGTH} characters"
        )
    return value


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_session_id() -> str:
    return f"wf-{utc_now():%Y%m%d%H%M%S}-{uuid4().hex[:8]}"


def clamp_progress(value: float) -> float:
    return min(100.0, max(0.0, float(value)))


class WorkflowMetadata(BaseModel):
    version: str = "1.0.0"
    started_at: datetime = Field(default_factory=utc_now)
    last_updated: datetime = Field(default_factory=utc_now)
    total_duration_seconds: float | None = None
    automation_level: AutomationLevel = "semi_auto"
    priority: Priority = "medium"
    category: str | None = None
    tags: set[str] = Field(default_factory=set)
    assignee: str | None = None
    reviewer: str | None = None
    estimated_completion: datetime | None = None
    actual_completion: datetime | None = None

    # Free-form flags written by rules (external sync outcome, escalation, ...).
    flags: dict[str, Any] = Field(default_factory=dict)


class AnalysisData(BaseModel):
    approach: str = ""
    confidence: float = Field(default=0, ge=0, le=100)
    estimated_hours: float = Field(default=0, ge=0)
    complexity: int = Field(default=1, ge=1, le=5)
    risks: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    feasibility_score: float = Field(default=0, ge=0, le=100)


class Milestone(BaseModel):
    id: str
    name: str
    description: str = ""
    estimated_duration_hours: float = Field(default=0, ge=0)
    dependencies: list[str] = Field(default_factory=list)
    status: MilestoneStatus = "pending"


class TimeSlot(BaseModel):
    start: datetime
    end: datetime
    assignee: str
    task: str


class RiskMitigation(BaseModel):
    risk: str
    likelihood: int = Field(default=3, ge=1, le=5)
    impact: int = Field(default=3, ge=1, le=5)
    mitigation: str = ""
    contingency: str | None = None


class PlanningData(BaseModel):
    started_at: datetime = Field(default_factory=utc_now)
    milestones: list[Milestone] = Field(default_factory=list)
    time_slots: list[TimeSlot] = Field(default_factory=list)
    risk_mitigation: list[RiskMitigation] = Field(default_factory=list)


class ErrorLogEntry(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    timestamp: datetime = Field(default_factory=utc_now)
    milestone: str | None = None
    message: str
    severity: ErrorSeverity = "error"
    resolved: bool = False
    resolution: str | None = None
    resolved_at: datetime | None = None


class ImplementationMetrics(BaseModel):
    lines_of_code: int | None = None
    test_coverage: float | None = Field(default=None, ge=0, le=100)
    performance_score: float | None = None
    quality_gate: QualityGate | None = None


class ImplementationData(BaseModel):
    started_at: datetime = Field(default_factory=utc_now)
    progress: float = 0
    current_milestone: str | None = None
    completed_milestones: list[str] = Field(default_factory=list)
    errors: list[ErrorLogEntry] = Field(default_factory=list)
    metrics: ImplementationMetrics = Field(default_factory=ImplementationMetrics)

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp_progress(cls, value: Any) -> float:
        return clamp_progress(value)

    def unresolved_fatal_errors(self) -> list[ErrorLogEntry]:
        return [e for e in self.errors if e.severity == "fatal" and not e.resolved]


class TestSuite(BaseModel):
    __test__ = False  # not a pytest class

    name: str
    type: SuiteType = "unit"
    status: SuiteStatus = "pending"
    passed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    coverage: float | None = None


class QualityMetrics(BaseModel):
    code_quality: float | None = Field(default=None, ge=0, le=100)
    performance: float | None = Field(default=None, ge=0, le=100)
    security: float | None = Field(default=None, ge=0, le=100)
    maintainability: float | None = Field(default=None, ge=0, le=100)

    def missing(self) -> list[str]:
        return [name for name, value in self if value is None]


class TestingData(BaseModel):
    __test__ = False

    started_at: datetime = Field(default_factory=utc_now)
    test_suites: list[TestSuite] = Field(default_factory=list)
    quality_metrics: QualityMetrics = Field(default_factory=QualityMetrics)


class ChecklistItem(BaseModel):
    category: ChecklistCategory
    item: str
    status: ChecklistStatus = "pending"
    reviewer: str | None = None
    comment: str | None = None


class ReviewData(BaseModel):
    started_at: datetime = Field(default_factory=utc_now)
    reviewers: list[str] = Field(default_factory=list)
    checklist_items: list[ChecklistItem] = Field(default_factory=list)
    approval_status: ApprovalStatus = "pending"
    final_comments: str | None = None


class FailureInfo(BaseModel):
    failed_at: datetime = Field(default_factory=utc_now)
    reason: str = ""
    error_type: str | None = None
    recovery_attempts: int = Field(default=0, ge=0)
    last_recovery_at: datetime | None = None
    recovery_strategy: RecoveryStrategy | None = None
    previous_state: WorkflowState | None = None


class PauseInfo(BaseModel):
    paused_at: datetime = Field(default_factory=utc_now)
    paused_by: str = "system"
    reason: str = ""
    previous_state: WorkflowState | None = None


class StateHistoryEntry(BaseModel):
    state: WorkflowState
    timestamp: datetime = Field(default_factory=utc_now)
    action: WorkflowAction
    actor: str = "system"
    metadata: dict[str, Any] = Field(default_factory=dict)
    duration_seconds: float | None = Field(
        default=None, description="Time spent in the state that was left"
    )
    automatic: bool = False


class WorkflowContext(BaseModel):
    """Mutable state of one workflow session.

    Invariants checked on construction and load:

    * ``state_history`` is never empty (it starts with the INIT entry).
    * ``current_state`` equals the state of the last history entry.

    All state changes go through :meth:`record_transition`, which keeps both
    in step.
    """

    session_id: str
    task_description: str
    current_state: WorkflowState = WorkflowState.INIT
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)

    analysis: AnalysisData | None = None
    planning: PlanningData | None = None
    implementation: ImplementationData | None = None
    testing: TestingData | None = None
    review: ReviewData | None = None

    failure_info: FailureInfo | None = None
    pause_info: PauseInfo | None = None

    state_history: list[StateHistoryEntry] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @field_validator("session_id")
    @classmethod
    def _check_session_id(cls, value: str) -> str:
        return validate_session_id(value)

    @model_validator(mode="after")
    def _history_matches_state(self) -> WorkflowContext:
        if not self.state_history:
            raise ValueError("state_history must start with the INIT entry")
        if self.state_history[-1].state != self.current_state:
            raise ValueError(
                f"current_state {self.current_state.value} does not match the last "
                f"history entry ({self.state_history[-1].state.value})"
            )
        return self

    @classmethod
    def new(
        cls,
        session_id: str,
        task_description: str,
        *,
        priority: Priority = "medium",
        category: str | None = None,
        tags: set[str] | frozenset[str] | list[str] | tuple[str, ...] = (),
        automation_level: AutomationLevel = "semi_auto",
        assignee: str | None = None,
        actor: str = "system",
    ) -> WorkflowContext:
        now = utc_now()
        return cls(
            session_id=session_id,
            task_description=task_description,
            current_state=WorkflowState.INIT,
            metadata=WorkflowMetadata(
                started_at=now,
                last_updated=now,
                priority=priority,
                category=category,
                tags=set(tags),
                automation_level=automation_level,
                assignee=assignee,
            ),
            state_history=[
                StateHistoryEntry(
                    state=WorkflowState.INIT,
                    timestamp=now,
                    action=WorkflowAction.INITIALIZE,
                    actor=actor,
                )
            ],
        )

    def record_transition(
        self,
        state: WorkflowState,
        action: WorkflowAction,
        *,
        actor: str = "system",
        metadata: dict[str, Any] | None = None,
        automatic: bool = False,
        now: datetime | None = None,
    ) -> StateHistoryEntry:
        """Move to ``state`` and append the matching history entry."""
        now = now or utc_now()
        previous = self.state_history[-1]
        entry = StateHistoryEntry(
            state=state,
            timestamp=now,
            action=action,
            actor=actor,
            metadata=dict(metadata or {}),
            duration_seconds=max(0.0, (now - previous.timestamp).total_seconds()),
            automatic=automatic,
        )
        self.current_state = state
        self.state_history.append(entry)
        self.metadata.last_updated = now
        return entry

    def touch(self) -> None:
        self.metadata.last_updated = utc_now()

    def normalize(self) -> None:
        """Re-apply clamping after free-form updates that bypass validation."""
        if self.implementation is not None:
            self.implementation.progress = clamp_progress(self.implementation.progress)

    def rollback_target(self) -> WorkflowState | None:
        """Most recent earlier pipeline state (never INIT) found in the history."""
        if self.current_state not in PIPELINE_STATES:
            return None
        rank = PIPELINE_STATES.index(self.current_state)
        for entry in reversed(self.state_history[:-1]):
            state = entry.state
            if state in ACTIVE_STATES and PIPELINE_STATES.index(state) < rank:
                return state
        return None

    def last_state_other_than(self, *excluded: WorkflowState) -> WorkflowState | None:
        for entry in reversed(self.state_history):
            if entry.state not in excluded:
                return entry.state
        return None
