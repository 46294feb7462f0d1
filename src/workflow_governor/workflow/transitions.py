"""Canonical transition table of the governed workflow.

Each :class:`TransitionRule` maps ``(source, action)`` to a target state. When
several rules share a source and action, the first one whose guard passes wins.
Guards return ``None`` when the transition is allowed, otherwise a short human
readable reason that is logged by the state machine.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from workflow_governor.core.config import WorkflowConfig
from workflow_governor.workflow.models import (
    ACTIVE_STATES,
    AnalysisData,
    FailureInfo,
    ImplementationData,
    PauseInfo,
    PlanningData,
    RecoveryStrategy,
    ReviewData,
    TestingData,
    WorkflowAction,
    WorkflowContext,
    WorkflowState,
)

Guard = Callable[[WorkflowContext, WorkflowConfig], str | None]
TargetResolver = Callable[[WorkflowContext], WorkflowState | None]


@dataclass(frozen=True, slots=True)
class TransitionRequest:
    """Who asked for a transition, and with which metadata."""

    actor: str
    now: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)


Effect = Callable[[WorkflowContext, TransitionRequest], None]


@dataclass(frozen=True, slots=True)
class TransitionRule:
    source: WorkflowState
    action: WorkflowAction
    target: WorkflowState | TargetResolver
    guard: Guard | None = None
    effect: Effect | None = None
    description: str = ""

    def resolve_target(self, context: WorkflowContext) -> WorkflowState | None:
        if isinstance(self.target, WorkflowState):
            return self.target
        return self.target(context)


@dataclass(frozen=True, slots=True)
class TransitionDecision:
    rule: TransitionRule | None
    target: WorkflowState | None
    reasons: tuple[str, ...] = ()

    @property
    def allowed(self) -> bool:
        return self.rule is not None and self.target is not None


# Guards


def _analysis_confident(ctx: WorkflowContext, cfg: WorkflowConfig) -> str | None:
    if ctx.analysis is None:
        return "analysis data is required"
    if ctx.analysis.confidence < cfg.analysis_confidence_threshold:
        return (
            f"analysis confidence {ctx.analysis.confidence:g} is below "
            f"{cfg.analysis_confidence_threshold:g}"
        )
    return None


def _analysis_simple(ctx: WorkflowContext, cfg: WorkflowConfig) -> str | None:
    if ctx.analysis is None:
        return "analysis data is required"
    if ctx.analysis.complexity > cfg.fast_track_max_complexity:
        return f"complexity {ctx.analysis.complexity} is too high to fast-track planning"
    return None


def _has_milestones(ctx: WorkflowContext, cfg: WorkflowConfig) -> str | None:
    if ctx.planning is None or not ctx.planning.milestones:
        return "at least one milestone is required"
    return None


def _fully_automated(ctx: WorkflowContext, cfg: WorkflowConfig) -> str | None:
    if ctx.metadata.automation_level != "full_auto":
        return "requires full_auto automation level"
    return None


def _implementation_done(ctx: WorkflowContext, cfg: WorkflowConfig) -> str | None:
    impl = ctx.implementation
    if impl is None:
        return "implementation data is required"
    if impl.progress < cfg.implementation_progress_threshold:
        return (
            f"implementation progress {impl.progress:g}% is below "
            f"{cfg.implementation_progress_threshold:g}%"
        )
    fatal = impl.unresolved_fatal_errors()
    if fatal:
        return f"{len(fatal)} unresolved fatal error(s)"
    return None


def _implementation_testable(ctx: WorkflowContext, cfg: WorkflowConfig) -> str | None:
    impl = ctx.implementation
    if impl is None:
        return "implementation data is required"
    if impl.progress < cfg.testing_start_progress_threshold:
        return (
            f"implementation progress {impl.progress:g}% is below "
            f"{cfg.testing_start_progress_threshold:g}%"
        )
    return None


def _quality_sufficient(ctx: WorkflowContext, cfg: WorkflowConfig) -> str | None:
    if ctx.testing is None:
        return "testing data is required"
    metrics = ctx.testing.quality_metrics
    missing = metrics.missing()
    if missing:
        return f"missing quality metrics: {', '.join(missing)}"
    security = metrics.security or 0.0
    if security < cfg.security_threshold:
        return f"security score {security:g} is below {cfg.security_threshold:g}"
    return None


def _low_priority(ctx: WorkflowContext, cfg: WorkflowConfig) -> str | None:
    if ctx.metadata.priority != "low":
        return "only low priority workflows may skip testing"
    return None


def _review_approved(ctx: WorkflowContext, cfg: WorkflowConfig) -> str | None:
    if ctx.review is None:
        return "review data is required"
    if ctx.review.approval_status != "approved":
        return f"review status is {ctx.review.approval_status}"
    return None


def _retries_left(ctx: WorkflowContext, cfg: WorkflowConfig) -> str | None:
    attempts = ctx.failure_info.recovery_attempts if ctx.failure_info else 0
    if attempts >= cfg.max_retries:
        return f"recovery attempts exhausted ({attempts}/{cfg.max_retries})"
    return None


# Dynamic targets


def _resume_target(ctx: WorkflowContext) -> WorkflowState | None:
    if ctx.pause_info is not None and ctx.pause_info.previous_state is not None:
        return ctx.pause_info.previous_state
    return ctx.last_state_other_than(WorkflowState.PAUSED)


def _retry_target(ctx: WorkflowContext) -> WorkflowState | None:
    if ctx.failure_info is not None and ctx.failure_info.previous_state is not None:
        return ctx.failure_info.previous_state
    return ctx.last_state_other_than(WorkflowState.FAILED, WorkflowState.PAUSED)


def _rollback_target(ctx: WorkflowContext) -> WorkflowState | None:
    return ctx.rollback_target()


# Effects, applied before the history entry is appended


def _record_pause(ctx: WorkflowContext, request: TransitionRequest) -> None:
    ctx.pause_info = PauseInfo(
        paused_at=request.now,
        paused_by=request.actor,
        reason=str(request.metadata.get("reason", "Manual pause")),
        previous_state=ctx.current_state,
    )


def _clear_pause(ctx: WorkflowContext, request: TransitionRequest) -> None:
    ctx.pause_info = None


def _record_failure(ctx: WorkflowContext, request: TransitionRequest) -> None:
    previous = ctx.failure_info
    error_type = request.metadata.get("error_type")
    ctx.failure_info = FailureInfo(
        failed_at=request.now,
        reason=str(request.metadata.get("reason", "Workflow failed")),
        error_type=str(error_type) if error_type is not None else None,
        recovery_attempts=previous.recovery_attempts if previous else 0,
        last_recovery_at=previous.last_recovery_at if previous else None,
        recovery_strategy=previous.recovery_strategy if previous else None,
        previous_state=ctx.current_state,
    )


def _count_retry(ctx: WorkflowContext, request: TransitionRequest) -> None:
    info = ctx.failure_info or FailureInfo(failed_at=request.now)
    info.recovery_attempts += 1
    info.last_recovery_at = request.now
    info.recovery_strategy = RecoveryStrategy.RETRY
    ctx.failure_info = info


def _build_table() -> tuple[TransitionRule, ...]:
    S = WorkflowState
    A = WorkflowAction
    rules: list[TransitionRule] = [
        TransitionRule(S.INIT, A.START_ANALYSIS, S.ANALYZE),
        TransitionRule(S.ANALYZE, A.COMPLETE_ANALYSIS, S.PLAN, _analysis_confident),
        TransitionRule(S.ANALYZE, A.START_PLANNING, S.PLAN, _analysis_simple),
        TransitionRule(S.PLAN, A.COMPLETE_PLANNING, S.IMPLEMENT, _has_milestones),
        TransitionRule(S.PLAN, A.START_IMPLEMENTATION, S.IMPLEMENT, _fully_automated),
        TransitionRule(S.IMPLEMENT, A.COMPLETE_IMPLEMENTATION, S.TEST, _implementation_done),
        TransitionRule(S.IMPLEMENT, A.START_TESTING, S.TEST, _implementation_testable),
        TransitionRule(S.TEST, A.COMPLETE_TESTING, S.REVIEW, _quality_sufficient),
        TransitionRule(S.TEST, A.START_REVIEW, S.REVIEW, description="manual reviewer hand-off"),
        TransitionRule(S.TEST, A.SKIP, S.REVIEW, _low_priority),
        TransitionRule(S.REVIEW, A.COMPLETE_REVIEW, S.COMPLETE, _review_approved),
        TransitionRule(S.REVIEW, A.FINALIZE, S.COMPLETE, _fully_automated),
        TransitionRule(S.PAUSED, A.RESUME, _resume_target, effect=_clear_pause),
        TransitionRule(S.FAILED, A.RETRY, _retry_target, _retries_left, _count_retry),
    ]
    for state in [s for s in S if s in ACTIVE_STATES]:
        rules.append(TransitionRule(state, A.PAUSE, S.PAUSED, effect=_record_pause))
        rules.append(TransitionRule(state, A.FAIL, S.FAILED, effect=_record_failure))
        if state is not S.ANALYZE:
            rules.append(TransitionRule(state, A.ROLLBACK, _rollback_target))
    return tuple(rules)


TRANSITIONS: tuple[TransitionRule, ...] = _build_table()


def select_transition(
    context: WorkflowContext,
    action: WorkflowAction,
    config: WorkflowConfig,
    transitions: tuple[TransitionRule, ...] = TRANSITIONS,
) -> TransitionDecision:
    """Pick the first rule for ``(current_state, action)`` whose guard passes.

    Pure: never mutates ``context``. Both ``can_transition`` and ``transition``
    go through here so they cannot disagree.
    """
    reasons: list[str] = []
    candidates = [
        t for t in transitions if t.source == context.current_state and t.action == action
    ]
    if not candidates:
        return TransitionDecision(
            rule=None,
            target=None,
            reasons=(f"{action.value} is not available from {context.current_state.value}",),
        )

    for rule in candidates:
        if rule.guard is not None:
            blocked = rule.guard(context, config)
            if blocked is not None:
                reasons.append(blocked)
                continue
        target = rule.resolve_target(context)
        if target is None:
            reasons.append("no earlier state to return to")
            continue
        return TransitionDecision(rule=rule, target=target, reasons=tuple(reasons))

    return TransitionDecision(rule=None, target=None, reasons=tuple(reasons))


def apply_entry_effects(context: WorkflowContext, state: WorkflowState, now: datetime) -> None:
    """Initialise the sub-structure owned by the entered phase.

    PAUSED and FAILED record their reason through the transition effects
    instead.
    """
    if state is WorkflowState.ANALYZE and context.analysis is None:
        context.analysis = AnalysisData()
    elif state is WorkflowState.PLAN and context.planning is None:
        context.planning = PlanningData(started_at=now)
    elif state is WorkflowState.IMPLEMENT and context.implementation is None:
        milestones = context.planning.milestones if context.planning else []
        first = milestones[0].id if milestones else None
        context.implementation = ImplementationData(started_at=now, current_milestone=first)
    elif state is WorkflowState.TEST and context.testing is None:
        context.testing = TestingData(started_at=now)
    elif state is WorkflowState.REVIEW and context.review is None:
        context.review = ReviewData(started_at=now)
    elif state is WorkflowState.COMPLETE:
        context.metadata.total_duration_seconds = (
            now - context.metadata.started_at
        ).total_seconds()
        context.metadata.actual_completion = now
