"""Rules engine evaluated against workflow contexts.

The engine is an explicit object: rules, execution counters and history belong
to the instance, so several engines can coexist (one per governor, one per
test). Counters used by ``max_executions`` and ``cooldown_seconds`` are kept
per ``(session_id, rule_id)`` so one engine can serve many sessions.

Evaluation order for :meth:`WorkflowRulesEngine.execute_rules`:

1. keep enabled rules whose constraints pass (states, execution cap,
   cooldown, time window);
2. evaluate every condition against the context as it is before any action;
3. run the matching rules by descending priority (ties keep insertion order).

Every evaluated rule yields a :class:`RuleExecutionResult`, including the ones
that did not match, so callers can see why nothing happened.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from time import perf_counter
from typing import Protocol, TypeVar

from workflow_governor.rules.models import (
    AnyRule,
    CustomAction,
    DataUpdateAction,
    FailureRecoveryRule,
    NotificationAction,
    NotificationLevel,
    RecoveryAction,
    Rule,
    RuleAction,
    RuleConstraints,
    RuleEngineStatistics,
    RuleExecutionResult,
    RuleImpact,
    RuleKind,
    SchemaValidationRule,
    SnapshotAction,
    StateTransitionAction,
)
from workflow_governor.rules.notifications import LoggingNotifier, Notifier
from workflow_governor.rules.paths import apply_update, get_path
from workflow_governor.workflow.models import (
    FailureInfo,
    PauseInfo,
    RecoveryStrategy,
    SnapshotTrigger,
    WorkflowAction,
    WorkflowContext,
    WorkflowState,
    utc_now,
)
from workflow_governor.workflow.transitions import apply_entry_effects

logger = logging.getLogger(__name__)

ENGINE_ACTOR = "rules-engine"
RECENT_EXECUTIONS = 10

ScheduledCallback = Callable[[WorkflowContext], None]
_R = TypeVar("_R", Rule, SchemaValidationRule, FailureRecoveryRule)


class RuleHost(Protocol):
    """Services the engine needs from whoever owns the context."""

    def request_snapshot(self, trigger: SnapshotTrigger, description: str) -> str | None: ...

    def schedule(self, delay_seconds: float, callback: ScheduledCallback) -> None: ...


@dataclass(slots=True)
class _Outcome:
    ok: bool = True
    changes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    state_changed: bool = False
    data_modified: bool = False
    notifications_sent: bool = False
    snapshots_created: bool = False

    def fail(self, warning: str) -> None:
        self.ok = False
        self.warnings.append(warning)


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _commit(context: WorkflowContext, working: WorkflowContext) -> None:
    for name in type(context).model_fields:
        setattr(context, name, getattr(working, name))


class WorkflowRulesEngine:
    """Evaluate prioritized rules and apply their actions to a context."""

    def __init__(
        self,
        *,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
        max_history_size: int = 1000,
    ) -> None:
        """Initialize the engine.

        Args:
            notifier: Sink for notification actions. Defaults to logging.
            clock: Returns the current timezone-aware time. Cooldowns use it and
                time windows are checked against its wall-clock time.
            max_history_size: Number of execution results kept.
        """
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._clock = clock or _local_now
        self._rules: dict[str, AnyRule] = {}
        self._executions: dict[tuple[str, str], int] = {}
        self._last_run: dict[tuple[str, str], datetime] = {}
        self._history: deque[RuleExecutionResult] = deque(maxlen=max_history_size)
        self._enabled = True
        self._lock = threading.Lock()

    # Registry

    def add_rule(self, rule: AnyRule) -> None:
        """Register a standard, schema or recovery rule. Re-adding an id replaces it."""
        with self._lock:
            replaced = rule.id in self._rules
            self._rules[rule.id] = rule
        logger.debug(
            f"{'Replaced' if replaced else 'Added'} rule {rule.id}",
            extra={"rule_id": rule.id, "priority": rule.priority},
        )

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def get_rule(self, rule_id: str) -> AnyRule | None:
        with self._lock:
            return self._rules.get(rule_id)

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return False
            rule.enabled = enabled
            return True

    @property
    def rules(self) -> list[AnyRule]:
        with self._lock:
            return list(self._rules.values())

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info(f"Rules engine {'enabled' if enabled else 'disabled'}")

    # History and counters

    @property
    def history(self) -> list[RuleExecutionResult]:
        with self._lock:
            return list(self._history)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    def execution_count(self, session_id: str, rule_id: str) -> int:
        with self._lock:
            return self._executions.get((session_id, rule_id), 0)

    def reset_executions(self, session_id: str | None = None) -> None:
        """Forget execution counters and cooldowns, for one session or all."""
        with self._lock:
            for store in (self._executions, self._last_run):
                for key in [k for k in store if session_id is None or k[0] == session_id]:
                    del store[key]

    def statistics(self) -> RuleEngineStatistics:
        with self._lock:
            rules = list(self._rules.values())
            history = list(self._history)

        categories: dict[str, int] = {}
        for rule in rules:
            categories[rule.category] = categories.get(rule.category, 0) + 1

        successful = sum(1 for r in history if r.success)
        average = sum(r.duration_ms for r in history) / len(history) if history else 0.0
        return RuleEngineStatistics(
            total_rules=len(rules),
            enabled_rules=sum(1 for r in rules if r.enabled),
            execution_count=len(history),
            successful_executions=successful,
            failed_executions=len(history) - successful,
            average_execution_time_ms=average,
            category_stats=categories,
            recent_executions=history[-RECENT_EXECUTIONS:],
        )

    # Evaluation

    def execute_rules(
        self, context: WorkflowContext, host: RuleHost | None = None
    ) -> list[RuleExecutionResult]:
        if not self._enabled:
            return []

        now = self._clock()
        evaluations: list[tuple[Rule, bool, str | None]] = []
        for rule in self._eligible(Rule, context, now):
            try:
                evaluations.append((rule, bool(rule.condition(context)), None))
            except Exception as e:
                logger.warning(
                    f"Condition of rule {rule.id} raised, skipping it: {e}",
                    exc_info=True,
                    extra={"rule_id": rule.id, "session_id": context.session_id},
                )
                evaluations.append((rule, False, f"condition failed: {e}"))

        results: list[RuleExecutionResult] = []
        for rule, matched, error in evaluations:
            if error is not None or not matched:
                results.append(self._not_run(rule.id, "standard", context, now, error=error))
                continue
            steps = partial(self._apply, rule.action, host, rule.id)
            results.append(self._execute(rule.id, "standard", context, now, steps))

        self._remember(results)
        return results

    def execute_schema_validation(
        self, context: WorkflowContext, host: RuleHost | None = None
    ) -> list[RuleExecutionResult]:
        if not self._enabled:
            return []

        now = self._clock()
        results: list[RuleExecutionResult] = []
        for rule in self._eligible(SchemaValidationRule, context, now):
            try:
                violations = rule.schema.validate(get_path(context, rule.path))
            except Exception as e:
                logger.warning(
                    f"Schema rule {rule.id} could not validate {rule.path}: {e}",
                    extra={"rule_id": rule.id, "session_id": context.session_id},
                )
                results.append(
                    self._not_run(rule.id, "schema", context, now, error=f"validation failed: {e}")
                )
                continue

            passed = not violations
            action = rule.on_pass if passed else rule.on_fail
            if action is None:
                results.append(
                    self._not_run(
                        rule.id, "schema", context, now, condition_result=passed, warnings=violations
                    )
                )
                continue
            steps = partial(self._apply, action, host, rule.id)
            results.append(
                self._execute(
                    rule.id, "schema", context, now, steps, condition_result=passed, warnings=violations
                )
            )

        self._remember(results)
        return results

    def execute_failure_recovery(
        self, context: WorkflowContext, error: BaseException, host: RuleHost | None = None
    ) -> list[RuleExecutionResult]:
        if not self._enabled:
            return []

        now = self._clock()
        results: list[RuleExecutionResult] = []
        for rule in self._eligible(FailureRecoveryRule, context, now):
            try:
                matched = rule.pattern.matches(context, error)
            except re.error as e:
                logger.warning(
                    f"Recovery rule {rule.id} has an invalid message pattern: {e}",
                    extra={"rule_id": rule.id},
                )
                results.append(
                    self._not_run(rule.id, "recovery", context, now, error=f"bad pattern: {e}")
                )
                continue
            if not matched:
                results.append(self._not_run(rule.id, "recovery", context, now))
                continue
            steps = partial(self._recover_steps, rule, host)
            results.append(self._execute(rule.id, "recovery", context, now, steps))

        self._remember(results)
        return results

    # Internals

    def _eligible(self, kind: type[_R], context: WorkflowContext, now: datetime) -> list[_R]:
        with self._lock:
            candidates = [r for r in self._rules.values() if isinstance(r, kind) and r.enabled]
        eligible = [r for r in candidates if self._constraints_pass(r.id, r.constraints, context, now)]
        # sorted() is stable: equal priorities keep registration order.
        return sorted(eligible, key=lambda r: r.priority, reverse=True)

    def _constraints_pass(
        self, rule_id: str, constraints: RuleConstraints, context: WorkflowContext, now: datetime
    ) -> bool:
        state = context.current_state
        if constraints.required_states and state not in constraints.required_states:
            return False
        if state in constraints.blocked_states:
            return False

        key = (context.session_id, rule_id)
        with self._lock:
            count = self._executions.get(key, 0)
            last_run = self._last_run.get(key)

        if constraints.max_executions is not None and count >= constraints.max_executions:
            return False
        if constraints.cooldown_seconds is not None and last_run is not None:
            if (now - last_run).total_seconds() < constraints.cooldown_seconds:
                return False
        if constraints.time_window is not None and not constraints.time_window.contains(now.time()):
            return False
        return True

    def _not_run(
        self,
        rule_id: str,
        kind: RuleKind,
        context: WorkflowContext,
        now: datetime,
        *,
        error: str | None = None,
        condition_result: bool = False,
        warnings: list[str] | tuple[str, ...] = (),
    ) -> RuleExecutionResult:
        return RuleExecutionResult(
            rule_id=rule_id,
            rule_kind=kind,
            session_id=context.session_id,
            success=error is None,
            timestamp=now,
            condition_result=condition_result,
            action_executed=False,
            warnings=tuple(warnings),
            error=error,
        )

    def _execute(
        self,
        rule_id: str,
        kind: RuleKind,
        context: WorkflowContext,
        now: datetime,
        steps: Callable[[WorkflowContext, _Outcome], None],
        *,
        condition_result: bool = True,
        warnings: list[str] | tuple[str, ...] = (),
    ) -> RuleExecutionResult:
        outcome = _Outcome(warnings=list(warnings))
        working = context.model_copy(deep=True)
        error: str | None = None
        started = perf_counter()
        try:
            steps(working, outcome)
        except Exception as e:
            logger.exception(
                f"Rule {rule_id} failed, its changes are discarded",
                extra={"rule_id": rule_id, "session_id": context.session_id},
            )
            error = str(e) or type(e).__name__
            outcome.state_changed = outcome.data_modified = False
        else:
            _commit(context, working)
        duration_ms = (perf_counter() - started) * 1000

        with self._lock:
            key = (context.session_id, rule_id)
            self._executions[key] = self._executions.get(key, 0) + 1
            self._last_run[key] = now

        result = RuleExecutionResult(
            rule_id=rule_id,
            rule_kind=kind,
            session_id=context.session_id,
            success=error is None and outcome.ok,
            timestamp=now,
            duration_ms=duration_ms,
            condition_result=condition_result,
            action_executed=True,
            changes=tuple(outcome.changes),
            warnings=tuple(outcome.warnings),
            error=error,
            impact=RuleImpact(
                state_changed=outcome.state_changed,
                data_modified=outcome.data_modified,
                notifications_sent=outcome.notifications_sent,
                snapshots_created=outcome.snapshots_created,
            ),
        )
        logger.info(
            f"Rule executed: {rule_id}",
            extra={
                "rule_id": rule_id,
                "session_id": context.session_id,
                "success": result.success,
                "duration_ms": round(duration_ms, 3),
            },
        )
        return result

    def _remember(self, results: list[RuleExecutionResult]) -> None:
        with self._lock:
            self._history.extend(results)

    def _recover_steps(
        self,
        rule: FailureRecoveryRule,
        host: RuleHost | None,
        context: WorkflowContext,
        outcome: _Outcome,
    ) -> None:
        self._apply(rule.immediate, host, rule.id, context, outcome)

        if rule.delayed is not None:
            if host is None:
                outcome.warnings.append("delayed action dropped: no scheduler available")
            else:
                delayed = rule.delayed
                host.schedule(
                    delayed.delay_seconds,
                    partial(self._run_delayed, rule.id, delayed.action, host),
                )
                outcome.changes.append(f"scheduled delayed action in {delayed.delay_seconds:g}s")

        if rule.escalation is not None:
            attempts = context.failure_info.recovery_attempts if context.failure_info else 0
            if attempts >= rule.escalation.threshold:
                outcome.changes.append(
                    f"escalated after {attempts} attempt(s) (threshold {rule.escalation.threshold})"
                )
                self._apply(rule.escalation.action, host, rule.id, context, outcome)

    def _run_delayed(
        self, rule_id: str, action: RuleAction, host: RuleHost, context: WorkflowContext
    ) -> None:
        steps = partial(self._apply, action, host, rule_id)
        result = self._execute(rule_id, "recovery", context, self._clock(), steps)
        self._remember([result])

    def _apply(
        self,
        action: RuleAction,
        host: RuleHost | None,
        rule_id: str,
        context: WorkflowContext,
        outcome: _Outcome,
    ) -> None:
        if isinstance(action, StateTransitionAction):
            self._force_transition(
                context, action.target, action.action, rule_id, action.reason, outcome
            )
        elif isinstance(action, DataUpdateAction):
            for update in action.updates:
                apply_update(context, update.path, update.value, update.operation)
                outcome.changes.append(f"{update.operation} {update.path}")
            context.normalize()
            context.touch()
            outcome.data_modified = True
        elif isinstance(action, NotificationAction):
            self._notify(action.level, action.message, context)
            outcome.notifications_sent = True
            outcome.changes.append(f"{action.level} notification sent")
        elif isinstance(action, SnapshotAction):
            if host is None:
                outcome.fail("snapshot skipped: no snapshot host available")
                return
            description = action.description or f"Snapshot requested by rule {rule_id}"
            snapshot_id = host.request_snapshot(action.trigger, description)
            if snapshot_id is None:
                outcome.fail("snapshot could not be created")
                return
            outcome.snapshots_created = True
            outcome.changes.append(f"snapshot {snapshot_id} created")
        elif isinstance(action, RecoveryAction):
            self._recover(action, context, rule_id, outcome)
        elif isinstance(action, CustomAction):
            ok = bool(action.handler(context))
            outcome.data_modified = True
            outcome.changes.append(action.description or f"custom action of {rule_id}")
            if not ok:
                outcome.fail(f"custom action of {rule_id} reported failure")
        else:
            raise TypeError(f"Unsupported rule action: {type(action).__name__}")

    def _recover(
        self, action: RecoveryAction, context: WorkflowContext, rule_id: str, outcome: _Outcome
    ) -> None:
        strategy = action.strategy
        now = utc_now()

        if strategy is RecoveryStrategy.RETRY:
            info = context.failure_info or FailureInfo(
                failed_at=now,
                reason=action.reason or "recovery requested",
                previous_state=context.current_state,
            )
            info.recovery_attempts += 1
            info.last_recovery_at = now
            context.failure_info = info
            outcome.data_modified = True
            outcome.changes.append(f"recovery attempt {info.recovery_attempts}")
        elif strategy is RecoveryStrategy.ROLLBACK:
            target = action.target or context.rollback_target()
            if target is None:
                outcome.fail("no earlier state to roll back to")
                return
            self._force_transition(
                context, target, WorkflowAction.ROLLBACK, rule_id, action.reason, outcome
            )
        elif strategy is RecoveryStrategy.PAUSE:
            if context.current_state is WorkflowState.PAUSED:
                outcome.warnings.append("already paused")
                return
            context.pause_info = PauseInfo(
                paused_at=now,
                paused_by=ENGINE_ACTOR,
                reason=action.reason or f"Paused by rule {rule_id}",
                previous_state=context.current_state,
            )
            self._force_transition(
                context, WorkflowState.PAUSED, WorkflowAction.PAUSE, rule_id, action.reason, outcome
            )
        elif strategy is RecoveryStrategy.SKIP:
            outcome.changes.append("failure skipped")
        else:
            # ESCALATE and MANUAL both hand the workflow to an operator.
            reason = action.reason or "automatic recovery exhausted"
            self._notify(
                "critical",
                f"Workflow {context.session_id} needs operator attention: {reason}",
                context,
            )
            context.metadata.flags["escalated"] = True
            outcome.notifications_sent = True
            outcome.data_modified = True
            outcome.changes.append(f"escalated: {reason}")

        if context.failure_info is not None:
            context.failure_info.recovery_strategy = strategy
            outcome.data_modified = True

    def _force_transition(
        self,
        context: WorkflowContext,
        target: WorkflowState,
        action: WorkflowAction,
        rule_id: str,
        reason: str,
        outcome: _Outcome,
    ) -> None:
        source = context.current_state
        if source is target:
            outcome.warnings.append(f"already in {target.value}")
            return
        now = utc_now()
        context.record_transition(
            target,
            action,
            actor=ENGINE_ACTOR,
            metadata={"rule_id": rule_id, "reason": reason} if reason else {"rule_id": rule_id},
            automatic=True,
            now=now,
        )
        apply_entry_effects(context, target, now)
        outcome.state_changed = True
        outcome.changes.append(f"state {source.value} -> {target.value}")
        logger.info(
            f"Rule {rule_id} moved workflow {source.value} -> {target.value}",
            extra={"rule_id": rule_id, "session_id": context.session_id},
        )

    def _notify(self, level: NotificationLevel, message: str, context: WorkflowContext) -> None:
        try:
            self._notifier.notify(level, message, context)
        except Exception:
            logger.exception("Notifier raised; notification dropped")
