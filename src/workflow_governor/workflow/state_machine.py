"""Governed workflow state machine.

One :class:`WorkflowStateMachine` owns the live :class:`WorkflowContext` of a
session. Transitions are validated against the table in
:mod:`workflow_governor.workflow.transitions`, applied to a working copy,
persisted, and only then made visible. The rules engine runs afterwards
against the committed context.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel

from workflow_governor.core.config import WorkflowConfig
from workflow_governor.persistence.base import SnapshotInfo, VersionInfo, WorkflowStore
from workflow_governor.rules.engine import ScheduledCallback, WorkflowRulesEngine
from workflow_governor.rules.models import RuleExecutionResult
from workflow_governor.workflow.models import (
    AnalysisData,
    AutomationLevel,
    ErrorLogEntry,
    ErrorSeverity,
    FailureInfo,
    ImplementationData,
    InvalidIdentifierError,
    PlanningData,
    Priority,
    ReviewData,
    SnapshotTrigger,
    StateHistoryEntry,
    TestingData,
    WorkflowAction,
    WorkflowContext,
    WorkflowState,
    clamp_progress,
    new_session_id,
    utc_now,
)
from workflow_governor.workflow.transitions import (
    TRANSITIONS,
    TransitionRequest,
    apply_entry_effects,
    select_transition,
)

logger = logging.getLogger(__name__)

Scheduler = Callable[[float, Callable[[], None]], None]
_M = TypeVar("_M", bound=BaseModel)


def _timer_scheduler(delay_seconds: float, fn: Callable[[], None]) -> None:
    timer = threading.Timer(delay_seconds, fn)
    timer.daemon = True
    timer.start()


def _merged(
    model: type[_M], current: _M | None, replacement: _M | None, changes: dict[str, Any]
) -> _M:
    base = replacement.model_copy(deep=True) if replacement is not None else current or model()
    if not changes:
        return base
    return model.model_validate({**base.model_dump(), **changes})


class WorkflowStateMachine:
    """Drive one workflow session through its guarded transitions.

    All public methods are serialized through a re-entrant lock, so rule
    actions running inside :meth:`transition` can call back into the machine
    (for snapshots) while other threads wait.
    """

    def __init__(
        self,
        context: WorkflowContext,
        *,
        store: WorkflowStore,
        engine: WorkflowRulesEngine | None = None,
        config: WorkflowConfig | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._context = context
        self._store = store
        self._engine = engine
        self._config = config or WorkflowConfig()
        self._scheduler = scheduler or _timer_scheduler
        self._lock = threading.RLock()
        self.last_rule_results: list[RuleExecutionResult] = []

    @classmethod
    def create(
        cls,
        task_description: str,
        *,
        store: WorkflowStore,
        session_id: str | None = None,
        engine: WorkflowRulesEngine | None = None,
        config: WorkflowConfig | None = None,
        scheduler: Scheduler | None = None,
        priority: Priority = "medium",
        category: str | None = None,
        tags: list[str] | tuple[str, ...] | set[str] = (),
        automation_level: AutomationLevel = "semi_auto",
        assignee: str | None = None,
        actor: str = "system",
    ) -> WorkflowStateMachine:
        """Start a new session in INIT and persist it."""
        context = WorkflowContext.new(
            session_id or new_session_id(),
            task_description,
            priority=priority,
            category=category,
            tags=tags,
            automation_level=automation_level,
            assignee=assignee,
            actor=actor,
        )
        store.save(context)
        logger.info(
            f"Workflow created: {context.session_id}",
            extra={"session_id": context.session_id, "priority": priority},
        )
        return cls(context, store=store, engine=engine, config=config, scheduler=scheduler)

    @classmethod
    def load(
        cls,
        session_id: str,
        *,
        store: WorkflowStore,
        engine: WorkflowRulesEngine | None = None,
        config: WorkflowConfig | None = None,
        scheduler: Scheduler | None = None,
    ) -> WorkflowStateMachine | None:
        context = store.load(session_id)
        if context is None:
            return None
        return cls(context, store=store, engine=engine, config=config, scheduler=scheduler)

    # Accessors

    @property
    def session_id(self) -> str:
        return self._context.session_id

    @property
    def current_state(self) -> WorkflowState:
        return self._context.current_state

    @property
    def context(self) -> WorkflowContext:
        """Deep copy of the live context; mutating it has no effect on the machine."""
        with self._lock:
            return self._context.model_copy(deep=True)

    # Transitions

    def can_transition(self, action: WorkflowAction | str) -> bool:
        with self._lock:
            return select_transition(self._context, WorkflowAction(action), self._config).allowed

    def get_available_actions(self) -> list[WorkflowAction]:
        with self._lock:
            actions: list[WorkflowAction] = []
            for rule in TRANSITIONS:
                if rule.source != self._context.current_state or rule.action in actions:
                    continue
                if select_transition(self._context, rule.action, self._config).allowed:
                    actions.append(rule.action)
            return actions

    def transition(
        self,
        action: WorkflowAction | str,
        *,
        actor: str = "system",
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Apply ``action`` if a guarded transition allows it.

        Returns ``False`` without touching the context or the store when no
        transition matches. Store errors propagate and leave the live context
        as it was.
        """
        action = WorkflowAction(action)
        with self._lock:
            source = self._context.current_state
            decision = select_transition(self._context, action, self._config)
            rule, target = decision.rule, decision.target
            if rule is None or target is None:
                logger.warning(
                    f"Transition rejected: {action.value} from {source.value}: "
                    f"{'; '.join(decision.reasons) or 'no matching transition'}",
                    extra={"session_id": self.session_id, "action": action.value},
                )
                return False

            now = utc_now()
            request = TransitionRequest(actor=actor, now=now, metadata=dict(metadata or {}))
            working = self._context.model_copy(deep=True)
            if rule.effect is not None:
                rule.effect(working, request)
            working.record_transition(
                target, action, actor=actor, metadata=dict(request.metadata), now=now
            )
            apply_entry_effects(working, target, now)

            self._store.save(working)
            self._context = working
            logger.info(
                f"Workflow {self.session_id}: {source.value} -> {target.value}",
                extra={
                    "session_id": self.session_id,
                    "action": action.value,
                    "actor": actor,
                    "from_state": source.value,
                    "to_state": target.value,
                },
            )

            self._run_rules()
            return True

    def _run_rules(self) -> None:
        if self._engine is None:
            self.last_rule_results = []
            return
        results = self._engine.execute_rules(self._context, host=self)
        results += self._engine.execute_schema_validation(self._context, host=self)
        self.last_rule_results = results
        if any(r.impact.state_changed or r.impact.data_modified for r in results):
            self._save_quietly()

    def _save_quietly(self) -> None:
        try:
            self._store.save(self._context)
        except Exception:
            logger.exception(
                "Failed to persist rule changes", extra={"session_id": self.session_id}
            )

    # Data setters. None of them change current_state or persist.

    def update_task_description(self, description: str) -> None:
        with self._lock:
            self._context.task_description = description
            self._context.touch()

    def update_analysis(self, analysis: AnalysisData | None = None, **changes: Any) -> None:
        """Replace the analysis data, or merge keyword ``changes`` into it."""
        with self._lock:
            self._context.analysis = _merged(
                AnalysisData, self._context.analysis, analysis, changes
            )
            self._context.touch()
        logger.debug("Analysis updated", extra={"session_id": self.session_id})

    def update_planning(self, planning: PlanningData | None = None, **changes: Any) -> None:
        with self._lock:
            self._context.planning = _merged(
                PlanningData, self._context.planning, planning, changes
            )
            self._context.touch()

    def update_implementation_progress(
        self,
        progress: float,
        current_milestone: str | None = None,
        errors: list[ErrorLogEntry] | None = None,
    ) -> None:
        """Set progress (clamped to 0..100), optionally the milestone, and append errors."""
        with self._lock:
            impl = self._context.implementation or ImplementationData()
            impl.progress = clamp_progress(progress)
            if current_milestone:
                impl.current_milestone = current_milestone
            if errors:
                impl.errors.extend(e.model_copy(deep=True) for e in errors)
            self._context.implementation = impl
            self._context.touch()

    def record_implementation_error(
        self, message: str, *, severity: ErrorSeverity = "error", milestone: str | None = None
    ) -> ErrorLogEntry:
        with self._lock:
            impl = self._context.implementation or ImplementationData()
            entry = ErrorLogEntry(
                message=message,
                severity=severity,
                milestone=milestone or impl.current_milestone,
            )
            impl.errors.append(entry)
            self._context.implementation = impl
            self._context.touch()
        logger.info(
            f"Implementation error recorded ({severity}): {message}",
            extra={"session_id": self.session_id},
        )
        return entry.model_copy()

    def resolve_implementation_error(self, error_id: str, resolution: str = "") -> bool:
        with self._lock:
            impl = self._context.implementation
            if impl is None:
                return False
            for entry in impl.errors:
                if entry.id == error_id and not entry.resolved:
                    entry.resolved = True
                    entry.resolution = resolution or None
                    entry.resolved_at = utc_now()
                    self._context.touch()
                    return True
            return False

    def update_testing(self, testing: TestingData | None = None, **changes: Any) -> None:
        with self._lock:
            self._context.testing = _merged(TestingData, self._context.testing, testing, changes)
            self._context.touch()

    def update_review(self, review: ReviewData | None = None, **changes: Any) -> None:
        with self._lock:
            self._context.review = _merged(ReviewData, self._context.review, review, changes)
            self._context.touch()

    def update_failure_info(self, failure: FailureInfo | None = None, **changes: Any) -> None:
        """Amend failure details. The recovery attempt counter never goes down here."""
        with self._lock:
            current = self._context.failure_info
            updated = _merged(FailureInfo, current, failure, changes)
            if current is not None and updated.recovery_attempts < current.recovery_attempts:
                updated.recovery_attempts = current.recovery_attempts
            self._context.failure_info = updated
            self._context.touch()

    def reset_recovery_attempts(self, *, actor: str = "operator") -> None:
        """Operator override: allow RETRY again after the ceiling was reached."""
        with self._lock:
            if self._context.failure_info is None:
                return
            self._context.failure_info.recovery_attempts = 0
            self._context.touch()
        logger.warning(
            f"Recovery attempts reset by {actor}", extra={"session_id": self.session_id}
        )

    def save(self) -> None:
        with self._lock:
            self._store.save(self._context)

    # Snapshots and versions

    def create_snapshot(
        self,
        description: str | None = None,
        *,
        trigger: SnapshotTrigger = SnapshotTrigger.MANUAL,
    ) -> str | None:
        """Snapshot the live context. Returns ``None`` if the store fails."""
        with self._lock:
            try:
                snapshot = self._store.save_snapshot(
                    self._context, trigger=trigger, description=description
                )
            except Exception as e:
                logger.error(
                    f"Failed to create snapshot: {e}", extra={"session_id": self.session_id}
                )
                return None
            return snapshot.snapshot_id

    def list_snapshots(self) -> list[SnapshotInfo]:
        return self._store.list_snapshots(self.session_id)

    def restore_from_snapshot(self, snapshot_id: str) -> bool:
        """Replace the live context with the snapshot's copy.

        A backup snapshot of the current context is taken first; if that fails
        the restore is abandoned.
        """
        with self._lock:
            try:
                snapshot = self._store.load_snapshot(self.session_id, snapshot_id)
            except InvalidIdentifierError as e:
                logger.warning(str(e), extra={"session_id": self.session_id})
                return False
            if snapshot is None:
                logger.warning(
                    f"Snapshot {snapshot_id} not found", extra={"session_id": self.session_id}
                )
                return False
            return self._replace_context(
                snapshot.context, f"Backup before restore from {snapshot_id}"
            )

    def save_version(self, label: str) -> VersionInfo:
        with self._lock:
            return self._store.save_version(self._context, label)

    def list_versions(self) -> list[VersionInfo]:
        return self._store.list_versions(self.session_id)

    def restore_version(self, label: str) -> bool:
        with self._lock:
            try:
                version = self._store.load_version(self.session_id, label)
            except InvalidIdentifierError as e:
                logger.warning(str(e), extra={"session_id": self.session_id})
                return False
            if version is None:
                logger.warning(
                    f"Version {label} not found", extra={"session_id": self.session_id}
                )
                return False
            return self._replace_context(version.context, f"Backup before restore of {label}")

    def _replace_context(self, replacement: WorkflowContext, backup_description: str) -> bool:
        backup = self.create_snapshot(backup_description, trigger=SnapshotTrigger.AUTOMATIC)
        if backup is None:
            logger.error(
                "Restore abandoned: backup snapshot could not be written",
                extra={"session_id": self.session_id},
            )
            return False
        restored = replacement.model_copy(deep=True)
        self._store.save(restored)
        self._context = restored
        logger.info(
            f"Workflow {self.session_id} restored to {restored.current_state.value}",
            extra={"session_id": self.session_id, "backup_snapshot": backup},
        )
        return True

    # Recovery

    def recover_from_error(self, error: BaseException) -> list[RuleExecutionResult]:
        """Run the recovery rules that match ``error`` and persist what they changed."""
        with self._lock:
            if self._engine is None:
                return []
            results = self._engine.execute_failure_recovery(self._context, error, host=self)
            self.last_rule_results = results
            if any(r.impact.state_changed or r.impact.data_modified for r in results):
                self._save_quietly()
            return results

    # History

    def history_page(self, offset: int = 0, limit: int = 50) -> list[StateHistoryEntry]:
        if offset < 0 or limit < 0:
            raise ValueError("offset and limit must be non-negative")
        with self._lock:
            page = self._context.state_history[offset : offset + limit]
            return [entry.model_copy(deep=True) for entry in page]

    def truncate_history(self, keep_last: int) -> int:
        """Drop old history entries, keeping at least the latest one. Returns how many went."""
        keep = max(1, keep_last)
        with self._lock:
            history = self._context.state_history
            dropped = max(0, len(history) - keep)
            if dropped:
                self._context.state_history = history[-keep:]
                self._context.touch()
            return dropped

    # RuleHost

    def request_snapshot(self, trigger: SnapshotTrigger, description: str) -> str | None:
        return self.create_snapshot(description, trigger=trigger)

    def schedule(self, delay_seconds: float, callback: ScheduledCallback) -> None:
        def run() -> None:
            with self._lock:
                callback(self._context)
                self._save_quietly()

        self._scheduler(delay_seconds, run)
