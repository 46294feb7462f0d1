"""Built-in rules installed by :func:`register_default_rules`."""

from __future__ import annotations

import logging

from workflow_governor.core.config import RulesConfig
from workflow_governor.rules.conditions import AllOf, FieldTruthy, HistoryLongerThan, InState, Not
from workflow_governor.rules.engine import WorkflowRulesEngine
from workflow_governor.rules.models import (
    CustomAction,
    Escalation,
    FailurePattern,
    FailureRecoveryRule,
    RecoveryAction,
    Rule,
    RuleConstraints,
    SnapshotAction,
)
from workflow_governor.rules.sync import ExternalSync
from workflow_governor.workflow.models import (
    ACTIVE_STATES,
    ChecklistItem,
    RecoveryStrategy,
    ReviewData,
    SnapshotTrigger,
    WorkflowContext,
    WorkflowState,
    utc_now,
)

logger = logging.getLogger(__name__)

AUTO_SNAPSHOT_RULE_ID = "auto-snapshot-on-state-change"
FAILURE_RECOVERY_RULE_ID = "general-failure-recovery"
COMPLETION_SYNC_RULE_ID = "external-sync-on-completion"
QUALITY_GATE_RULE_ID = "quality-gate-validation"

QUALITY_CHECK_ITEM = "Rules compliance"
_MAX_OUTPUT_CHARS = 2000


class CompletionSync:
    """Run the external sync once and record the outcome in ``metadata.flags``.

    Never raises: failures end up in ``sync_error`` and the handler returns
    ``False`` so the rule result is marked unsuccessful.
    """

    def __init__(self, sync: ExternalSync | None, *, source: str = "rules-engine") -> None:
        self._sync = sync
        self._source = source

    def __call__(self, context: WorkflowContext) -> bool:
        flags = context.metadata.flags
        if flags.get("synced"):
            return True

        flags["sync_attempted"] = True
        flags["sync_source"] = self._source
        flags["sync_time"] = utc_now().isoformat()

        if self._sync is None:
            flags["synced"] = False
            flags["sync_error"] = "no external sync configured"
            logger.warning(
                "Workflow completed but no external sync is configured",
                extra={"session_id": context.session_id},
            )
            return False

        try:
            output = self._sync.run()
        except Exception as e:
            flags["synced"] = False
            flags["sync_error"] = str(e) or type(e).__name__
            logger.warning(
                f"External sync failed: {e}",
                extra={"session_id": context.session_id},
            )
            return False

        flags["synced"] = True
        flags["sync_error"] = None
        flags["sync_output"] = output[-_MAX_OUTPUT_CHARS:]
        logger.info("External sync completed", extra={"session_id": context.session_id})
        return True


class QualityGateCheck:
    """Summarise implementation quality as a review checklist entry."""

    def __init__(self, *, min_test_coverage: float = 85.0) -> None:
        self._min_test_coverage = min_test_coverage

    def __call__(self, context: WorkflowContext) -> bool:
        warnings: list[str] = []
        metrics = context.implementation.metrics if context.implementation else None

        if metrics is not None and metrics.test_coverage is not None:
            if metrics.test_coverage < self._min_test_coverage:
                warnings.append(
                    f"test coverage {metrics.test_coverage:g}% is below "
                    f"{self._min_test_coverage:g}%"
                )
        if metrics is not None and metrics.quality_gate == "failed":
            warnings.append("quality gate failed")
        if not context.metadata.flags.get("synced"):
            warnings.append("external sync not completed")

        review = context.review or ReviewData()
        review.checklist_items.append(
            ChecklistItem(
                category="quality",
                item=QUALITY_CHECK_ITEM,
                status="rejected" if warnings else "approved",
                reviewer="rules-engine",
                comment="; ".join(warnings) if warnings else "all checks passed",
            )
        )
        context.review = review
        context.metadata.flags["quality_gate_warnings"] = warnings
        return True


def default_rules(
    config: RulesConfig,
    *,
    sync: ExternalSync | None,
    max_retries: int = 3,
) -> list[Rule | FailureRecoveryRule]:
    complete = frozenset({WorkflowState.COMPLETE})
    return [
        Rule(
            id=AUTO_SNAPSHOT_RULE_ID,
            name="Automatic snapshot on state change",
            description="Snapshot the context after transitions, at most once per cooldown.",
            condition=HistoryLongerThan(1),
            action=SnapshotAction(
                trigger=SnapshotTrigger.AUTOMATIC,
                description="Automatic snapshot after state change",
            ),
            priority=5,
            category="persistence",
            tags=frozenset({"snapshot", "automatic"}),
            constraints=RuleConstraints(
                required_states=ACTIVE_STATES,
                cooldown_seconds=config.snapshot_cooldown_seconds,
            ),
        ),
        FailureRecoveryRule(
            id=FAILURE_RECOVERY_RULE_ID,
            name="Retry, then pause",
            description="Retry on any failure; pause once the retry budget is used up.",
            pattern=FailurePattern(),
            immediate=RecoveryAction(RecoveryStrategy.RETRY),
            escalation=Escalation(
                threshold=max_retries,
                action=RecoveryAction(
                    RecoveryStrategy.PAUSE, reason="recovery attempts exhausted"
                ),
            ),
            priority=8,
            tags=frozenset({"retry", "pause"}),
        ),
        Rule(
            id=COMPLETION_SYNC_RULE_ID,
            name="External sync on completion",
            description="Run the external sync once when the workflow completes.",
            condition=AllOf(
                InState.of(WorkflowState.COMPLETE),
                Not(FieldTruthy("metadata.flags.sync_attempted")),
            ),
            action=CustomAction(CompletionSync(sync), description="external sync"),
            priority=9,
            category="integration",
            tags=frozenset({"sync", "completion"}),
            constraints=RuleConstraints(required_states=complete, max_executions=1),
        ),
        Rule(
            id=QUALITY_GATE_RULE_ID,
            name="Quality gate validation",
            description="Record test coverage and quality gate compliance in the review.",
            condition=InState.of(WorkflowState.COMPLETE),
            action=CustomAction(
                QualityGateCheck(min_test_coverage=config.min_test_coverage),
                description="quality gate check",
            ),
            priority=8,
            category="quality",
            tags=frozenset({"quality", "completion"}),
            constraints=RuleConstraints(required_states=complete, max_executions=1),
        ),
    ]


def register_default_rules(
    engine: WorkflowRulesEngine,
    config: RulesConfig | None = None,
    *,
    sync: ExternalSync | None = None,
    max_retries: int = 3,
) -> None:
    for rule in default_rules(config or RulesConfig(), sync=sync, max_retries=max_retries):
        engine.add_rule(rule)
