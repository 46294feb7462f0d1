"""Unit tests for the governed workflow state machine.

These tests assert that rejected transitions leave no trace, that accepted
ones are durable before ``transition`` returns, and that snapshots restore the
exact context they captured.
"""

from __future__ import annotations

import threading

import pytest

from workflow_governor.persistence.base import WorkflowSnapshot
from workflow_governor.persistence.memory import InMemoryWorkflowStore
from workflow_governor.rules.conditions import InState
from workflow_governor.rules.engine import WorkflowRulesEngine
from workflow_governor.rules.models import DataUpdate, DataUpdateAction, Rule
from workflow_governor.workflow.models import (
    ErrorLogEntry,
    FailureInfo,
    SnapshotTrigger,
    WorkflowAction,
    WorkflowContext,
    WorkflowState,
)
from workflow_governor.workflow.state_machine import WorkflowStateMachine


class FlakyStore(InMemoryWorkflowStore):
    """In-memory store whose writes can be switched off."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_saves = False
        self.fail_snapshots = False

    def save(self, context: WorkflowContext) -> None:
        if self.fail_saves:
            raise OSError("disk full")
        super().save(context)

    def _write_snapshot(self, snapshot: WorkflowSnapshot) -> None:
        if self.fail_snapshots:
            raise OSError("disk full")
        super()._write_snapshot(snapshot)


def test_full_pipeline_reaches_complete(machine: WorkflowStateMachine, drive_to) -> None:
    drive_to(machine, WorkflowState.COMPLETE)

    ctx = machine.context
    assert [e.state for e in ctx.state_history] == [
        WorkflowState.INIT,
        WorkflowState.ANALYZE,
        WorkflowState.PLAN,
        WorkflowState.IMPLEMENT,
        WorkflowState.TEST,
        WorkflowState.REVIEW,
        WorkflowState.COMPLETE,
    ]
    assert ctx.metadata.total_duration_seconds is not None
    assert ctx.metadata.actual_completion is not None
    assert machine.get_available_actions() == []


def test_transition_is_durable_when_it_returns(
    machine: WorkflowStateMachine, memory_store: InMemoryWorkflowStore
) -> None:
    assert machine.transition(WorkflowAction.START_ANALYSIS, actor="alice")

    stored = memory_store.load(machine.session_id)
    assert stored is not None
    assert stored.current_state == WorkflowState.ANALYZE
    assert stored.state_history[-1].actor == "alice"
    assert stored.analysis is not None


def test_rejected_transition_changes_nothing(
    machine: WorkflowStateMachine, memory_store: InMemoryWorkflowStore
) -> None:
    machine.transition(WorkflowAction.START_ANALYSIS)
    machine.update_analysis(confidence=40)
    machine.save()
    before = machine.context.model_dump()
    stored_before = memory_store.load(machine.session_id)

    assert machine.transition(WorkflowAction.COMPLETE_ANALYSIS) is False

    assert machine.context.model_dump() == before
    assert memory_store.load(machine.session_id).model_dump() == stored_before.model_dump()


def test_can_transition_agrees_with_transition(
    memory_store: InMemoryWorkflowStore, drive_to
) -> None:
    for target in [WorkflowState.INIT, WorkflowState.ANALYZE, WorkflowState.TEST]:
        for action in WorkflowAction:
            m = WorkflowStateMachine.create("task", store=memory_store)
            drive_to(m, target)
            predicted = m.can_transition(action)
            assert m.transition(action) is predicted, (target, action)


def test_available_actions_in_analyze(machine: WorkflowStateMachine) -> None:
    machine.transition(WorkflowAction.START_ANALYSIS)

    assert set(machine.get_available_actions()) == {
        WorkflowAction.START_PLANNING,
        WorkflowAction.PAUSE,
        WorkflowAction.FAIL,
    }

    machine.update_analysis(confidence=90, complexity=4)
    assert set(machine.get_available_actions()) == {
        WorkflowAction.COMPLETE_ANALYSIS,
        WorkflowAction.PAUSE,
        WorkflowAction.FAIL,
    }


def test_unknown_action_string_rejected(machine: WorkflowStateMachine) -> None:
    with pytest.raises(ValueError):
        machine.transition("LAUNCH")


def test_progress_is_clamped(machine: WorkflowStateMachine, drive_to) -> None:
    drive_to(machine, WorkflowState.IMPLEMENT)

    machine.update_implementation_progress(-10)
    assert machine.context.implementation.progress == 0

    machine.update_implementation_progress(150)
    assert machine.context.implementation.progress == 100


def test_setters_do_not_persist_or_change_state(
    machine: WorkflowStateMachine, memory_store: InMemoryWorkflowStore
) -> None:
    machine.transition(WorkflowAction.START_ANALYSIS)

    machine.update_analysis(approach="rewrite", confidence=99)
    machine.update_task_description("Something else")

    assert machine.current_state == WorkflowState.ANALYZE
    stored = memory_store.load(machine.session_id)
    assert stored.analysis.approach == ""
    assert stored.task_description == "Implement the export feature"

    machine.save()
    assert memory_store.load(machine.session_id).analysis.confidence == 99


def test_update_rejects_invalid_values(machine: WorkflowStateMachine) -> None:
    machine.transition(WorkflowAction.START_ANALYSIS)

    with pytest.raises(ValueError):
        machine.update_analysis(complexity=9)

    assert machine.context.analysis.complexity == 1


def test_context_property_is_a_copy(machine: WorkflowStateMachine) -> None:
    ctx = machine.context
    ctx.task_description = "mutated"

    assert machine.context.task_description == "Implement the export feature"


def test_pause_and_resume(machine: WorkflowStateMachine, drive_to) -> None:
    drive_to(machine, WorkflowState.PLAN)

    assert machine.transition(WorkflowAction.PAUSE, actor="bob", metadata={"reason": "holiday"})
    ctx = machine.context
    assert ctx.current_state == WorkflowState.PAUSED
    assert ctx.pause_info.previous_state == WorkflowState.PLAN
    assert ctx.pause_info.paused_by == "bob"
    assert ctx.pause_info.reason == "holiday"

    assert machine.get_available_actions() == [WorkflowAction.RESUME]
    assert machine.transition(WorkflowAction.RESUME)
    assert machine.current_state == WorkflowState.PLAN
    assert machine.context.pause_info is None


def test_retry_ceiling(machine: WorkflowStateMachine, drive_to) -> None:
    drive_to(machine, WorkflowState.IMPLEMENT)

    for attempt in range(1, 4):
        assert machine.transition(WorkflowAction.FAIL, metadata={"reason": "build broke"})
        assert machine.context.failure_info.previous_state == WorkflowState.IMPLEMENT
        assert machine.transition(WorkflowAction.RETRY)
        assert machine.current_state == WorkflowState.IMPLEMENT
        assert machine.context.failure_info.recovery_attempts == attempt

    assert machine.transition(WorkflowAction.FAIL)
    assert machine.can_transition(WorkflowAction.RETRY) is False
    assert machine.transition(WorkflowAction.RETRY) is False
    assert machine.current_state == WorkflowState.FAILED

    machine.reset_recovery_attempts()
    assert machine.transition(WorkflowAction.RETRY)
    assert machine.current_state == WorkflowState.IMPLEMENT


def test_failure_info_attempts_never_decrease(machine: WorkflowStateMachine) -> None:
    machine.update_failure_info(FailureInfo(reason="x", recovery_attempts=2))

    machine.update_failure_info(reason="y", recovery_attempts=0)

    info = machine.context.failure_info
    assert info.reason == "y"
    assert info.recovery_attempts == 2


def test_rollback_returns_to_previous_phase(machine: WorkflowStateMachine, drive_to) -> None:
    drive_to(machine, WorkflowState.TEST)

    assert machine.transition(WorkflowAction.ROLLBACK)
    assert machine.current_state == WorkflowState.IMPLEMENT
    assert machine.transition(WorkflowAction.ROLLBACK)
    assert machine.current_state == WorkflowState.PLAN
    # Implementation data survives the rollback.
    assert machine.context.implementation.progress == 95


def test_rollback_unavailable_from_analyze(machine: WorkflowStateMachine) -> None:
    machine.transition(WorkflowAction.START_ANALYSIS)

    assert machine.transition(WorkflowAction.ROLLBACK) is False


def test_snapshot_round_trip(machine: WorkflowStateMachine, drive_to) -> None:
    drive_to(machine, WorkflowState.PLAN)
    at_snapshot = machine.context.model_dump()
    snapshot_id = machine.create_snapshot("before implementation")
    assert snapshot_id is not None

    drive_to(machine, WorkflowState.TEST)
    machine.update_task_description("changed later")

    assert machine.restore_from_snapshot(snapshot_id)
    assert machine.context.model_dump() == at_snapshot

    snapshots = machine.list_snapshots()
    assert len(snapshots) == 2
    assert snapshots[0].trigger == SnapshotTrigger.AUTOMATIC
    assert snapshots[0].state == WorkflowState.TEST


def test_restore_is_persisted(
    machine: WorkflowStateMachine, memory_store: InMemoryWorkflowStore, drive_to
) -> None:
    snapshot_id = machine.create_snapshot()
    drive_to(machine, WorkflowState.PLAN)

    machine.restore_from_snapshot(snapshot_id)

    assert memory_store.load(machine.session_id).current_state == WorkflowState.INIT


def test_longest_session_id_can_be_snapshotted(memory_store: InMemoryWorkflowStore) -> None:
    m = WorkflowStateMachine.create("task", store=memory_store, session_id="s" * 150)

    snapshot_id = m.create_snapshot("long id")
    m.transition(WorkflowAction.START_ANALYSIS)

    assert snapshot_id is not None
    assert m.restore_from_snapshot(snapshot_id)
    assert m.current_state == WorkflowState.INIT


@pytest.mark.parametrize("snapshot_id", ["invalid-snapshot-id", "../etc/passwd"])
def test_restore_unknown_snapshot(machine: WorkflowStateMachine, snapshot_id: str) -> None:
    machine.transition(WorkflowAction.START_ANALYSIS)
    before = machine.context.model_dump()

    assert machine.restore_from_snapshot(snapshot_id) is False
    assert machine.context.model_dump() == before


def test_snapshot_failure_returns_none() -> None:
    store = FlakyStore()
    m = WorkflowStateMachine.create("task", store=store)
    store.fail_snapshots = True

    assert m.create_snapshot("nope") is None


def test_restore_abandoned_when_backup_fails() -> None:
    store = FlakyStore()
    m = WorkflowStateMachine.create("task", store=store)
    snapshot_id = m.create_snapshot()
    m.transition(WorkflowAction.START_ANALYSIS)
    store.fail_snapshots = True

    assert m.restore_from_snapshot(snapshot_id) is False
    assert m.current_state == WorkflowState.ANALYZE


def test_store_failure_propagates_and_keeps_context() -> None:
    store = FlakyStore()
    m = WorkflowStateMachine.create("task", store=store)
    store.fail_saves = True

    with pytest.raises(OSError):
        m.transition(WorkflowAction.START_ANALYSIS)

    assert m.current_state == WorkflowState.INIT
    assert len(m.context.state_history) == 1


def test_versions(machine: WorkflowStateMachine, drive_to) -> None:
    drive_to(machine, WorkflowState.PLAN)
    info = machine.save_version("plan-approved")
    assert info.label == "plan-approved"
    assert info.state == WorkflowState.PLAN

    drive_to(machine, WorkflowState.IMPLEMENT)
    assert machine.restore_version("plan-approved")
    assert machine.current_state == WorkflowState.PLAN
    assert machine.restore_version("missing") is False
    assert [v.label for v in machine.list_versions()] == ["plan-approved"]


def test_implementation_errors_recorded_and_resolved(
    machine: WorkflowStateMachine, drive_to
) -> None:
    drive_to(machine, WorkflowState.IMPLEMENT)
    machine.update_implementation_progress(100, current_milestone="m1")
    entry = machine.record_implementation_error("out of memory", severity="fatal")

    assert entry.milestone == "m1"
    assert machine.transition(WorkflowAction.COMPLETE_IMPLEMENTATION) is False

    assert machine.resolve_implementation_error(entry.id, "raised the limit")
    assert machine.resolve_implementation_error(entry.id) is False
    assert machine.transition(WorkflowAction.COMPLETE_IMPLEMENTATION)


def test_progress_update_appends_errors(machine: WorkflowStateMachine, drive_to) -> None:
    drive_to(machine, WorkflowState.IMPLEMENT)

    machine.update_implementation_progress(
        60, "m2", [ErrorLogEntry(message="lint", severity="warning")]
    )

    impl = machine.context.implementation
    assert impl.current_milestone == "m2"
    assert [e.message for e in impl.errors] == ["lint"]


def test_history_page_and_truncate(machine: WorkflowStateMachine, drive_to) -> None:
    drive_to(machine, WorkflowState.TEST)

    page = machine.history_page(offset=1, limit=2)
    assert [e.state for e in page] == [WorkflowState.ANALYZE, WorkflowState.PLAN]

    assert machine.truncate_history(keep_last=0) == 4
    history = machine.context.state_history
    assert len(history) == 1
    assert history[0].state == WorkflowState.TEST


def test_load_existing_session(memory_store: InMemoryWorkflowStore, drive_to) -> None:
    original = WorkflowStateMachine.create("task", store=memory_store, session_id="wf-load")
    drive_to(original, WorkflowState.PLAN)

    loaded = WorkflowStateMachine.load("wf-load", store=memory_store)

    assert loaded is not None
    assert loaded.current_state == WorkflowState.PLAN
    assert WorkflowStateMachine.load("wf-missing", store=memory_store) is None


def test_rule_changes_are_persisted(memory_store: InMemoryWorkflowStore) -> None:
    engine = WorkflowRulesEngine()
    engine.add_rule(
        Rule(
            id="flag-analysis",
            name="Flag analysis",
            condition=InState.of(WorkflowState.ANALYZE),
            action=DataUpdateAction((DataUpdate("metadata.flags.analysis_seen", True),)),
        )
    )
    m = WorkflowStateMachine.create("task", store=memory_store, engine=engine)

    m.transition(WorkflowAction.START_ANALYSIS)

    assert [r.rule_id for r in m.last_rule_results] == ["flag-analysis"]
    assert memory_store.load(m.session_id).metadata.flags["analysis_seen"] is True


def test_concurrent_transitions_serialize(machine: WorkflowStateMachine) -> None:
    results: list[bool] = []
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        results.append(machine.transition(WorkflowAction.START_ANALYSIS))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert len(machine.context.state_history) == 2
