"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from workflow_governor.core.config import (
    GovernorConfig,
    RulesConfig,
    StateConfig,
    WorkflowConfig,
)
from workflow_governor.persistence.filesystem import FileWorkflowStore
from workflow_governor.persistence.memory import InMemoryWorkflowStore
from workflow_governor.rules.engine import WorkflowRulesEngine
from workflow_governor.workflow.models import (
    PIPELINE_STATES,
    Milestone,
    WorkflowAction,
    WorkflowState,
)
from workflow_governor.workflow.state_machine import WorkflowStateMachine

DriveTo = Callable[[WorkflowStateMachine, WorkflowState], None]


class FakeSync:
    """External sync double counting its calls."""

    def __init__(self, *, output: str = "synced", error: Exception | None = None) -> None:
        self.calls = 0
        self.output = output
        self.error = error

    def run(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.output


class RecordingNotifier:
    """Notifier double keeping every message."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str]] = []

    def notify(self, level, message, context) -> None:  # type: ignore[no-untyped-def]
        self.messages.append((level, message, context.session_id))


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".workflow-state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def workflow_config() -> WorkflowConfig:
    """Provide the default guard thresholds."""
    return WorkflowConfig()


@pytest.fixture
def rules_config() -> RulesConfig:
    """Provide a rules configuration without snapshot cooldown."""
    return RulesConfig(snapshot_cooldown_seconds=0)


@pytest.fixture
def governor_config(temp_state_dir: Path) -> GovernorConfig:
    """Provide a governor configuration writing into the temp directory."""
    return GovernorConfig(
        log_level="DEBUG",
        json_logs=False,
        state=StateConfig(storage_path=temp_state_dir),
        rules=RulesConfig(snapshot_cooldown_seconds=0),
    )


@pytest.fixture
def memory_store() -> InMemoryWorkflowStore:
    """Provide an empty in-memory store."""
    return InMemoryWorkflowStore()


@pytest.fixture
def file_store(temp_state_dir: Path) -> FileWorkflowStore:
    """Provide a file store rooted in the temp directory."""
    return FileWorkflowStore(temp_state_dir)


@pytest.fixture
def engine() -> WorkflowRulesEngine:
    """Provide an engine without any rules."""
    return WorkflowRulesEngine()


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Provide a notifier that records messages."""
    return RecordingNotifier()


@pytest.fixture
def machine(memory_store: InMemoryWorkflowStore) -> WorkflowStateMachine:
    """Provide a machine in INIT without a rules engine."""
    return WorkflowStateMachine.create(
        "Implement the export feature", store=memory_store, session_id="wf-test"
    )


def _drive_to(machine: WorkflowStateMachine, target: WorkflowState) -> None:
    """Feed the guard data and transition until ``target`` is reached."""
    steps: list[tuple[WorkflowState, Callable[[], None], WorkflowAction]] = [
        (WorkflowState.ANALYZE, lambda: None, WorkflowAction.START_ANALYSIS),
        (
            WorkflowState.PLAN,
            lambda: machine.update_analysis(approach="split exporter", confidence=80),
            WorkflowAction.COMPLETE_ANALYSIS,
        ),
        (
            WorkflowState.IMPLEMENT,
            lambda: machine.update_planning(milestones=[Milestone(id="m1", name="Exporter")]),
            WorkflowAction.COMPLETE_PLANNING,
        ),
        (
            WorkflowState.TEST,
            lambda: machine.update_implementation_progress(95),
            WorkflowAction.COMPLETE_IMPLEMENTATION,
        ),
        (
            WorkflowState.REVIEW,
            lambda: machine.update_testing(
                quality_metrics={
                    "code_quality": 90,
                    "performance": 85,
                    "security": 88,
                    "maintainability": 80,
                }
            ),
            WorkflowAction.COMPLETE_TESTING,
        ),
        (
            WorkflowState.COMPLETE,
            lambda: machine.update_review(approval_status="approved"),
            WorkflowAction.COMPLETE_REVIEW,
        ),
    ]
    for state, prepare, action in steps:
        if machine.current_state == target:
            return
        if PIPELINE_STATES.index(state) <= PIPELINE_STATES.index(machine.current_state):
            continue
        prepare()
        assert machine.transition(action), f"{action.value} was rejected"
        assert machine.current_state == state
    assert machine.current_state == target


@pytest.fixture
def drive_to() -> DriveTo:
    """Provide a helper that walks a machine along the happy path."""
    return _drive_to


@pytest.fixture
def fake_sync() -> FakeSync:
    """Provide a succeeding external sync."""
    return FakeSync()


@pytest.fixture
def failing_sync() -> FakeSync:
    """Provide an external sync that always raises."""
    return FakeSync(error=RuntimeError("graph service unreachable"))
