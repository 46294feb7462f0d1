"""Tests for the workflow stores."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from workflow_governor.persistence.base import SessionSummary, WorkflowStore
from workflow_governor.persistence.filesystem import INDEX_VERSION, FileWorkflowStore
from workflow_governor.persistence.memory import InMemoryWorkflowStore
from workflow_governor.workflow.models import (
    InvalidIdentifierError,
    SnapshotTrigger,
    WorkflowAction,
    WorkflowContext,
    WorkflowState,
    utc_now,
)


@pytest.fixture(params=["memory", "file"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> WorkflowStore:
    """Provide each store backend in turn."""
    if request.param == "memory":
        return InMemoryWorkflowStore()
    return FileWorkflowStore(tmp_path / "state")


def _context(
    session_id: str, state: WorkflowState = WorkflowState.INIT, **options: Any
) -> WorkflowContext:
    ctx = WorkflowContext.new(session_id, f"Task for {session_id}", **options)
    if state is not WorkflowState.INIT:
        ctx.record_transition(state, WorkflowAction.START_ANALYSIS)
    return ctx


def test_save_and_load_round_trip(store: WorkflowStore) -> None:
    ctx = _context("wf-1", WorkflowState.ANALYZE, priority="high", tags=["api"])
    ctx.metadata.flags["synced"] = False

    store.save(ctx)
    loaded = store.load("wf-1")

    assert loaded is not None
    assert loaded.model_dump() == ctx.model_dump()
    assert store.exists("wf-1")


def test_loaded_context_is_a_copy(store: WorkflowStore) -> None:
    store.save(_context("wf-1"))

    loaded = store.load("wf-1")
    assert loaded is not None
    loaded.task_description = "changed"

    again = store.load("wf-1")
    assert again is not None
    assert again.task_description == "Task for wf-1"


def test_load_missing_returns_none(store: WorkflowStore) -> None:
    assert store.load("wf-missing") is None
    assert store.exists("wf-missing") is False


def test_invalid_session_id_is_rejected(store: WorkflowStore) -> None:
    with pytest.raises(InvalidIdentifierError):
        store.load("../outside")


def test_list_sessions_newest_first(store: WorkflowStore) -> None:
    now = utc_now()
    for offset, session_id in enumerate(["wf-old", "wf-mid", "wf-new"]):
        ctx = _context(session_id)
        ctx.metadata.last_updated = now - timedelta(hours=3 - offset)
        store.save(ctx)

    assert [s.session_id for s in store.list_sessions()] == ["wf-new", "wf-mid", "wf-old"]


def test_delete_removes_snapshots_and_versions(store: WorkflowStore) -> None:
    ctx = _context("wf-1")
    store.save(ctx)
    snapshot = store.save_snapshot(ctx)
    store.save_version(ctx, "v1")

    assert store.delete("wf-1") is True
    assert store.load("wf-1") is None
    assert store.load_snapshot("wf-1", snapshot.snapshot_id) is None
    assert store.list_versions("wf-1") == []
    assert store.list_sessions() == []
    assert store.delete("wf-1") is False


def test_queries(store: WorkflowStore) -> None:
    store.save(
        _context(
            "wf-a",
            WorkflowState.ANALYZE,
            priority="high",
            category="Backend",
            tags=["api", "billing"],
        )
    )
    store.save(_context("wf-b", WorkflowState.PAUSED, category="frontend", tags=["ui"]))
    store.save(_context("wf-c", WorkflowState.FAILED, priority="high"))
    store.save(_context("wf-d"))

    def ids(summaries: list[SessionSummary]) -> set[str]:
        return {s.session_id for s in summaries}

    assert ids(store.find_by_state("ANALYZE")) == {"wf-a"}
    assert ids(store.find_by_priority("high")) == {"wf-a", "wf-c"}
    assert ids(store.find_by_category("backend")) == {"wf-a"}
    assert ids(store.find_by_tag("api")) == {"wf-a"}
    assert ids(store.find_by_tag("bill")) == set()
    assert ids(store.find_by_tag("BILL", partial=True)) == {"wf-a"}
    assert ids(store.find_active()) == {"wf-a", "wf-d"}
    assert ids(store.find_paused()) == {"wf-b"}
    assert ids(store.find_failed()) == {"wf-c"}
    assert ids(store.find_sessions(priority="high", state="FAILED")) == {"wf-c"}
    assert ids(store.find_sessions(priority="high", category="backend", tag="api")) == {"wf-a"}
    assert ids(store.find_sessions(state=WorkflowState.PAUSED, tag="api")) == set()
    assert ids(store.find_sessions()) == {"wf-a", "wf-b", "wf-c", "wf-d"}


def test_statistics(store: WorkflowStore) -> None:
    done = _context("wf-done", WorkflowState.COMPLETE)
    done.metadata.total_duration_seconds = 120
    other = _context("wf-other", WorkflowState.COMPLETE, priority="low")
    other.metadata.total_duration_seconds = 60
    store.save(done)
    store.save(other)
    store.save(_context("wf-active", WorkflowState.IMPLEMENT))
    store.save(_context("wf-paused", WorkflowState.PAUSED))

    stats = store.get_statistics()

    assert stats.total_sessions == 4
    assert stats.completed_sessions == 2
    assert stats.active_sessions == 1
    assert stats.paused_sessions == 1
    assert stats.failed_sessions == 0
    assert stats.average_duration_seconds == 90
    assert stats.state_distribution == {"COMPLETE": 2, "IMPLEMENT": 1, "PAUSED": 1}
    assert stats.priority_distribution == {"medium": 3, "low": 1}


def test_statistics_time_range(store: WorkflowStore) -> None:
    old = _context("wf-old")
    old.metadata.started_at = utc_now() - timedelta(days=30)
    store.save(old)
    store.save(_context("wf-new"))

    recent = store.get_statistics(since=utc_now() - timedelta(days=1))
    early = store.get_statistics(until=utc_now() - timedelta(days=7))

    assert recent.total_sessions == 1
    assert early.total_sessions == 1
    assert early.average_duration_seconds is None


def test_cleanup_removes_stale_sessions(store: WorkflowStore) -> None:
    stale = _context("wf-stale")
    stale.metadata.last_updated = utc_now() - timedelta(days=10)
    store.save(stale)
    store.save(_context("wf-fresh"))

    assert store.cleanup(timedelta(days=7)) == 1
    assert [s.session_id for s in store.list_sessions()] == ["wf-fresh"]


def test_snapshots_are_independent_copies(store: WorkflowStore) -> None:
    ctx = _context("wf-1", WorkflowState.ANALYZE)
    store.save(ctx)
    first = store.save_snapshot(ctx, trigger=SnapshotTrigger.MILESTONE, description="analysis")

    ctx.task_description = "changed after snapshot"
    second = store.save_snapshot(ctx)

    loaded = store.load_snapshot("wf-1", first.snapshot_id)
    assert loaded is not None
    assert loaded.context.task_description == "Task for wf-1"
    assert loaded.trigger == SnapshotTrigger.MILESTONE
    assert loaded.state == WorkflowState.ANALYZE
    assert {i.snapshot_id for i in store.list_snapshots("wf-1")} == {
        first.snapshot_id,
        second.snapshot_id,
    }

    assert store.delete_snapshot("wf-1", first.snapshot_id) is True
    assert store.delete_snapshot("wf-1", first.snapshot_id) is False
    assert [i.snapshot_id for i in store.list_snapshots("wf-1")] == [second.snapshot_id]


def test_versions_overwrite_same_label(store: WorkflowStore) -> None:
    ctx = _context("wf-1")
    store.save(ctx)
    store.save_version(ctx, "baseline")
    ctx.record_transition(WorkflowState.ANALYZE, WorkflowAction.START_ANALYSIS)
    info = store.save_version(ctx, "baseline")

    [listed] = store.list_versions("wf-1")
    assert listed.model_dump() == info.model_dump()
    assert listed.state == WorkflowState.ANALYZE

    version = store.load_version("wf-1", "baseline")
    assert version is not None
    assert version.context.current_state == WorkflowState.ANALYZE
    assert store.load_version("wf-1", "missing") is None


def test_version_label_must_be_identifier(store: WorkflowStore) -> None:
    with pytest.raises(InvalidIdentifierError):
        store.save_version(_context("wf-1"), "release 1/2")


def test_file_store_layout(file_store: FileWorkflowStore, temp_state_dir: Path) -> None:
    ctx = _context("wf-1", WorkflowState.ANALYZE)
    file_store.save(ctx)
    snapshot = file_store.save_snapshot(ctx)
    file_store.save_version(ctx, "v1")

    session_file = temp_state_dir / "sessions" / "wf-1.json"
    text = session_file.read_text(encoding="utf-8")
    assert text.endswith("\n")
    assert text.startswith("{\n  ")
    assert json.loads(text)["current_state"] == "ANALYZE"

    index = json.loads((temp_state_dir / "index.json").read_text(encoding="utf-8"))
    assert index["version"] == INDEX_VERSION
    assert list(index["sessions"]) == ["wf-1"]

    assert (temp_state_dir / "snapshots" / "wf-1" / f"{snapshot.snapshot_id}.json").exists()
    assert (temp_state_dir / "versions" / "wf-1" / "v1.json").exists()
    assert not list(temp_state_dir.rglob("*.tmp"))


def test_file_store_persists_across_instances(temp_state_dir: Path) -> None:
    FileWorkflowStore(temp_state_dir).save(_context("wf-1", WorkflowState.PLAN))

    reopened = FileWorkflowStore(temp_state_dir)

    assert [s.session_id for s in reopened.list_sessions()] == ["wf-1"]
    loaded = reopened.load("wf-1")
    assert loaded is not None
    assert loaded.current_state == WorkflowState.PLAN


def test_corrupt_index_is_rebuilt(file_store: FileWorkflowStore, temp_state_dir: Path) -> None:
    file_store.save(_context("wf-1"))
    file_store.save(_context("wf-2"))
    (temp_state_dir / "index.json").write_text("{not json", encoding="utf-8")

    assert {s.session_id for s in file_store.list_sessions()} == {"wf-1", "wf-2"}
    index = json.loads((temp_state_dir / "index.json").read_text(encoding="utf-8"))
    assert set(index["sessions"]) == {"wf-1", "wf-2"}


def test_rebuild_index_skips_unreadable_sessions(
    file_store: FileWorkflowStore, temp_state_dir: Path
) -> None:
    file_store.save(_context("wf-1"))
    (temp_state_dir / "sessions" / "wf-broken.json").write_text("[]", encoding="utf-8")
    (temp_state_dir / "index.json").unlink()

    assert file_store.rebuild_index() == 1
    assert [s.session_id for s in file_store.list_sessions()] == ["wf-1"]


def test_corrupt_snapshot_index_is_rebuilt(
    file_store: FileWorkflowStore, temp_state_dir: Path
) -> None:
    ctx = _context("wf-1")
    file_store.save(ctx)
    snapshot = file_store.save_snapshot(ctx)
    (temp_state_dir / "snapshots" / "wf-1" / "index.json").write_text("oops", encoding="utf-8")

    assert [i.snapshot_id for i in file_store.list_snapshots("wf-1")] == [snapshot.snapshot_id]


def test_file_store_rejects_path_traversal(file_store: FileWorkflowStore) -> None:
    with pytest.raises(InvalidIdentifierError):
        file_store.load_snapshot("wf-1", "../../index")
    with pytest.raises(InvalidIdentifierError):
        file_store.load_version("wf-1", "../v1")
    with pytest.raises(InvalidIdentifierError):
        file_store.delete("..")
