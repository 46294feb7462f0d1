"""In-process backend, used by tests and embedded callers that need no durability."""

from __future__ import annotations

import threading

from workflow_governor.persistence.base import (
    SessionSummary,
    SnapshotInfo,
    VersionInfo,
    WorkflowSnapshot,
    WorkflowStore,
    WorkflowVersion,
)
from workflow_governor.workflow.models import (
    WorkflowContext,
    validate_identifier,
    validate_session_id,
)


class InMemoryWorkflowStore(WorkflowStore):
    """Keep deep copies so callers cannot mutate stored state by accident."""

    def __init__(self) -> None:
        self._sessions: dict[str, WorkflowContext] = {}
        self._snapshots: dict[str, dict[str, WorkflowSnapshot]] = {}
        self._versions: dict[str, dict[str, WorkflowVersion]] = {}
        self._lock = threading.Lock()

    def save(self, context: WorkflowContext) -> None:
        validate_session_id(context.session_id)
        with self._lock:
            self._sessions[context.session_id] = context.model_copy(deep=True)

    def load(self, session_id: str) -> WorkflowContext | None:
        validate_session_id(session_id)
        with self._lock:
            context = self._sessions.get(session_id)
        return context.model_copy(deep=True) if context is not None else None

    def delete(self, session_id: str) -> bool:
        with self._lock:
            self._snapshots.pop(session_id, None)
            self._versions.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None

    def exists(self, session_id: str) -> bool:
        validate_session_id(session_id)
        with self._lock:
            return session_id in self._sessions

    def list_sessions(self) -> list[SessionSummary]:
        with self._lock:
            summaries = [SessionSummary.from_context(c) for c in self._sessions.values()]
        return sorted(summaries, key=lambda s: s.last_updated, reverse=True)

    def _write_snapshot(self, snapshot: WorkflowSnapshot) -> None:
        validate_identifier(snapshot.snapshot_id, kind="snapshot id")
        with self._lock:
            self._snapshots.setdefault(snapshot.session_id, {})[snapshot.snapshot_id] = snapshot

    def load_snapshot(self, session_id: str, snapshot_id: str) -> WorkflowSnapshot | None:
        with self._lock:
            snapshot = self._snapshots.get(session_id, {}).get(snapshot_id)
        return snapshot.model_copy(deep=True) if snapshot is not None else None

    def list_snapshots(self, session_id: str) -> list[SnapshotInfo]:
        with self._lock:
            snapshots = list(self._snapshots.get(session_id, {}).values())
        return sorted((s.info() for s in snapshots), key=lambda i: i.created_at, reverse=True)

    def delete_snapshot(self, session_id: str, snapshot_id: str) -> bool:
        with self._lock:
            return self._snapshots.get(session_id, {}).pop(snapshot_id, None) is not None

    def _write_version(self, version: WorkflowVersion) -> None:
        with self._lock:
            self._versions.setdefault(version.session_id, {})[version.label] = version

    def load_version(self, session_id: str, label: str) -> WorkflowVersion | None:
        with self._lock:
            version = self._versions.get(session_id, {}).get(label)
        return version.model_copy(deep=True) if version is not None else None

    def list_versions(self, session_id: str) -> list[VersionInfo]:
        with self._lock:
            versions = list(self._versions.get(session_id, {}).values())
        return sorted((v.info() for v in versions), key=lambda i: i.created_at, reverse=True)
