"""Persistence interface for workflow contexts, snapshots and versions.

Backends implement the storage primitives; the queries (by state, priority,
category, tag), statistics and cleanup are shared and work from the session
summaries each backend keeps as its index.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timedelta
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from workflow_governor.workflow.models import (
    ACTIVE_STATES,
    Priority,
    SnapshotTrigger,
    WorkflowContext,
    WorkflowState,
    utc_now,
    validate_identifier,
    validate_session_id,
)


class SessionSummary(BaseModel):
    """Index entry for one session."""

    session_id: str
    task_description: str
    current_state: WorkflowState
    priority: Priority
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    assignee: str | None = None
    started_at: datetime
    last_updated: datetime
    total_duration_seconds: float | None = None

    @classmethod
    def from_context(cls, context: WorkflowContext) -> SessionSummary:
        meta = context.metadata
        return cls(
            session_id=context.session_id,
            task_description=context.task_description,
            current_state=context.current_state,
            priority=meta.priority,
            category=meta.category,
            tags=sorted(meta.tags),
            assignee=meta.assignee,
            started_at=meta.started_at,
            last_updated=meta.last_updated,
            total_duration_seconds=meta.total_duration_seconds,
        )


class SnapshotInfo(BaseModel):
    snapshot_id: str
    session_id: str
    created_at: datetime
    trigger: SnapshotTrigger
    state: WorkflowState
    description: str | None = None


class WorkflowSnapshot(SnapshotInfo):
    """Immutable full copy of a context at one point in time."""

    context: WorkflowContext

    model_config = ConfigDict(frozen=True)

    @classmethod
    def capture(
        cls,
        context: WorkflowContext,
        *,
        trigger: SnapshotTrigger = SnapshotTrigger.MANUAL,
        description: str | None = None,
    ) -> WorkflowSnapshot:
        now = utc_now()
        return cls(
            snapshot_id=f"{context.session_id}-{int(now.timestamp() * 1000)}-{uuid4().hex[:8]}",
            session_id=context.session_id,
            created_at=now,
            trigger=trigger,
            state=context.current_state,
            description=description,
            context=context.model_copy(deep=True),
        )

    def info(self) -> SnapshotInfo:
        return SnapshotInfo.model_validate(self.model_dump(exclude={"context"}))


class VersionInfo(BaseModel):
    label: str
    session_id: str
    created_at: datetime
    state: WorkflowState


class WorkflowVersion(VersionInfo):
    context: WorkflowContext

    def info(self) -> VersionInfo:
        return VersionInfo.model_validate(self.model_dump(exclude={"context"}))


class StoreStatistics(BaseModel):
    total_sessions: int
    active_sessions: int
    completed_sessions: int
    failed_sessions: int
    paused_sessions: int
    average_duration_seconds: float | None = None
    state_distribution: dict[str, int] = Field(default_factory=dict)
    priority_distribution: dict[str, int] = Field(default_factory=dict)


class WorkflowStore(ABC):
    """Durable storage for workflow sessions."""

    # Sessions

    @abstractmethod
    def save(self, context: WorkflowContext) -> None:
        """Persist the full context, replacing any previous copy."""

    @abstractmethod
    def load(self, session_id: str) -> WorkflowContext | None:
        """Return a copy of the stored context, or None."""

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        """Delete a session with its snapshots and versions."""

    @abstractmethod
    def list_sessions(self) -> list[SessionSummary]:
        """All sessions, most recently updated first."""

    # Snapshots

    @abstractmethod
    def _write_snapshot(self, snapshot: WorkflowSnapshot) -> None: ...

    @abstractmethod
    def load_snapshot(self, session_id: str, snapshot_id: str) -> WorkflowSnapshot | None: ...

    @abstractmethod
    def list_snapshots(self, session_id: str) -> list[SnapshotInfo]:
        """Snapshots of a session, newest first."""

    @abstractmethod
    def delete_snapshot(self, session_id: str, snapshot_id: str) -> bool: ...

    # Versions

    @abstractmethod
    def _write_version(self, version: WorkflowVersion) -> None: ...

    @abstractmethod
    def load_version(self, session_id: str, label: str) -> WorkflowVersion | None: ...

    @abstractmethod
    def list_versions(self, session_id: str) -> list[VersionInfo]:
        """Versions of a session, newest first."""

    # Shared behaviour

    def exists(self, session_id: str) -> bool:
        validate_session_id(session_id)
        return any(s.session_id == session_id for s in self.list_sessions())

    def save_snapshot(
        self,
        context: WorkflowContext,
        *,
        trigger: SnapshotTrigger = SnapshotTrigger.MANUAL,
        description: str | None = None,
    ) -> WorkflowSnapshot:
        snapshot = WorkflowSnapshot.capture(context, trigger=trigger, description=description)
        self._write_snapshot(snapshot)
        return snapshot

    def save_version(self, context: WorkflowContext, label: str) -> VersionInfo:
        """Tag the context under ``label``; an existing label is overwritten."""
        validate_identifier(label, kind="version label")
        version = WorkflowVersion(
            label=label,
            session_id=context.session_id,
            created_at=utc_now(),
            state=context.current_state,
            context=context.model_copy(deep=True),
        )
        self._write_version(version)
        return version.info()

    def find_by_state(self, state: WorkflowState | str) -> list[SessionSummary]:
        wanted = WorkflowState(state)
        return [s for s in self.list_sessions() if s.current_state == wanted]

    def find_by_priority(self, priority: Priority) -> list[SessionSummary]:
        return [s for s in self.list_sessions() if s.priority == priority]

    def find_by_category(self, category: str) -> list[SessionSummary]:
        wanted = category.casefold()
        return [
            s for s in self.list_sessions() if s.category and s.category.casefold() == wanted
        ]

    def find_by_tag(self, tag: str, *, partial: bool = False) -> list[SessionSummary]:
        """Sessions carrying ``tag``; with ``partial`` any tag containing it matches."""
        if partial:
            needle = tag.casefold()
            return [
                s for s in self.list_sessions() if any(needle in t.casefold() for t in s.tags)
            ]
        return [s for s in self.list_sessions() if tag in s.tags]

    def find_active(self) -> list[SessionSummary]:
        return [
            s
            for s in self.list_sessions()
            if s.current_state in ACTIVE_STATES or s.current_state == WorkflowState.INIT
        ]

    def find_paused(self) -> list[SessionSummary]:
        return self.find_by_state(WorkflowState.PAUSED)

    def find_failed(self) -> list[SessionSummary]:
        return self.find_by_state(WorkflowState.FAILED)

    def find_sessions(
        self,
        *,
        state: WorkflowState | str | None = None,
        priority: Priority | None = None,
        category: str | None = None,
        tag: str | None = None,
    ) -> list[SessionSummary]:
        """Sessions matching every given filter, newest first. No filter lists all."""
        matches: list[list[SessionSummary]] = []
        if state is not None:
            matches.append(self.find_by_state(state))
        if priority is not None:
            matches.append(self.find_by_priority(priority))
        if category is not None:
            matches.append(self.find_by_category(category))
        if tag is not None:
            matches.append(self.find_by_tag(tag))
        if not matches:
            return self.list_sessions()
        wanted = set.intersection(*({s.session_id for s in found} for found in matches))
        return [s for s in matches[0] if s.session_id in wanted]

    def get_statistics(
        self, *, since: datetime | None = None, until: datetime | None = None
    ) -> StoreStatistics:
        """Aggregate counts over sessions started within ``[since, until]``."""
        sessions = [
            s
            for s in self.list_sessions()
            if (since is None or s.started_at >= since) and (until is None or s.started_at <= until)
        ]
        states = Counter(s.current_state.value for s in sessions)
        durations = [
            s.total_duration_seconds for s in sessions if s.total_duration_seconds is not None
        ]
        return StoreStatistics(
            total_sessions=len(sessions),
            active_sessions=sum(
                1
                for s in sessions
                if s.current_state in ACTIVE_STATES or s.current_state == WorkflowState.INIT
            ),
            completed_sessions=states.get(WorkflowState.COMPLETE.value, 0),
            failed_sessions=states.get(WorkflowState.FAILED.value, 0),
            paused_sessions=states.get(WorkflowState.PAUSED.value, 0),
            average_duration_seconds=sum(durations) / len(durations) if durations else None,
            state_distribution=dict(states),
            priority_distribution=dict(Counter(s.priority for s in sessions)),
        )

    def cleanup(self, older_than: timedelta | datetime) -> int:
        """Delete sessions not updated since ``older_than``; returns how many."""
        cutoff = utc_now() - older_than if isinstance(older_than, timedelta) else older_than
        removed = 0
        for summary in self.list_sessions():
            if summary.last_updated < cutoff and self.delete(summary.session_id):
                removed += 1
        return removed
