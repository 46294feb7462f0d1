"""JSON file backend.

Layout under ``root``::

    index.json                          session summaries keyed by session id
    sessions/<session_id>.json          full WorkflowContext
    snapshots/<session_id>/index.json   snapshot infos
    snapshots/<session_id>/<snapshot_id>.json
    versions/<session_id>/<label>.json

Files are replaced atomically so readers never see a half-written context.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

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

logger = logging.getLogger(__name__)

INDEX_VERSION = 1


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
    try:
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


class FileWorkflowStore(WorkflowStore):
    """Store sessions, snapshots and versions as JSON documents on disk."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._lock = threading.Lock()
        self._root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Workflow store initialized at: {self._root}")

    @property
    def root(self) -> Path:
        return self._root

    # Paths

    def _session_path(self, session_id: str) -> Path:
        validate_session_id(session_id)
        return self._root / "sessions" / f"{session_id}.json"

    @property
    def _index_path(self) -> Path:
        return self._root / "index.json"

    def _snapshot_dir(self, session_id: str) -> Path:
        validate_session_id(session_id)
        return self._root / "snapshots" / session_id

    def _version_dir(self, session_id: str) -> Path:
        validate_session_id(session_id)
        return self._root / "versions" / session_id

    # Session index

    def _load_index_unlocked(self) -> dict[str, SessionSummary]:
        if not self._index_path.exists():
            return self._rebuild_index_unlocked()
        try:
            raw = _read_json(self._index_path)
            return {
                session_id: SessionSummary.model_validate(item)
                for session_id, item in raw["sessions"].items()
            }
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError, ValidationError) as e:
            logger.warning(f"Session index unreadable ({e}); rebuilding from session files")
            return self._rebuild_index_unlocked()

    def _save_index_unlocked(self, index: dict[str, SessionSummary]) -> None:
        _write_json(
            self._index_path,
            {
                "version": INDEX_VERSION,
                "sessions": {sid: s.model_dump(mode="json") for sid, s in index.items()},
            },
        )

    def _rebuild_index_unlocked(self) -> dict[str, SessionSummary]:
        index: dict[str, SessionSummary] = {}
        sessions_dir = self._root / "sessions"
        if sessions_dir.exists():
            for path in sorted(sessions_dir.glob("*.json")):
                try:
                    context = WorkflowContext.model_validate(_read_json(path))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning(f"Skipping unreadable session file {path.name}: {e}")
                    continue
                index[context.session_id] = SessionSummary.from_context(context)
        self._save_index_unlocked(index)
        return index

    def rebuild_index(self) -> int:
        """Recreate ``index.json`` from the session files; returns the session count."""
        with self._lock:
            return len(self._rebuild_index_unlocked())

    # Sessions

    def save(self, context: WorkflowContext) -> None:
        path = self._session_path(context.session_id)
        with self._lock:
            _write_json(path, context.model_dump(mode="json"))
            index = self._load_index_unlocked()
            index[context.session_id] = SessionSummary.from_context(context)
            self._save_index_unlocked(index)
        logger.debug(
            "Saved workflow session",
            extra={"session_id": context.session_id, "state": context.current_state.value},
        )

    def load(self, session_id: str) -> WorkflowContext | None:
        path = self._session_path(session_id)
        if not path.exists():
            return None
        return WorkflowContext.model_validate(_read_json(path))

    def delete(self, session_id: str) -> bool:
        path = self._session_path(session_id)
        with self._lock:
            existed = path.exists()
            path.unlink(missing_ok=True)
            shutil.rmtree(self._snapshot_dir(session_id), ignore_errors=True)
            shutil.rmtree(self._version_dir(session_id), ignore_errors=True)
            index = self._load_index_unlocked()
            if index.pop(session_id, None) is not None:
                self._save_index_unlocked(index)
        if existed:
            logger.info(f"Deleted workflow session {session_id}")
        return existed

    def exists(self, session_id: str) -> bool:
        return self._session_path(session_id).exists()

    def list_sessions(self) -> list[SessionSummary]:
        with self._lock:
            summaries = list(self._load_index_unlocked().values())
        return sorted(summaries, key=lambda s: s.last_updated, reverse=True)

    # Snapshots

    def _snapshot_index_unlocked(self, session_id: str) -> list[SnapshotInfo]:
        path = self._snapshot_dir(session_id) / "index.json"
        if not path.exists():
            return []
        try:
            raw = _read_json(path)
            return [SnapshotInfo.model_validate(item) for item in raw]
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"Snapshot index for {session_id} unreadable ({e}); rebuilding")
            infos = []
            for snapshot_path in self._snapshot_dir(session_id).glob("*.json"):
                if snapshot_path.name == "index.json":
                    continue
                try:
                    infos.append(WorkflowSnapshot.model_validate(_read_json(snapshot_path)).info())
                except (json.JSONDecodeError, ValidationError):
                    logger.warning(f"Skipping unreadable snapshot {snapshot_path.name}")
            return infos

    def _save_snapshot_index_unlocked(self, session_id: str, infos: list[SnapshotInfo]) -> None:
        _write_json(
            self._snapshot_dir(session_id) / "index.json",
            [info.model_dump(mode="json") for info in infos],
        )

    def _write_snapshot(self, snapshot: WorkflowSnapshot) -> None:
        directory = self._snapshot_dir(snapshot.session_id)
        validate_identifier(snapshot.snapshot_id, kind="snapshot id")
        with self._lock:
            _write_json(directory / f"{snapshot.snapshot_id}.json", snapshot.model_dump(mode="json"))
            infos = self._snapshot_index_unlocked(snapshot.session_id)
            infos.append(snapshot.info())
            self._save_snapshot_index_unlocked(snapshot.session_id, infos)
        logger.info(
            f"Snapshot created: {snapshot.snapshot_id}",
            extra={"session_id": snapshot.session_id, "trigger": snapshot.trigger.value},
        )

    def load_snapshot(self, session_id: str, snapshot_id: str) -> WorkflowSnapshot | None:
        validate_identifier(snapshot_id, kind="snapshot id")
        path = self._snapshot_dir(session_id) / f"{snapshot_id}.json"
        if not path.exists():
            return None
        return WorkflowSnapshot.model_validate(_read_json(path))

    def list_snapshots(self, session_id: str) -> list[SnapshotInfo]:
        with self._lock:
            infos = self._snapshot_index_unlocked(session_id)
        return sorted(infos, key=lambda i: i.created_at, reverse=True)

    def delete_snapshot(self, session_id: str, snapshot_id: str) -> bool:
        validate_identifier(snapshot_id, kind="snapshot id")
        path = self._snapshot_dir(session_id) / f"{snapshot_id}.json"
        with self._lock:
            existed = path.exists()
            path.unlink(missing_ok=True)
            infos = self._snapshot_index_unlocked(session_id)
            remaining = [i for i in infos if i.snapshot_id != snapshot_id]
            if len(remaining) != len(infos):
                self._save_snapshot_index_unlocked(session_id, remaining)
        return existed

    # Versions

    def _write_version(self, version: WorkflowVersion) -> None:
        path = self._version_dir(version.session_id) / f"{version.label}.json"
        with self._lock:
            _write_json(path, version.model_dump(mode="json"))
        logger.info(f"Version saved: {version.session_id}@{version.label}")

    def load_version(self, session_id: str, label: str) -> WorkflowVersion | None:
        validate_identifier(label, kind="version label")
        path = self._version_dir(session_id) / f"{label}.json"
        if not path.exists():
            return None
        return WorkflowVersion.model_validate(_read_json(path))

    def list_versions(self, session_id: str) -> list[VersionInfo]:
        directory = self._version_dir(session_id)
        if not directory.exists():
            return []
        infos: list[VersionInfo] = []
        for path in directory.glob("*.json"):
            try:
                infos.append(WorkflowVersion.model_validate(_read_json(path)).info())
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Skipping unreadable version file {path.name}: {e}")
        return sorted(infos, key=lambda i: i.created_at, reverse=True)
