"""Composition root wiring the store, the rules engine and the state machines."""

from __future__ import annotations

import logging
import threading
from typing import Any

from workflow_governor.core.config import GovernorConfig
from workflow_governor.persistence.base import WorkflowStore
from workflow_governor.persistence.filesystem import FileWorkflowStore
from workflow_governor.rules.defaults import register_default_rules
from workflow_governor.rules.engine import WorkflowRulesEngine
from workflow_governor.rules.notifications import Notifier
from workflow_governor.rules.sync import CommandSync, ExternalSync
from workflow_governor.workflow.state_machine import WorkflowStateMachine

logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    """No stored workflow has the requested session id."""


class SessionExistsError(ValueError):
    """A workflow with the requested session id already exists."""


class WorkflowGovernor:
    """Hand out one state machine per session.

    Callers that share a session id share the machine, and with it the lock
    that serializes transitions on that session.
    """

    def __init__(
        self,
        config: GovernorConfig | None = None,
        *,
        store: WorkflowStore | None = None,
        engine: WorkflowRulesEngine | None = None,
        notifier: Notifier | None = None,
        sync: ExternalSync | None = None,
    ) -> None:
        """Initialize the governor.

        Args:
            config: Configuration object. If None, loads from environment.
            store: Persistence backend. Defaults to a file store at
                ``config.state.storage_path``.
            engine: Rules engine. When omitted one is built from ``config.rules``
                and the default rules are registered on it.
            notifier: Notification sink for a newly built engine.
            sync: External sync for the completion rule. Defaults to the
                command configured in ``config.sync``, if any.
        """
        self.config = config or GovernorConfig()
        self.store: WorkflowStore = store or FileWorkflowStore(self.config.state.storage_path)

        if engine is None:
            engine = WorkflowRulesEngine(
                notifier=notifier, max_history_size=self.config.rules.max_history_size
            )
            if self.config.rules.register_defaults:
                register_default_rules(
                    engine,
                    self.config.rules,
                    sync=sync or CommandSync.from_config(self.config.sync),
                    max_retries=self.config.workflow.max_retries,
                )
            engine.set_enabled(self.config.rules.enabled)
        self.engine = engine

        self._machines: dict[str, WorkflowStateMachine] = {}
        self._lock = threading.Lock()
        logger.info(f"Workflow governor ready with {len(self.engine.rules)} rule(s)")

    def start_workflow(self, task_description: str, **options: Any) -> WorkflowStateMachine:
        """Create a session; ``options`` are passed to :meth:`WorkflowStateMachine.create`.

        Raises:
            SessionExistsError: ``session_id`` names a session that is already
                cached or stored.
        """
        session_id = options.get("session_id")
        with self._lock:
            if session_id is not None and (
                session_id in self._machines or self.store.exists(session_id)
            ):
                raise SessionExistsError(f"Workflow {session_id} already exists")
            machine = WorkflowStateMachine.create(
                task_description,
                store=self.store,
                engine=self.engine,
                config=self.config.workflow,
                **options,
            )
            self._machines[machine.session_id] = machine
        return machine

    def find_workflow(self, session_id: str) -> WorkflowStateMachine | None:
        with self._lock:
            machine = self._machines.get(session_id)
            if machine is not None:
                return machine
            machine = WorkflowStateMachine.load(
                session_id, store=self.store, engine=self.engine, config=self.config.workflow
            )
            if machine is not None:
                self._machines[session_id] = machine
            return machine

    def get_workflow(self, session_id: str) -> WorkflowStateMachine:
        machine = self.find_workflow(session_id)
        if machine is None:
            raise SessionNotFoundError(session_id)
        return machine

    def forget(self, session_id: str) -> None:
        """Drop the cached machine; the next lookup reloads from the store."""
        with self._lock:
            self._machines.pop(session_id, None)

    def delete_workflow(self, session_id: str) -> bool:
        with self._lock:
            self._machines.pop(session_id, None)
        self.engine.reset_executions(session_id)
        return self.store.delete(session_id)
