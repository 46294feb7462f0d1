"""External sync collaborator invoked when a workflow completes."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from workflow_governor.core.config import SyncConfig

logger = logging.getLogger(__name__)


class SyncError(RuntimeError):
    """The external sync ran but reported failure."""


class ExternalSync(Protocol):
    def run(self) -> str:
        """Run the sync and return its output; raise on failure."""
        ...


@dataclass(frozen=True, slots=True)
class CommandSync:
    """Run a command line as the external sync, bounded by a timeout."""

    command: tuple[str, ...]
    timeout_seconds: float = 120.0
    cwd: Path | None = None

    @classmethod
    def from_config(cls, config: SyncConfig) -> CommandSync | None:
        if not config.command.strip():
            return None
        return cls(
            command=tuple(shlex.split(config.command)),
            timeout_seconds=config.timeout_seconds,
            cwd=config.working_dir,
        )

    def run(self) -> str:
        logger.info(f"Running external sync: {' '.join(self.command)}")
        completed = subprocess.run(
            list(self.command),
            cwd=self.cwd,
            capture_output=True,
            text=True,
            timeout=self.timeout_seconds,
            check=False,
        )
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout).strip()
            raise SyncError(f"sync command exited with {completed.returncode}: {detail}")
        return completed.stdout
