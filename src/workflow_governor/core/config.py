"""Core configuration for the workflow governor."""

import logging
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_governor.core.logging import configure_logging


class StateConfig(BaseSettings):
    """Configuration for workflow persistence."""

    storage_path: Path = Field(
        default=Path(".workflow-state"),
        description="Directory holding session, snapshot and version files",
    )

    model_config = SettingsConfigDict(
        env_prefix="GOVERNOR_STATE_",
        env_file=".env",
        extra="ignore",
    )


class WorkflowConfig(BaseSettings):
    """Guard thresholds and retry ceiling of the state machine."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="RETRY is rejected once failure_info.recovery_attempts reaches this value",
    )
    analysis_confidence_threshold: float = Field(
        default=70,
        ge=0,
        le=100,
        description="Minimum analysis confidence for COMPLETE_ANALYSIS",
    )
    fast_track_max_complexity: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Maximum analysis complexity for START_PLANNING",
    )
    implementation_progress_threshold: float = Field(
        default=90,
        ge=0,
        le=100,
        description="Minimum implementation progress for COMPLETE_IMPLEMENTATION",
    )
    testing_start_progress_threshold: float = Field(
        default=80,
        ge=0,
        le=100,
        description="Minimum implementation progress for START_TESTING",
    )
    security_threshold: float = Field(
        default=80,
        ge=0,
        le=100,
        description="Minimum security score for COMPLETE_TESTING",
    )

    model_config = SettingsConfigDict(
        env_prefix="GOVERNOR_WORKFLOW_",
        env_file=".env",
        extra="ignore",
    )


class RulesConfig(BaseSettings):
    """Configuration for the rules engine."""

    enabled: bool = Field(
        default=True,
        description="Evaluate rules after every transition",
    )
    register_defaults: bool = Field(
        default=True,
        description="Install the built-in snapshot, recovery, sync and quality gate rules",
    )
    max_history_size: int = Field(
        default=1000,
        gt=0,
        description="Number of rule execution results kept in memory",
    )
    snapshot_cooldown_seconds: float = Field(
        default=60,
        ge=0,
        description="Cooldown of the automatic snapshot rule",
    )
    min_test_coverage: float = Field(
        default=85,
        ge=0,
        le=100,
        description="Coverage below this value makes the quality gate rule reject",
    )

    model_config = SettingsConfigDict(
        env_prefix="GOVERNOR_RULES_",
        env_file=".env",
        extra="ignore",
    )


class SyncConfig(BaseSettings):
    """Configuration for the external sync run on completion."""

    command: str = Field(
        default="",
        description="Shell-style command line; empty disables the external sync",
    )
    timeout_seconds: float = Field(
        default=120,
        gt=0,
        description="Timeout for the sync command",
    )
    working_dir: Path | None = Field(
        default=None,
        description="Working directory for the sync command (None = current directory)",
    )

    model_config = SettingsConfigDict(
        env_prefix="GOVERNOR_SYNC_",
        env_file=".env",
        extra="ignore",
    )


class GovernorConfig(BaseSettings):
    """Main configuration for the workflow governor."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(
        default=True,
        description="Emit structured JSON log lines",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    state: StateConfig = Field(
        default_factory=StateConfig,
        description="Persistence configuration",
    )
    workflow: WorkflowConfig = Field(
        default_factory=WorkflowConfig,
        description="State machine configuration",
    )
    rules: RulesConfig = Field(
        default_factory=RulesConfig,
        description="Rules engine configuration",
    )
    sync: SyncConfig = Field(
        default_factory=SyncConfig,
        description="External sync configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="GOVERNOR_",
        env_file=".env",
        extra="ignore",
    )

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        if self.json_logs:
            configure_logging(self.log_level)
        else:
            level = getattr(logging, self.log_level.upper(), logging.INFO)
            logging.basicConfig(
                level=level,
                format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )

        if self.debug:
            logging.getLogger("workflow_governor").setLevel(logging.DEBUG)
