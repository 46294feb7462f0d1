#!/usr/bin/env python3
"""Run one workflow through the whole pipeline (programmatic example).

This demonstrates using the governor components directly:

* load settings from `.env` / environment
* create a session and feed it the data each guard needs
* take a manual snapshot and tag a named version
* print the history and the rules that ran on completion

The storage directory is passed as an argument.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence

from workflow_governor.core.config import GovernorConfig, StateConfig
from workflow_governor.core.governor import WorkflowGovernor
from workflow_governor.core.logging import configure_logging
from workflow_governor.workflow.models import Milestone, WorkflowAction


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a workflow from INIT to COMPLETE.")
    parser.add_argument("--storage", type=Path, default=Path(".workflow-state"))
    parser.add_argument("--task", default="Add rate limiting to the public API")
    parser.add_argument(
        "--priority", default="medium", choices=["low", "medium", "high", "critical"]
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    config = GovernorConfig(state=StateConfig(storage_path=args.storage))
    configure_logging(config.log_level)
    governor = WorkflowGovernor(config)

    machine = governor.start_workflow(args.task, priority=args.priority, tags=["example"])
    print(f"Session: {machine.session_id}")

    machine.transition(WorkflowAction.START_ANALYSIS)
    machine.update_analysis(approach="token bucket per client", confidence=85, complexity=3)
    machine.transition(WorkflowAction.COMPLETE_ANALYSIS)

    machine.update_planning(
        milestones=[
            Milestone(id="m1", name="Limiter middleware", estimated_duration_hours=4),
            Milestone(id="m2", name="Configuration and docs", estimated_duration_hours=2),
        ]
    )
    machine.transition(WorkflowAction.COMPLETE_PLANNING)
    snapshot_id = machine.create_snapshot("Plan approved")
    print(f"Snapshot: {snapshot_id}")

    machine.update_implementation_progress(100, current_milestone="m2")
    machine.transition(WorkflowAction.COMPLETE_IMPLEMENTATION)

    machine.update_testing(
        quality_metrics={
            "code_quality": 88,
            "performance": 90,
            "security": 92,
            "maintainability": 85,
        }
    )
    machine.transition(WorkflowAction.COMPLETE_TESTING)
    machine.save_version("ready-for-review")

    machine.update_review(reviewers=["alice"], approval_status="approved")
    machine.transition(WorkflowAction.COMPLETE_REVIEW, actor="alice")

    for entry in machine.context.state_history:
        print(f"  {entry.timestamp:%H:%M:%S} {entry.action.value:<24} -> {entry.state.value}")
    for result in machine.last_rule_results:
        if result.action_executed:
            print(f"  rule {result.rule_id}: {'ok' if result.success else 'failed'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
