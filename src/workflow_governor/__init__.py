"""Workflow Governor - guarded workflow state machine with a rules engine.

A workflow moves through analysis, planning, implementation, testing and
review under guarded transitions. After every transition a rules engine runs
snapshots, notifications, recovery and completion checks, and every state is
persisted with point-in-time snapshots and named versions.
"""

__version__ = "0.1.0"

__all__: list[str] = ["__version__"]
