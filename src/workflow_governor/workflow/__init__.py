"""Workflow domain: context model, transition table and the state machine.

Import from the submodules directly; this package stays empty so the rules
engine and the state machine can depend on each other's modules without
import cycles.
"""

__all__: list[str] = []
