"""Declarative rule conditions.

A condition is any callable ``(WorkflowContext) -> bool``. The predicates below
cover the common cases with plain data so rules stay inspectable; a bare
function is still accepted where nothing else fits.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from workflow_governor.rules.paths import get_path
from workflow_governor.workflow.models import WorkflowContext, WorkflowState

Condition = Callable[[WorkflowContext], bool]


def _contains(container: Any, item: Any) -> bool:
    return item in container


def _member_of(item: Any, container: Any) -> bool:
    return item in container


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "in": _member_of,
    "contains": _contains,
}


@dataclass(frozen=True, slots=True)
class Always:
    def __call__(self, context: WorkflowContext) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class InState:
    states: frozenset[WorkflowState]

    @classmethod
    def of(cls, *states: WorkflowState | str) -> InState:
        return cls(frozenset(WorkflowState(s) for s in states))

    def __call__(self, context: WorkflowContext) -> bool:
        return context.current_state in self.states


@dataclass(frozen=True, slots=True)
class FieldCompare:
    """Compare the value at ``path`` with ``value``.

    A missing value (``None``) never matches, whatever the operator.
    """

    path: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPERATORS:
            raise ValueError(f"Unsupported operator {self.op!r}")

    def __call__(self, context: WorkflowContext) -> bool:
        actual = get_path(context, self.path)
        if actual is None:
            return False
        return bool(_OPERATORS[self.op](actual, self.value))


@dataclass(frozen=True, slots=True)
class FieldPresent:
    path: str

    def __call__(self, context: WorkflowContext) -> bool:
        return get_path(context, self.path) is not None


@dataclass(frozen=True, slots=True)
class FieldTruthy:
    path: str

    def __call__(self, context: WorkflowContext) -> bool:
        return bool(get_path(context, self.path))


@dataclass(frozen=True, slots=True)
class HistoryLongerThan:
    length: int

    def __call__(self, context: WorkflowContext) -> bool:
        return len(context.state_history) > self.length


class AllOf:
    __slots__ = ("conditions",)

    def __init__(self, *conditions: Condition) -> None:
        self.conditions: tuple[Condition, ...] = conditions

    def __call__(self, context: WorkflowContext) -> bool:
        return all(condition(context) for condition in self.conditions)

    def __repr__(self) -> str:
        return f"AllOf{self.conditions!r}"


class AnyOf:
    __slots__ = ("conditions",)

    def __init__(self, *conditions: Condition) -> None:
        self.conditions: tuple[Condition, ...] = conditions

    def __call__(self, context: WorkflowContext) -> bool:
        return any(condition(context) for condition in self.conditions)

    def __repr__(self) -> str:
        return f"AnyOf{self.conditions!r}"


class Not:
    __slots__ = ("condition",)

    def __init__(self, condition: Condition) -> None:
        self.condition = condition

    def __call__(self, context: WorkflowContext) -> bool:
        return not self.condition(context)

    def __repr__(self) -> str:
        return f"Not({self.condition!r})"


def states(values: Iterable[WorkflowState | str]) -> frozenset[WorkflowState]:
    """Normalise a state list given as enums or their string values."""
    return frozenset(WorkflowState(v) for v in values)
