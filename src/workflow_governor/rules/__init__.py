"""Declarative rules evaluated against workflow contexts."""

__all__: list[str] = []
