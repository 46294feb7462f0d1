"""Storage of workflow contexts, snapshots and named versions."""

__all__: list[str] = []
