"""Configuration, logging and the composition root."""

__all__: list[str] = []
