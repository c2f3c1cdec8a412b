"""PromptMaster: a multi-user prompt library with scoped visibility."""

from .api import app

__all__ = ["app"]
