"""Schema package exports."""

from .recipes import Recipe

__all__ = ["Recipe"]
