"""Dependency wiring for callguard."""

from .container import ResilienceContainer

__all__ = ["ResilienceContainer"]
