"""Utility helpers."""

from routine_engine.utils.io import atomic_write

__all__ = ["atomic_write"]
