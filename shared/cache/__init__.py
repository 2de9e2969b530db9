"""Cache helpers shared across the bot runtime."""
from __future__ import annotations

from .progress import ProgressCache, get_progress_cache

__all__ = [
    "ProgressCache",
    "get_progress_cache",
]
