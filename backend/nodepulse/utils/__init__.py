"""Shared helpers."""
from .db_utils import retry_on_lock
from .guard import NonReentrantGuard

__all__ = ["retry_on_lock", "NonReentrantGuard"]
