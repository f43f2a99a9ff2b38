"""Pydantic schemas for API responses."""
from .status import (
    BreakerStats,
    NodeStatus,
    CollectResult,
    SyncResult,
    ChildPollerStatus,
    TickStatus,
    SchedulerStatus,
)

__all__ = [
    "BreakerStats",
    "NodeStatus",
    "CollectResult",
    "SyncResult",
    "ChildPollerStatus",
    "TickStatus",
    "SchedulerStatus",
]
