"""Monitoring status schemas."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel


class NodeStatus(BaseModel):
    """Polling state of one node."""
    node_id: int
    name: str
    running: bool
    online: bool
    last_error: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None
    breaker: str  # closed, open, half-open


class CollectResult(BaseModel):
    """Outcome of an immediate collection."""
    node_id: int
    success: bool
    skipped: bool = False  # Circuit breaker open
    error: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None


class SyncResult(BaseModel):
    """Totals of one discovery run."""
    hosts: int = 0
    created: int
    updated: int
    deleted: int  # Orphans marked offline, records are kept
    errors: List[str]


class BreakerStats(BaseModel):
    total: int
    open: int
    half_open: int
    closed: int


class ChildPollerStatus(BaseModel):
    host_id: int
    running: bool
    polling: bool
    interval: Optional[int] = None
    polls: int
    successes: int
    failures: int
    skipped: int
    children_polled: int
    last_duration: Optional[float] = None
    last_poll: Optional[datetime] = None


class TickStatus(BaseModel):
    interval: int
    collecting: bool
    skipped: int
    tracked_nodes: int


class SchedulerStatus(BaseModel):
    running: bool
    tick: TickStatus
    tiered_pollers: int
    child_pollers: List[ChildPollerStatus]
    breakers: BreakerStats
    jobs: List[str]
