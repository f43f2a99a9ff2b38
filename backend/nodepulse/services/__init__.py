"""Services for tiered polling, discovery and scheduling."""
from .circuit_breaker import CircuitBreaker
from .node_store import NodeStore
from .remote import SshExecutor, RemoteResult
from .tiered_poller import TieredPoller
from .child_poller import ChildBatchPoller
from .host_probe import HostProbe
from .discovery import DiscoverySync
from .scheduler import SchedulerCoordinator

__all__ = [
    "CircuitBreaker",
    "NodeStore",
    "SshExecutor",
    "RemoteResult",
    "TieredPoller",
    "ChildBatchPoller",
    "HostProbe",
    "DiscoverySync",
    "SchedulerCoordinator",
]
