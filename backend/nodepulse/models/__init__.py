"""Database models."""
from .settings import Setting
from .node import Node, GUEST_TYPES
from .node_stats import NodeStatsCurrent, NodeStatsHistory
from .hardware import NodeHardware
from .discovery import NodeDiscovery
from .guest import ProxmoxGuest, DockerContainer

__all__ = [
    "Setting",
    "Node",
    "GUEST_TYPES",
    "NodeStatsCurrent",
    "NodeStatsHistory",
    "NodeHardware",
    "NodeDiscovery",
    "ProxmoxGuest",
    "DockerContainer",
]
