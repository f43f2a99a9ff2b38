"""Error taxonomy for the collection and resilience layer.

Transient remote failures (timeouts, refused connections, failed commands
without output) are raised as ``RemoteExecutionError`` and handled per
node: they feed the circuit breaker and end up as a stored ``last_error``.

Data-model violations are raised as ``InvariantViolation`` and are never
tolerated; they point at a bug upstream.
"""
from typing import Optional


class NodePulseError(Exception):
    """Base class for all nodepulse errors."""


class RemoteExecutionError(NodePulseError):
    """A remote command could not be run or produced no usable output."""

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class RemoteTimeoutError(RemoteExecutionError):
    """A remote command exceeded its timeout."""

    def __init__(self, message: str = "Command timeout"):
        super().__init__(message)


class InvariantViolation(NodePulseError):
    """A node record breaks the hierarchy rules (e.g. a guest without parent)."""


class NodeHasChildrenError(NodePulseError):
    """A host cannot be deleted while guest nodes still point at it."""
