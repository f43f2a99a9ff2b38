"""Circuit breaker - stops SSH retry storms against unreachable nodes.

An offline node would otherwise cost one full SSH timeout per poll. After
``failure_threshold`` consecutive failures the breaker opens and every
check is refused until ``open_timeout`` seconds have passed; then a single
probe is let through (half-open). A success closes the breaker, a failure
reopens it.

States:
- closed: all calls allowed
- open: all calls refused until the timeout elapses
- half-open: ``half_open_max_calls`` probes allowed, then refused until
  the probe resolves

Usage:
    if not breaker.can_execute(node_id):
        return
    try:
        result = await executor.run(node, command, timeout)
        breaker.record_success(node_id)
    except RemoteExecutionError:
        breaker.record_failure(node_id)
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, List

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"

FAILURE_THRESHOLD = 3
OPEN_TIMEOUT = 60.0  # seconds
HALF_OPEN_MAX_CALLS = 1


@dataclass
class BreakerState:
    """Failure bookkeeping for one entity."""
    failures: int = 0
    last_failure_time: float = 0.0
    state: str = CLOSED
    half_open_calls: int = 0


class CircuitBreaker:
    """Per-entity failure gate, keyed by node id.

    Holds only in-memory state. Entries are created lazily on first use and
    live as long as the breaker instance; the scheduler owns one instance and
    passes it to every poller.
    """

    def __init__(
        self,
        failure_threshold: int = FAILURE_THRESHOLD,
        open_timeout: float = OPEN_TIMEOUT,
        half_open_max_calls: int = HALF_OPEN_MAX_CALLS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.open_timeout = open_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._states: Dict[Hashable, BreakerState] = {}

    def _get(self, entity_id: Hashable) -> BreakerState:
        state = self._states.get(entity_id)
        if state is None:
            state = BreakerState()
            self._states[entity_id] = state
        return state

    def get_state(self, entity_id: Hashable) -> str:
        """Current state name without side effects."""
        state = self._states.get(entity_id)
        return state.state if state else CLOSED

    def failures(self, entity_id: Hashable) -> int:
        state = self._states.get(entity_id)
        return state.failures if state else 0

    def can_execute(self, entity_id: Hashable) -> bool:
        """Return True if a call to ``entity_id`` may proceed.

        May transition open -> half-open, and consumes a half-open probe.
        """
        state = self._get(entity_id)

        if state.state == CLOSED:
            return True

        if state.state == OPEN:
            if self._clock() - state.last_failure_time > self.open_timeout:
                # The transitioning call is the probe
                state.state = HALF_OPEN
                state.half_open_calls = 1
                logger.info(f"Circuit breaker for {entity_id} HALF-OPEN (testing)")
                return True
            return False

        # Half-open: allow limited probes until one resolves
        if state.half_open_calls < self.half_open_max_calls:
            state.half_open_calls += 1
            return True
        return False

    def is_blocked(self, entity_id: Hashable) -> bool:
        """Peek whether ``can_execute`` would refuse, without consuming a probe."""
        state = self._states.get(entity_id)
        if state is None or state.state == CLOSED:
            return False
        if state.state == OPEN:
            return self._clock() - state.last_failure_time <= self.open_timeout
        return state.half_open_calls >= self.half_open_max_calls

    def record_success(self, entity_id: Hashable):
        """Close the breaker and forget previous failures."""
        state = self._get(entity_id)
        if state.state != CLOSED:
            logger.info(f"Circuit breaker for {entity_id} CLOSED (request succeeded)")
        state.failures = 0
        state.state = CLOSED
        state.half_open_calls = 0

    def record_failure(self, entity_id: Hashable):
        """Count a failure; opens the breaker at the threshold or on a failed probe."""
        state = self._get(entity_id)
        state.failures += 1
        state.last_failure_time = self._clock()

        if state.state == HALF_OPEN:
            state.state = OPEN
            logger.warning(
                f"Circuit breaker for {entity_id} REOPENED (probe failed, {state.failures} total failures)"
            )
            return

        if state.state == CLOSED and state.failures >= self.failure_threshold:
            state.state = OPEN
            logger.warning(f"Circuit breaker for {entity_id} OPENED ({state.failures} consecutive failures)")

    def reset(self, entity_id: Hashable):
        """Forget all state for one entity."""
        self._states.pop(entity_id, None)
        logger.info(f"Circuit breaker for {entity_id} RESET")

    def reset_all(self):
        count = len(self._states)
        self._states.clear()
        logger.info(f"All {count} circuit breakers RESET")

    def cleanup_stale(self, max_age: float = 600.0) -> int:
        """Reset breakers that have stayed open longer than ``max_age`` seconds.

        Returns:
            Number of breakers reset
        """
        now = self._clock()
        stale = [
            entity_id for entity_id, state in self._states.items()
            if state.state == OPEN and now - state.last_failure_time > max_age
        ]
        for entity_id in stale:
            del self._states[entity_id]
            logger.info(f"Circuit breaker for {entity_id} auto-reset (open for more than {int(max_age)}s)")
        return len(stale)

    def stats(self) -> Dict[str, int]:
        """Counts of breakers per state."""
        result = {"total": len(self._states), "open": 0, "half_open": 0, "closed": 0}
        for state in self._states.values():
            if state.state == OPEN:
                result["open"] += 1
            elif state.state == HALF_OPEN:
                result["half_open"] += 1
            else:
                result["closed"] += 1
        return result

    def all_states(self) -> List[dict]:
        """Detailed state per entity, for debugging and dashboards."""
        now = self._clock()
        return [
            {
                "entity_id": entity_id,
                "state": state.state,
                "failures": state.failures,
                "seconds_since_failure": round(now - state.last_failure_time) if state.last_failure_time else None,
            }
            for entity_id, state in self._states.items()
        ]
