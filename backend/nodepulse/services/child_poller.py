"""Child batch poller - all guests of one Proxmox host in a single SSH call.

Instead of one connection per guest, every cycle sends one script that
runs a short probe inside each eligible guest (``pct exec`` for containers,
``qm guest exec`` for VMs) between delimiter lines:

    ---CHILD:<node id>---
    <probe output, or CHILD_ERROR>
    ---END:<node id>---

The combined output is split back into per-guest segments. A missing or
failed segment only fails that guest.
"""
import logging
import time
from datetime import datetime
from typing import Callable, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import Settings, settings as default_settings
from ..errors import InvariantViolation, RemoteExecutionError
from ..models import GUEST_TYPES
from ..utils.guard import NonReentrantGuard
from .circuit_breaker import CircuitBreaker, OPEN
from .node_store import NodeStore
from .parsers import (
    CHILD_ERROR,
    CHILD_MARKER,
    CHILD_END_MARKER,
    is_child_error,
    parse_child_segment,
    split_child_output,
)

logger = logging.getLogger(__name__)

MIN_VMID = 100
MAX_VMID = 999999

# Runs inside the guest. Must not contain single quotes (wrapped in sh -c '...')
GUEST_PROBE = (
    "echo ===LOAD===; cat /proc/loadavg; "
    "echo ===NPROC===; nproc 2>/dev/null || echo 1; "
    "echo ===MEM===; free -b; "
    "echo ===DOCKER===; "
    "docker ps -a --format \"{{.ID}}|{{.Names}}|{{.Image}}|{{.Status}}|{{.State}}\" 2>/dev/null || true"
)


def validate_guest(host_id: int, child) -> None:
    """Raise InvariantViolation if ``child`` cannot be a guest of ``host_id``."""
    if child.parent_id != host_id:
        raise InvariantViolation(f"Node {child.id} is not a child of host {host_id}")
    if child.guest_type not in GUEST_TYPES:
        raise InvariantViolation(f"Node {child.id} has invalid guest type {child.guest_type!r}")
    if child.guest_vmid is None or not MIN_VMID <= child.guest_vmid <= MAX_VMID:
        raise InvariantViolation(f"Node {child.id} has invalid VMID {child.guest_vmid!r}")


def guest_exec_command(guest_type: str, vmid: int, inner: str) -> str:
    """Command line running ``inner`` inside a guest, from the host."""
    if guest_type == "vm":
        return f"qm guest exec {vmid} -- sh -c '{inner}'"
    return f"pct exec {vmid} -- sh -c '{inner}'"


def build_child_script(children, child_timeout: int) -> str:
    """Composite script probing every child, each wrapped in its own timeout."""
    lines = []
    for child in children:
        command = guest_exec_command(child.guest_type, child.guest_vmid, GUEST_PROBE)
        lines.append(f'echo "{CHILD_MARKER.format(id=child.id)}"')
        lines.append(f'timeout {child_timeout} {command} 2>/dev/null || echo "{CHILD_ERROR}"')
        lines.append(f'echo "{CHILD_END_MARKER.format(id=child.id)}"')
    return "\n".join(lines)


class ChildBatchPoller:
    """Polls the guests of one host, never overlapping with itself."""

    def __init__(
        self,
        host_id: int,
        store: NodeStore,
        executor,
        breaker: CircuitBreaker,
        scheduler: AsyncIOScheduler,
        config: Optional[Settings] = None,
        on_removed: Optional[Callable[[int], None]] = None,
    ):
        self.host_id = host_id
        self.store = store
        self.executor = executor
        self.breaker = breaker
        self.scheduler = scheduler
        self.config = config or default_settings
        self.on_removed = on_removed
        self.guard = NonReentrantGuard(f"Child poller for host {host_id}")
        self._running = False
        self.interval: Optional[int] = None

        # Counters
        self.polls = 0
        self.successes = 0
        self.failures = 0
        self.children_polled = 0
        self.last_duration: Optional[float] = None
        self.last_poll: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def job_id(self) -> str:
        return f"host-{self.host_id}-children"

    async def start(self):
        if self._running:
            return
        self.interval = await self.store.get_int_setting("child_poll_interval")
        # max_instances=2 so an overlapping firing reaches the guard and is counted
        self.scheduler.add_job(
            self.poll,
            trigger=IntervalTrigger(seconds=self.interval),
            id=self.job_id,
            replace_existing=True,
            max_instances=2,
            coalesce=True,
            next_run_time=datetime.now(self.scheduler.timezone),
        )
        self._running = True
        logger.info(f"Child polling started for host {self.host_id} (every {self.interval}s)")

    def stop(self):
        if not self._running:
            return
        try:
            self.scheduler.remove_job(self.job_id)
        except JobLookupError:
            pass
        self._running = False
        logger.info(f"Child polling stopped for host {self.host_id}")

    async def poll(self) -> int:
        """Run one batch cycle. Returns the number of guests included."""
        if not self.guard.try_acquire():
            return 0
        started = time.monotonic()
        try:
            return await self._poll()
        finally:
            self.last_duration = round(time.monotonic() - started, 3)
            self.guard.release()

    async def _poll(self) -> int:
        host = await self.store.get_node(self.host_id)
        if host is None or not host.monitoring_enabled:
            logger.info(f"Host {self.host_id} is gone or disabled, stopping child poller")
            self.stop()
            if self.on_removed:
                self.on_removed(self.host_id)
            return 0
        if host.is_guest:
            raise InvariantViolation(f"Guest node {host.id} cannot host a child poller")

        children = await self.store.list_children(host.id)
        eligible = self._eligible(host.id, children)
        if not eligible:
            logger.debug(f"No eligible guests on {host.name}")
            return 0

        self.polls += 1
        self.last_poll = datetime.utcnow()
        script = build_child_script(eligible, self.config.child_timeout)

        try:
            result = await self.executor.run(host, script, self.config.child_batch_timeout)
        except RemoteExecutionError as e:
            logger.error(f"Child batch failed on {host.name}: {e}")
            for child in eligible:
                await self._record_failure(child, f"Batch failed: {e}")
            return len(eligible)

        segments = split_child_output(result.stdout)
        for child in eligible:
            segment = segments.get(child.id)
            try:
                if segment is None:
                    await self._record_failure(child, "No output from guest")
                elif is_child_error(segment):
                    await self._record_failure(child, "Guest probe failed or timed out")
                else:
                    await self._record_success(child, segment)
            except Exception as e:
                logger.error(f"Error storing results for guest {child.name}: {e}")

        self.children_polled += len(eligible)
        logger.debug(f"Child batch on {host.name}: {len(eligible)} guests in one call")
        return len(eligible)

    def _eligible(self, host_id: int, children) -> List:
        eligible = []
        for child in children:
            if not child.guest_type and child.guest_vmid is None:
                continue  # Manually attached node, not a hypervisor guest
            validate_guest(host_id, child)
            if not child.monitoring_enabled or not child.online:
                continue
            # Checked last: can_execute may consume the half-open probe
            if not self.breaker.can_execute(child.id):
                logger.debug(f"Circuit open for guest {child.name}, excluded from batch")
                continue
            eligible.append(child)
        return eligible

    async def _record_success(self, child, segment: str):
        snapshot = parse_child_segment(segment)
        self.breaker.record_success(child.id)
        await self.store.replace_containers(child.id, snapshot.containers)
        await self.store.upsert_stats(child.id, snapshot.stats, tier=1)
        await self.store.set_online(child.id, True)
        self.successes += 1

    async def _record_failure(self, child, error: str):
        self.breaker.record_failure(child.id)
        self.failures += 1
        if self.breaker.get_state(child.id) == OPEN:
            await self.store.set_online(child.id, False, error)
            logger.warning(f"Guest {child.name} marked offline: {error}")
        else:
            await self.store.set_error(child.id, error)

    def status(self) -> dict:
        return {
            "host_id": self.host_id,
            "running": self._running,
            "polling": self.guard.busy,
            "interval": self.interval,
            "polls": self.polls,
            "successes": self.successes,
            "failures": self.failures,
            "skipped": self.guard.skipped,
            "children_polled": self.children_polled,
            "last_duration": self.last_duration,
            "last_poll": self.last_poll,
        }
