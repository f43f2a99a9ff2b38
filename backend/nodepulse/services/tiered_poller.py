"""Tiered poller - three independent polling cadences per node.

Tier 1 (live):     uptime, memory, docker stats. Authoritative for liveness
                   and the only tier that drives the circuit breaker.
Tier 2 (health):   disk, sensors, GPU, ZFS. Merged into the same stats row
                   (disjoint fields), failures are only logged.
Tier 3 (hardware): identity and device inventory, written to the hardware
                   table, failures are only logged.

Each tier sends all of its probes as one batched SSH call.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import Settings, settings as default_settings
from ..errors import InvariantViolation, RemoteExecutionError
from .circuit_breaker import CircuitBreaker
from .command_registry import TIER_LIVE, TIER_HEALTH, TIER_HARDWARE, commands_for_tier
from .node_store import NodeStore
from .parsers import build_command_batch, split_command_output, parse_tier1, parse_tier2, parse_tier3

logger = logging.getLogger(__name__)

TIERS = (TIER_LIVE, TIER_HEALTH, TIER_HARDWARE)


class TieredPoller:
    """Polls one standalone or host node on three timers."""

    def __init__(
        self,
        node_id: int,
        store: NodeStore,
        executor,
        breaker: CircuitBreaker,
        scheduler: AsyncIOScheduler,
        config: Optional[Settings] = None,
        on_removed: Optional[Callable[[int], None]] = None,
    ):
        self.node_id = node_id
        self.store = store
        self.executor = executor
        self.breaker = breaker
        self.scheduler = scheduler
        self.config = config or default_settings
        self.on_removed = on_removed
        self._running = False
        self.last_run: Dict[int, datetime] = {}
        self.last_success: Dict[int, datetime] = {}
        self.last_errors: Dict[int, Optional[str]] = {}

    @property
    def running(self) -> bool:
        return self._running

    def job_id(self, tier: int) -> str:
        return f"node-{self.node_id}-tier{tier}"

    def interval(self, tier: int) -> int:
        return getattr(self.config, f"tier{tier}_interval")

    def timeout(self, tier: int) -> int:
        return getattr(self.config, f"tier{tier}_timeout")

    def start(self):
        """Arm the three tier timers; each also fires once right away."""
        if self._running:
            return
        # Trigger times are aware, in the scheduler timezone; status timestamps are naive UTC
        now = datetime.now(self.scheduler.timezone)
        for tier in TIERS:
            # max_instances=1: a tier firing while its previous run is in flight is dropped
            self.scheduler.add_job(
                self.run_tier,
                trigger=IntervalTrigger(seconds=self.interval(tier)),
                args=[tier],
                id=self.job_id(tier),
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                next_run_time=now,
            )
        self._running = True
        logger.info(
            f"Tiered polling started for node {self.node_id} "
            f"({self.interval(TIER_LIVE)}s/{self.interval(TIER_HEALTH)}s/{self.interval(TIER_HARDWARE)}s)"
        )

    def stop(self):
        """Remove the timers. Runs already in flight finish on their own."""
        if not self._running:
            return
        for tier in TIERS:
            try:
                self.scheduler.remove_job(self.job_id(tier))
            except JobLookupError:
                pass
        self._running = False
        logger.info(f"Tiered polling stopped for node {self.node_id}")

    async def run_tier(self, tier: int) -> bool:
        """Run one tier once. Returns True if fresh data was stored."""
        self.last_run[tier] = datetime.utcnow()

        node = await self.store.get_node(self.node_id)
        if node is None or not node.monitoring_enabled:
            reason = "deleted" if node is None else "disabled"
            logger.info(f"Node {self.node_id} was {reason}, stopping its poller")
            self.stop()
            if self.on_removed:
                self.on_removed(self.node_id)
            return False
        if node.is_guest:
            raise InvariantViolation(
                f"Node {node.id} is a {node.guest_type} guest and must be polled through its parent"
            )

        capabilities = await self.store.get_capabilities(node.id)
        commands = commands_for_tier(tier, capabilities)
        script = build_command_batch((cmd.key, cmd.shell) for cmd in commands)

        if tier == TIER_LIVE:
            return await self._run_live(node, script)
        return await self._run_secondary(node, tier, script)

    async def _run_live(self, node, script: str) -> bool:
        if not self.breaker.can_execute(node.id):
            logger.debug(f"Circuit open for {node.name}, skipping tier 1")
            return False

        try:
            result = await self.executor.run(node, script, self.timeout(TIER_LIVE))
        except RemoteExecutionError as e:
            self.breaker.record_failure(node.id)
            self.last_errors[TIER_LIVE] = str(e)
            # Stats are left as they were: stale but visible
            await self.store.set_online(node.id, False, str(e))
            logger.error(f"Tier 1 failed for {node.name}: {e}")
            return False

        self.breaker.record_success(node.id)
        data = parse_tier1(split_command_output(result.stdout))
        await self.store.upsert_stats(node.id, data, tier=TIER_LIVE)
        await self.store.set_online(node.id, True)
        self._mark_success(TIER_LIVE)

        if await self.store.get_setting("save_history") == "1":
            await self.store.append_history(node.id, await self.store.get_stats(node.id) or data)

        logger.debug(f"Tier 1 {node.name}: cpu={data['cpu_percent']}% ram={data['ram_percent']}%")
        return True

    async def _run_secondary(self, node, tier: int, script: str) -> bool:
        # Peek only: tiers 2 and 3 never consume the half-open probe
        if self.breaker.is_blocked(node.id):
            logger.debug(f"Circuit open for {node.name}, skipping tier {tier}")
            return False

        try:
            result = await self.executor.run(node, script, self.timeout(tier))
        except RemoteExecutionError as e:
            self.last_errors[tier] = str(e)
            logger.error(f"Tier {tier} failed for {node.name}: {e}")
            return False

        outputs = split_command_output(result.stdout)
        if tier == TIER_HEALTH:
            await self.store.upsert_stats(node.id, parse_tier2(outputs), tier=TIER_HEALTH)
        else:
            await self.store.save_hardware(node.id, parse_tier3(outputs))
        self._mark_success(tier)
        return True

    def _mark_success(self, tier: int):
        self.last_success[tier] = datetime.utcnow()
        self.last_errors[tier] = None

    def status(self) -> dict:
        return {
            "node_id": self.node_id,
            "running": self._running,
            "tiers": {
                tier: {
                    "interval": self.interval(tier),
                    "last_run": self.last_run.get(tier),
                    "last_success": self.last_success.get(tier),
                    "last_error": self.last_errors.get(tier),
                }
                for tier in TIERS
            },
        }
