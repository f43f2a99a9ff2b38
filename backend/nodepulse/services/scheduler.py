"""Scheduler coordinator - owns the collection loop and every poller.

Startup is staggered rather than simultaneous:
- t=0     collection tick starts (host probes: capabilities + guest lists)
- t=15s   tiered pollers start for every standalone/host node
- t=20s   discovery sync starts (needs the guest lists from the tick)
- t=30s   child batch pollers start (needs child records from discovery)
- t=60s   missing guest IP sweep starts

Capacity: the tick collects due nodes in chunks of COLLECTION_CONCURRENCY,
so at most that many host probes are in flight regardless of fleet size.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import Settings, settings as default_settings
from ..database import async_session
from ..errors import RemoteExecutionError
from ..utils.guard import NonReentrantGuard
from .child_poller import ChildBatchPoller
from .circuit_breaker import CircuitBreaker
from .discovery import DiscoverySync
from .host_probe import HostProbe
from .node_store import NodeStore
from .remote import SshExecutor
from .tiered_poller import TieredPoller

logger = logging.getLogger(__name__)

TICK_JOB_ID = "collection_tick"


class SchedulerCoordinator:
    """Top-level owner of pollers, discovery and the global tick."""

    def __init__(
        self,
        store: Optional[NodeStore] = None,
        executor=None,
        breaker: Optional[CircuitBreaker] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or default_settings
        self.store = store or NodeStore(async_session)
        self.executor = executor or SshExecutor(self.config)
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=self.config.breaker_failure_threshold,
            open_timeout=self.config.breaker_open_timeout,
            half_open_max_calls=self.config.breaker_half_open_max_calls,
        )
        self.scheduler = AsyncIOScheduler()
        self.host_probe = HostProbe(self.store, self.executor, self.config)
        self.discovery = DiscoverySync(self.store, self.executor, self.config)

        self.tiered_pollers: Dict[int, TieredPoller] = {}
        self.child_pollers: Dict[int, ChildBatchPoller] = {}
        self.last_collection: Dict[int, float] = {}
        self.tick_guard = NonReentrantGuard("Collection tick")
        self._clock = clock
        self._running = False
        self._child_pollers_enabled = False

    @property
    def running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        """Start the tick and schedule the staggered startup phases."""
        if self._running:
            return
        config = self.config
        # Aware, in the scheduler timezone; recorded timestamps elsewhere are naive UTC
        now = datetime.now(self.scheduler.timezone)

        # max_instances=2 so an overlapping tick reaches the guard and is counted
        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=config.tick_interval),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=2,
            coalesce=True,
            next_run_time=now,
        )
        self.scheduler.add_job(
            self.start_all,
            trigger=DateTrigger(run_date=now + timedelta(seconds=config.tiered_start_delay)),
            id="start_tiered_pollers",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run_discovery,
            trigger=IntervalTrigger(seconds=config.discovery_interval),
            id="discovery_sync",
            replace_existing=True,
            max_instances=1,
            next_run_time=now + timedelta(seconds=config.discovery_start_delay),
        )
        self.scheduler.add_job(
            self.start_child_pollers,
            trigger=DateTrigger(run_date=now + timedelta(seconds=config.child_poller_start_delay)),
            id="start_child_pollers",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run_ip_sweep,
            trigger=IntervalTrigger(seconds=config.ip_sweep_interval),
            id="guest_ip_sweep",
            replace_existing=True,
            max_instances=1,
            next_run_time=now + timedelta(seconds=config.ip_sweep_start_delay),
        )
        self.scheduler.add_job(
            self._cleanup_history,
            trigger=IntervalTrigger(hours=1),
            id="cleanup_history",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._cleanup_breakers,
            trigger=IntervalTrigger(minutes=5),
            id="cleanup_breakers",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        self._running = True
        logger.info(
            f"Scheduler started (tick={config.tick_interval}s, "
            f"concurrency={config.collection_concurrency}, min_interval={config.min_collection_interval}s)"
        )

    def stop(self):
        """Stop new ticks, then every poller. In-flight SSH calls run to their timeout."""
        if not self._running:
            return
        try:
            self.scheduler.remove_job(TICK_JOB_ID)
        except JobLookupError:
            pass
        self.stop_all()
        for poller in list(self.child_pollers.values()):
            poller.stop()
        self.child_pollers.clear()
        self._child_pollers_enabled = False
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    # =========================================================================
    # Poller registry
    # =========================================================================

    def _make_poller(self, node_id: int) -> TieredPoller:
        return TieredPoller(
            node_id,
            self.store,
            self.executor,
            self.breaker,
            self.scheduler,
            config=self.config,
            on_removed=self._forget_poller,
        )

    def _forget_poller(self, node_id: int):
        self.tiered_pollers.pop(node_id, None)

    def _forget_child_poller(self, host_id: int):
        self.child_pollers.pop(host_id, None)

    async def start_monitoring(self, node_id: int) -> bool:
        """Start polling one node. Returns False if it cannot be polled directly."""
        node = await self.store.get_node(node_id)
        if node is None or not node.monitoring_enabled:
            return False
        if node.is_guest:
            logger.debug(f"{node.name} is a guest, polled through host {node.parent_id}")
            return False

        poller = self.tiered_pollers.get(node_id)
        if poller is None:
            poller = self._make_poller(node_id)
            self.tiered_pollers[node_id] = poller
        poller.start()

        if self._child_pollers_enabled and await self.store.is_proxmox_host(node_id):
            await self._start_child_poller(node_id)
        return True

    async def stop_monitoring(self, node_id: int) -> bool:
        """Stop every poller of a node. Returns True if one was running."""
        stopped = False
        poller = self.tiered_pollers.pop(node_id, None)
        if poller is not None:
            poller.stop()
            stopped = True
        child_poller = self.child_pollers.pop(node_id, None)
        if child_poller is not None:
            child_poller.stop()
            stopped = True
        return stopped

    async def start_all(self) -> int:
        """Start tiered pollers for all enabled standalone and host nodes."""
        started = 0
        try:
            for node in await self.store.list_nodes(enabled_only=True):
                if await self.start_monitoring(node.id):
                    started += 1
        except Exception as e:
            logger.error(f"Error starting tiered pollers: {e}")
        logger.info(f"Tiered polling active for {started} nodes")
        return started

    def stop_all(self):
        for poller in list(self.tiered_pollers.values()):
            poller.stop()
        self.tiered_pollers.clear()

    async def _start_child_poller(self, host_id: int):
        if host_id in self.child_pollers:
            return
        poller = ChildBatchPoller(
            host_id,
            self.store,
            self.executor,
            self.breaker,
            self.scheduler,
            config=self.config,
            on_removed=self._forget_child_poller,
        )
        await poller.start()
        self.child_pollers[host_id] = poller

    async def start_child_pollers(self) -> int:
        """Start one child batch poller per detected Proxmox host."""
        self._child_pollers_enabled = True
        try:
            for host in await self.store.list_proxmox_hosts():
                await self._start_child_poller(host.id)
        except Exception as e:
            logger.error(f"Error starting child pollers: {e}")
        logger.info(f"Child batch polling active for {len(self.child_pollers)} hosts")
        return len(self.child_pollers)

    # =========================================================================
    # Global collection tick
    # =========================================================================

    def is_due(self, node, now: float) -> bool:
        last = self.last_collection.get(node.id)
        if last is None:
            return True
        interval = max(node.monitoring_interval or 0, self.config.min_collection_interval)
        return now - last >= interval

    async def _tick(self):
        if not self.tick_guard.try_acquire():
            return
        try:
            await self.collect_due()
        except Exception as e:
            # Aborts this tick only, the next one retries
            logger.error(f"Error running collection tick: {e}")
        finally:
            self.tick_guard.release()

    async def collect_due(self) -> int:
        """Collect every due node in bounded chunks. Returns the number collected."""
        nodes = await self.store.list_nodes(enabled_only=True)
        now = self._clock()
        due = [node for node in nodes if not node.is_guest and self.is_due(node, now)]
        if not due:
            return 0

        chunk_size = max(1, self.config.collection_concurrency)
        logger.debug(f"Collecting {len(due)} due nodes out of {len(nodes)} total")
        for i in range(0, len(due), chunk_size):
            chunk = due[i:i + chunk_size]
            await asyncio.gather(*[self._collect_node(node) for node in chunk])
        return len(due)

    async def _collect_node(self, node):
        try:
            if self.breaker.is_blocked(node.id):
                logger.debug(f"Circuit open for {node.name}, skipping collection")
                return
            # With a tiered poller running, tier 1 owns liveness and the breaker
            authoritative = node.id not in self.tiered_pollers
            try:
                await self.host_probe.probe(node)
            except RemoteExecutionError as e:
                logger.error(f"Collection failed for {node.name}: {e}")
                if authoritative:
                    self.breaker.record_failure(node.id)
                    await self.store.set_online(node.id, False, str(e))
                return
            if authoritative:
                self.breaker.record_success(node.id)
                await self.store.set_online(node.id, True)
        except Exception as e:
            logger.error(f"Error collecting node {node.id}: {e}")
        finally:
            # Stamped after every attempt so failing nodes are not retried each tick
            self.last_collection[node.id] = self._clock()

    async def collect_now(self, node_id: int) -> dict:
        """Immediate out-of-band collection, honoring the circuit breaker."""
        node = await self.store.get_node(node_id)
        if node is None:
            return {"node_id": node_id, "success": False, "error": "Node not found"}
        if node.is_guest:
            return {"node_id": node_id, "success": False, "error": "Guests are collected through their parent host"}
        if self.breaker.is_blocked(node_id):
            return {"node_id": node_id, "success": False, "skipped": True, "error": "Circuit breaker open"}

        try:
            await self.host_probe.probe(node)
        except RemoteExecutionError as e:
            logger.warning(f"Host probe failed for {node.name}, using known capabilities: {e}")

        poller = self.tiered_pollers.get(node_id) or self._make_poller(node_id)
        success = await poller.run_tier(1)
        if success:
            await poller.run_tier(2)
            await poller.run_tier(3)
        self.last_collection[node_id] = self._clock()
        return {
            "node_id": node_id,
            "success": success,
            "skipped": False,
            "error": poller.last_errors.get(1),
            "stats": await self.store.get_stats(node_id),
        }

    # =========================================================================
    # Periodic jobs
    # =========================================================================

    async def sync_all_hosts(self) -> dict:
        return await self.discovery.sync_all_hosts()

    async def _run_discovery(self):
        try:
            await self.discovery.sync_all_hosts()
        except Exception as e:
            logger.error(f"Error running discovery sync: {e}")

    async def _run_ip_sweep(self):
        try:
            await self.discovery.fill_missing_guest_ips()
        except Exception as e:
            logger.error(f"Error running guest IP sweep: {e}")

    async def _cleanup_history(self):
        """Delete history rows beyond the retention window."""
        try:
            hours = await self.store.get_int_setting("stats_retention_hours")
            deleted = await self.store.cleanup_history(hours)
            logger.info(f"Cleaned up {deleted} history records older than {hours}h")
        except Exception as e:
            logger.error(f"Error cleaning up history: {e}")

    async def _cleanup_breakers(self):
        self.breaker.cleanup_stale(self.config.breaker_stale_after)

    # =========================================================================
    # Introspection
    # =========================================================================

    async def get_status(self) -> List[dict]:
        """Per-node polling state for dashboards."""
        statuses = []
        for node in await self.store.list_nodes():
            if node.is_guest:
                parent_poller = self.child_pollers.get(node.parent_id)
                running = bool(parent_poller and parent_poller.running)
            else:
                poller = self.tiered_pollers.get(node.id)
                running = bool(poller and poller.running)
            statuses.append({
                "node_id": node.id,
                "name": node.name,
                "running": running,
                "online": bool(node.online),
                "last_error": node.last_error,
                "stats": await self.store.get_stats(node.id),
                "breaker": self.breaker.get_state(node.id),
            })
        return statuses

    def scheduler_status(self) -> dict:
        return {
            "running": self._running,
            "tick": {
                "interval": self.config.tick_interval,
                "collecting": self.tick_guard.busy,
                "skipped": self.tick_guard.skipped,
                "tracked_nodes": len(self.last_collection),
            },
            "tiered_pollers": len(self.tiered_pollers),
            "child_pollers": [poller.status() for poller in self.child_pollers.values()],
            "breakers": self.breaker.stats(),
            "jobs": [job.id for job in self.scheduler.get_jobs()] if self._running else [],
        }
