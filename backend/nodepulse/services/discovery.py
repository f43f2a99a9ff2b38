"""Discovery sync - keeps child node records in line with hypervisor guests.

The guest inventory is written by the host probe; this service only
reconciles it against the tracked child nodes:
- a reported guest without a child record gets one (inheriting SSH access)
- an existing child gets its online status and auto-generated name refreshed
- a child whose guest vanished is marked offline but never deleted
"""
import logging
import re
from typing import Dict, List, Optional

from ..config import Settings, settings as default_settings
from ..errors import InvariantViolation, RemoteExecutionError
from ..models import GUEST_TYPES
from .child_poller import MIN_VMID, MAX_VMID, guest_exec_command
from .node_store import NodeStore
from .parsers import GuestRecord, is_valid_ip, unwrap_guest_exec

logger = logging.getLogger(__name__)

AUTO_NAME_RE = re.compile(r"^(vm|lxc)-\d+$")
ORPHAN_ERROR = "VM/LXC no longer exists on Proxmox host"


def empty_result() -> dict:
    return {"created": 0, "updated": 0, "deleted": 0, "errors": []}


def merge_result(total: dict, part: dict):
    for key in ("created", "updated", "deleted"):
        total[key] += part[key]
    total["errors"].extend(part["errors"])


class DiscoverySync:
    """Reconciles guest inventory with child nodes, per host."""

    def __init__(self, store: NodeStore, executor, config: Optional[Settings] = None):
        self.store = store
        self.executor = executor
        self.config = config or default_settings

    async def is_enabled(self, host) -> bool:
        """Global setting and per-host flag must both be on."""
        if not host.auto_discovery:
            return False
        return await self.store.get_setting("auto_create_child_nodes") == "1"

    async def sync_all_hosts(self) -> dict:
        """Sync every Proxmox host with auto discovery enabled."""
        total = {"hosts": 0, **empty_result()}
        if await self.store.get_setting("auto_create_child_nodes") != "1":
            logger.debug("Auto discovery disabled globally")
            return total

        for host in await self.store.list_proxmox_hosts():
            if not host.auto_discovery:
                continue
            try:
                merge_result(total, await self.sync_host(host))
                total["hosts"] += 1
            except InvariantViolation:
                raise
            except Exception as e:
                logger.error(f"Discovery failed for host {host.name}: {e}")
                total["errors"].append(f"{host.name}: {e}")

        if total["created"] or total["deleted"]:
            logger.info(
                f"Discovery: {total['created']} created, {total['updated']} updated, "
                f"{total['deleted']} orphaned across {total['hosts']} hosts"
            )
        return total

    async def sync_host(self, host) -> dict:
        result = empty_result()
        # Loaded once per host, not per guest
        tracked = {
            (child.guest_type, child.guest_vmid): child
            for child in await self.store.list_children(host.id)
            if child.guest_type
        }

        for guest_type in GUEST_TYPES:
            guests = await self.store.list_guests(host.id, guest_type)
            for guest in guests:
                try:
                    outcome = await self._sync_guest(host, guest, tracked.get((guest_type, guest.vmid)))
                    result[outcome] += 1
                except InvariantViolation:
                    raise
                except Exception as e:
                    logger.error(f"Error syncing {guest_type} {guest.vmid} on {host.name}: {e}")
                    result["errors"].append(f"{guest_type} {guest.vmid}: {e}")

            result["deleted"] += await self._mark_orphans(host, [g.vmid for g in guests], guest_type)
        return result

    async def sync_single_guest(self, host_id: int, vmid: int, guest_type: str) -> dict:
        """Reconcile one guest, e.g. after a manual start or stop."""
        result = empty_result()
        host = await self.store.get_node(host_id)
        if host is None:
            result["errors"].append(f"Host {host_id} not found")
            return result

        guest = await self.store.get_guest(host_id, vmid, guest_type)
        child = await self.store.get_child_by_guest(host_id, vmid, guest_type)
        if guest is None:
            if child is not None and await self._mark_orphan(child):
                result["deleted"] += 1
            return result

        try:
            result[await self._sync_guest(host, guest, child)] += 1
        except (RemoteExecutionError, ValueError) as e:
            result["errors"].append(f"{guest_type} {vmid}: {e}")
        return result

    async def get_orphaned_children(self, host_id: int, current_vmids: List[int], guest_type: str):
        return await self.store.get_orphaned_children(host_id, current_vmids, guest_type)

    async def _sync_guest(self, host, guest: GuestRecord, child) -> str:
        # Reported by the hypervisor, so a bad VMID fails only this guest
        if not MIN_VMID <= guest.vmid <= MAX_VMID:
            raise ValueError(f"VMID {guest.vmid} out of range ({MIN_VMID}-{MAX_VMID})")

        if child is not None:
            await self._update_child(child, guest)
            return "updated"

        name = guest.name or f"{guest.guest_type}-{guest.vmid}"
        child = await self.store.create_child(host, guest, name)
        logger.info(f"Created child node {name} ({guest.guest_type} {guest.vmid}) under {host.name}")

        if guest.running:
            # Best effort: the guest may not have booted its network yet
            try:
                ip = await self.resolve_guest_ip(host, guest.guest_type, guest.vmid)
            except RemoteExecutionError as e:
                logger.debug(f"Could not resolve IP of {name}: {e}")
                ip = None
            if ip:
                await self.store.set_guest_ip(child.id, ip)
        return "created"

    async def _update_child(self, child, guest: GuestRecord):
        running = guest.running
        error = None if running else f"Guest is {guest.status}"
        # Unchanged guests cause no writes
        if bool(child.online) != running or child.last_error != error:
            await self.store.update_child_status(child.id, guest.status)
        if guest.name and child.name != guest.name and AUTO_NAME_RE.match(child.name or ""):
            await self.store.rename_node(child.id, guest.name)

    async def _mark_orphans(self, host, current_vmids: List[int], guest_type: str) -> int:
        count = 0
        for orphan in await self.store.get_orphaned_children(host.id, current_vmids, guest_type):
            if await self._mark_orphan(orphan):
                logger.warning(f"{orphan.name} ({guest_type} {orphan.guest_vmid}) no longer exists on {host.name}")
                count += 1
        return count

    async def _mark_orphan(self, child) -> bool:
        if not child.online and child.last_error == ORPHAN_ERROR:
            return False
        await self.store.set_online(child.id, False, ORPHAN_ERROR)
        return True

    async def resolve_guest_ip(self, host, guest_type: str, vmid: int) -> Optional[str]:
        """First usable address reported by ``hostname -I`` inside the guest, IPv4 preferred."""
        command = guest_exec_command(guest_type, vmid, "hostname -I")
        result = await self.executor.run(host, command, self.config.child_timeout)
        candidates = [token for token in unwrap_guest_exec(result.stdout).split() if is_valid_ip(token)]
        ipv4 = [token for token in candidates if "." in token]
        return (ipv4 or candidates or [None])[0]

    async def fill_missing_guest_ips(self) -> int:
        """Resolve IPs of online guests that have none. Returns how many were filled."""
        filled = 0
        for child in await self.store.list_children_missing_ip():
            parent = await self.store.get_node(child.parent_id)
            if parent is None:
                continue
            try:
                ip = await self.resolve_guest_ip(parent, child.guest_type, child.guest_vmid)
            except RemoteExecutionError as e:
                logger.debug(f"IP sweep: {child.name} unreachable: {e}")
                continue
            if ip:
                await self.store.set_guest_ip(child.id, ip)
                filled += 1
        if filled:
            logger.info(f"IP sweep resolved {filled} guest addresses")
        return filled

    async def status(self, host_id: int) -> Dict[str, object]:
        host = await self.store.get_node(host_id)
        children = [c for c in await self.store.list_children(host_id) if c.guest_type]
        return {
            "host_id": host_id,
            "enabled": bool(host and await self.is_enabled(host)),
            "children": len(children),
            "online": sum(1 for c in children if c.online),
            "offline": sum(1 for c in children if not c.online),
            "orphaned": sum(1 for c in children if c.last_error == ORPHAN_ERROR),
        }
