"""Node store - persistence boundary for pollers, discovery and scheduler.

Each method opens its own short session so a slow remote call never holds
a database connection. Writes commit through ``retry_on_lock``.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update, delete, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    Node,
    NodeStatsCurrent,
    NodeStatsHistory,
    NodeHardware,
    NodeDiscovery,
    ProxmoxGuest,
    DockerContainer,
    Setting,
)
from ..errors import NodeHasChildrenError
from ..models.settings import DEFAULT_SETTINGS
from ..utils.db_utils import retry_on_lock
from .parsers import GuestRecord

logger = logging.getLogger(__name__)

HISTORY_FIELDS = ("cpu_percent", "load_1m", "ram_percent", "disk_percent", "temp_cpu")


def _upsert(session: AsyncSession, model, key: str, values: dict):
    """INSERT ... ON CONFLICT DO UPDATE touching only the given columns."""
    dialect = session.bind.dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = insert(model).values(**values)
    changes = {name: stmt.excluded[name] for name in values if name != key}
    if not changes:
        return stmt.on_conflict_do_nothing(index_elements=[key])
    return stmt.on_conflict_do_update(index_elements=[key], set_=changes)


def _row_to_dict(row, exclude: Iterable[str] = ()) -> dict:
    return {
        column.name: getattr(row, column.name)
        for column in row.__table__.columns
        if column.name not in exclude
    }


class NodeStore:
    """Read/write contracts over nodes, stats, hardware and inventory."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # =========================================================================
    # Nodes
    # =========================================================================

    async def list_nodes(self, enabled_only: bool = False) -> List[Node]:
        async with self.session_factory() as session:
            query = select(Node).order_by(Node.id)
            if enabled_only:
                query = query.where(Node.monitoring_enabled == 1)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_node(self, node_id: int) -> Optional[Node]:
        async with self.session_factory() as session:
            return await session.get(Node, node_id)

    async def create_node(self, **fields) -> Node:
        async with self.session_factory() as session:
            node = Node(**fields)
            session.add(node)
            await retry_on_lock(session.commit)
            return node

    async def delete_node(self, node_id: int):
        """Manual deletion only; pollers notice on their next run.

        Refused while child nodes still reference ``node_id``: a guest
        must always keep its parent.
        """
        async with self.session_factory() as session:
            child = await session.execute(select(Node.id).where(Node.parent_id == node_id).limit(1))
            if child.first() is not None:
                raise NodeHasChildrenError(f"Node {node_id} still has child nodes")
            await session.execute(delete(Node).where(Node.id == node_id))
            await retry_on_lock(session.commit)

    async def set_monitoring_enabled(self, node_id: int, enabled: bool):
        await self.update_node(node_id, monitoring_enabled=1 if enabled else 0)

    async def update_node(self, node_id: int, **values):
        async with self.session_factory() as session:
            await session.execute(update(Node).where(Node.id == node_id).values(**values))
            await retry_on_lock(session.commit)

    async def set_online(self, node_id: int, online: bool, error: Optional[str] = None):
        """Record liveness; a successful contact also stamps ``last_seen``."""
        values = {"online": 1 if online else 0, "last_error": error}
        if online:
            values["last_seen"] = datetime.utcnow()
        await self.update_node(node_id, **values)

    async def set_error(self, node_id: int, error: Optional[str]):
        """Store an error without touching the online flag."""
        await self.update_node(node_id, last_error=error)

    async def rename_node(self, node_id: int, name: str):
        await self.update_node(node_id, name=name)

    async def set_guest_ip(self, node_id: int, guest_ip: str):
        await self.update_node(node_id, guest_ip=guest_ip)

    # =========================================================================
    # Stats
    # =========================================================================

    async def upsert_stats(self, node_id: int, fields: Dict[str, object], tier: Optional[int] = None):
        """Write only ``fields`` into the current-stats row.

        Columns not present in ``fields`` keep their previous value.
        """
        values = {"node_id": node_id, **fields, "updated_at": datetime.utcnow()}
        if tier in (1, 2):
            values[f"tier{tier}_updated_at"] = values["updated_at"]
        async with self.session_factory() as session:
            await session.execute(_upsert(session, NodeStatsCurrent, "node_id", values))
            await retry_on_lock(session.commit)

    async def get_stats(self, node_id: int) -> Optional[dict]:
        async with self.session_factory() as session:
            row = await session.get(NodeStatsCurrent, node_id)
            return _row_to_dict(row, exclude=("node_id",)) if row else None

    async def append_history(self, node_id: int, data: dict):
        async with self.session_factory() as session:
            session.add(NodeStatsHistory(
                node_id=node_id,
                **{name: data.get(name) for name in HISTORY_FIELDS},
            ))
            await retry_on_lock(session.commit)

    async def cleanup_history(self, retention_hours: int) -> int:
        """Delete history rows older than the retention window."""
        cutoff = datetime.utcnow() - timedelta(hours=retention_hours)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(NodeStatsHistory).where(NodeStatsHistory.recorded_at < cutoff)
            )
            await retry_on_lock(session.commit)
            return result.rowcount or 0

    async def count_history(self, node_id: int) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(NodeStatsHistory.id).where(NodeStatsHistory.node_id == node_id)
            )
            return len(result.all())

    # =========================================================================
    # Hardware and capabilities
    # =========================================================================

    async def save_hardware(self, node_id: int, data: dict):
        values = {
            "node_id": node_id,
            "cpu_model": data.get("cpu_model"),
            "cpu_cores": data.get("cpu_cores"),
            "ram_total_bytes": data.get("ram_total_bytes"),
            "os_name": data.get("os_name"),
            "kernel": data.get("kernel"),
            "pci_devices": json.dumps(data.get("pci_devices") or []),
            "usb_devices": json.dumps(data.get("usb_devices") or []),
            "smart_health": data.get("smart_health"),
            "updated_at": datetime.utcnow(),
        }
        async with self.session_factory() as session:
            await session.execute(_upsert(session, NodeHardware, "node_id", values))
            await retry_on_lock(session.commit)

    async def get_hardware(self, node_id: int) -> Optional[dict]:
        async with self.session_factory() as session:
            row = await session.get(NodeHardware, node_id)
            if not row:
                return None
            data = _row_to_dict(row, exclude=("node_id",))
            data["pci_devices"] = json.loads(row.pci_devices or "[]")
            data["usb_devices"] = json.loads(row.usb_devices or "[]")
            return data

    async def get_capabilities(self, node_id: int) -> Dict[str, bool]:
        async with self.session_factory() as session:
            row = await session.get(NodeDiscovery, node_id)
        if not row or not row.capabilities_json:
            return {}
        try:
            return json.loads(row.capabilities_json)
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing capabilities for node {node_id}: {e}")
            return {}

    async def save_discovery(self, node_id: int, capabilities: Dict[str, bool]):
        values = {
            "node_id": node_id,
            "capabilities_json": json.dumps(capabilities, sort_keys=True),
            "is_proxmox_host": 1 if capabilities.get("proxmox") else 0,
            "updated_at": datetime.utcnow(),
        }
        async with self.session_factory() as session:
            await session.execute(_upsert(session, NodeDiscovery, "node_id", values))
            await retry_on_lock(session.commit)

    async def is_proxmox_host(self, node_id: int) -> bool:
        async with self.session_factory() as session:
            row = await session.get(NodeDiscovery, node_id)
            return bool(row and row.is_proxmox_host)

    async def list_proxmox_hosts(self) -> List[Node]:
        """Enabled nodes whose last probe detected a hypervisor."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Node)
                .join(NodeDiscovery, NodeDiscovery.node_id == Node.id)
                .where(
                    NodeDiscovery.is_proxmox_host == 1,
                    Node.monitoring_enabled == 1,
                    Node.guest_type.is_(None),
                )
                .order_by(Node.id)
            )
            return list(result.scalars().all())

    # =========================================================================
    # Guest inventory (what the hypervisor reports)
    # =========================================================================

    async def replace_guests(self, host_id: int, guests: List[GuestRecord], guest_types: Optional[Iterable[str]] = None):
        """Replace the host's guest inventory, limited to ``guest_types`` when given."""
        async with self.session_factory() as session:
            stmt = delete(ProxmoxGuest).where(ProxmoxGuest.node_id == host_id)
            if guest_types is not None:
                guest_types = list(guest_types)
                stmt = stmt.where(ProxmoxGuest.guest_type.in_(guest_types))
                guests = [guest for guest in guests if guest.guest_type in guest_types]
            await session.execute(stmt)
            for guest in guests:
                session.add(ProxmoxGuest(
                    node_id=host_id,
                    vmid=guest.vmid,
                    guest_type=guest.guest_type,
                    name=guest.name,
                    status=guest.status,
                ))
            await retry_on_lock(session.commit)

    async def list_guests(self, host_id: int, guest_type: Optional[str] = None) -> List[GuestRecord]:
        async with self.session_factory() as session:
            query = select(ProxmoxGuest).where(ProxmoxGuest.node_id == host_id)
            if guest_type:
                query = query.where(ProxmoxGuest.guest_type == guest_type)
            result = await session.execute(query.order_by(ProxmoxGuest.vmid))
            return [
                GuestRecord(vmid=row.vmid, guest_type=row.guest_type, status=row.status, name=row.name)
                for row in result.scalars().all()
            ]

    async def get_guest(self, host_id: int, vmid: int, guest_type: str) -> Optional[GuestRecord]:
        for guest in await self.list_guests(host_id, guest_type):
            if guest.vmid == vmid:
                return guest
        return None

    # =========================================================================
    # Child nodes (what we track)
    # =========================================================================

    async def list_children(self, parent_id: int) -> List[Node]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Node).where(Node.parent_id == parent_id).order_by(Node.id)
            )
            return list(result.scalars().all())

    async def get_child_by_guest(self, parent_id: int, vmid: int, guest_type: str) -> Optional[Node]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Node).where(
                    Node.parent_id == parent_id,
                    Node.guest_vmid == vmid,
                    Node.guest_type == guest_type,
                )
            )
            return result.scalars().first()

    async def create_child(self, parent: Node, guest: GuestRecord, name: str) -> Node:
        """Create a child record for a guest; it inherits the parent's SSH access."""
        running = guest.running
        async with self.session_factory() as session:
            child = Node(
                name=name,
                host=parent.host,
                ssh_port=parent.ssh_port,
                ssh_user=parent.ssh_user,
                ssh_key_path=parent.ssh_key_path,
                ssh_password=parent.ssh_password,
                node_type="proxmox-vm" if guest.guest_type == "vm" else "proxmox-lxc",
                monitoring_enabled=1,
                monitoring_interval=parent.monitoring_interval,
                parent_id=parent.id,
                guest_vmid=guest.vmid,
                guest_type=guest.guest_type,
                online=1 if running else 0,
                last_seen=datetime.utcnow() if running else None,
                last_error=None if running else f"Guest is {guest.status}",
            )
            session.add(child)
            await retry_on_lock(session.commit)
            return child

    async def update_child_status(self, child_id: int, status: str):
        """Online iff the hypervisor reports the guest as running."""
        running = status == "running"
        values = {"online": 1 if running else 0, "last_error": None if running else f"Guest is {status}"}
        if running:
            values["last_seen"] = datetime.utcnow()
        await self.update_node(child_id, **values)

    async def get_orphaned_children(self, parent_id: int, current_vmids: Iterable[int], guest_type: str) -> List[Node]:
        """Tracked children of ``guest_type`` whose vmid the host no longer reports."""
        current = list(current_vmids)
        async with self.session_factory() as session:
            conditions = [
                Node.parent_id == parent_id,
                Node.guest_type == guest_type,
                Node.guest_vmid.is_not(None),
            ]
            if current:
                conditions.append(Node.guest_vmid.not_in(current))
            result = await session.execute(select(Node).where(and_(*conditions)).order_by(Node.id))
            return list(result.scalars().all())

    async def list_children_missing_ip(self) -> List[Node]:
        """Online guests that have no resolved IP yet."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Node).where(
                    Node.guest_type.is_not(None),
                    Node.parent_id.is_not(None),
                    Node.online == 1,
                    Node.guest_ip.is_(None),
                )
            )
            return list(result.scalars().all())

    # =========================================================================
    # Container inventory
    # =========================================================================

    async def replace_containers(self, node_id: int, containers: List[dict]):
        """Replace the whole container list of a node."""
        now = datetime.utcnow()
        async with self.session_factory() as session:
            await session.execute(delete(DockerContainer).where(DockerContainer.node_id == node_id))
            for container in containers:
                session.add(DockerContainer(
                    node_id=node_id,
                    container_id=container["container_id"],
                    name=container.get("name"),
                    image=container.get("image"),
                    status=container.get("status"),
                    state=container.get("state"),
                    updated_at=now,
                ))
            await retry_on_lock(session.commit)

    async def list_containers(self, node_id: int) -> List[dict]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DockerContainer).where(DockerContainer.node_id == node_id).order_by(DockerContainer.id)
            )
            return [_row_to_dict(row, exclude=("id", "node_id")) for row in result.scalars().all()]

    # =========================================================================
    # Settings
    # =========================================================================

    async def get_setting(self, key: str) -> str:
        async with self.session_factory() as session:
            row = await session.get(Setting, key)
        if row is not None:
            return row.value
        return DEFAULT_SETTINGS.get(key, "")

    async def get_int_setting(self, key: str) -> int:
        value = await self.get_setting(key)
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Setting {key} is not an integer ({value!r}), using default")
            return int(DEFAULT_SETTINGS[key])

    async def set_setting(self, key: str, value: str):
        async with self.session_factory() as session:
            row = await session.get(Setting, key)
            if row is None:
                session.add(Setting(key=key, value=value))
            else:
                row.value = value
            await retry_on_lock(session.commit)
