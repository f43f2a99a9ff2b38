"""Node model - monitored hosts, VMs and containers."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from ..database import Base


GUEST_TYPES = ("vm", "lxc")


class Node(Base):
    """A monitored entity reachable over SSH, or a guest of one.
    
    Guests (``guest_type`` set) always carry a ``parent_id`` and are polled
    through their parent's child batch poller, never directly.
    """
    
    __tablename__ = "nodes"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    host = Column(String, nullable=False)  # IP/hostname
    ssh_port = Column(Integer, default=22)
    ssh_user = Column(String, default="root")
    ssh_key_path = Column(String, nullable=True)  # NULL = configured default key
    ssh_password = Column(String, nullable=True)  # Requires sshpass
    node_type = Column(String, default="server")  # server, proxmox, proxmox-vm, proxmox-lxc
    monitoring_enabled = Column(Integer, default=1)
    monitoring_interval = Column(Integer, default=30)  # seconds
    auto_discovery = Column(Integer, default=0)  # Create child nodes from hypervisor guests
    
    # Hierarchy
    parent_id = Column(Integer, ForeignKey("nodes.id"), nullable=True)
    guest_vmid = Column(Integer, nullable=True)
    guest_type = Column(String, nullable=True)  # vm, lxc
    guest_ip = Column(String, nullable=True)
    
    # Liveness
    online = Column(Integer, default=0)
    last_seen = Column(DateTime, nullable=True)
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    
    # Relationships
    parent = relationship("Node", remote_side=[id], back_populates="children")
    children = relationship("Node", back_populates="parent")
    
    @property
    def is_guest(self) -> bool:
        return bool(self.guest_type)
