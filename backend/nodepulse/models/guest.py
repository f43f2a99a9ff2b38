"""Guest models - hypervisor guest inventory and per-node containers."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint

from ..database import Base


class ProxmoxGuest(Base):
    """A VM or LXC container as reported by its Proxmox host."""
    
    __tablename__ = "proxmox_guests"
    __table_args__ = (UniqueConstraint("node_id", "vmid", "guest_type"),)
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    node_id = Column(Integer, ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True)  # Host
    vmid = Column(Integer, nullable=False)
    guest_type = Column(String, nullable=False)  # vm, lxc
    name = Column(String, nullable=True)
    status = Column(String, nullable=False)  # running, stopped, paused, ...
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DockerContainer(Base):
    """A Docker container seen on a node - replaced wholesale on each poll."""
    
    __tablename__ = "docker_containers"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    node_id = Column(Integer, ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True)
    container_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    image = Column(String, nullable=True)
    status = Column(String, nullable=True)  # "Up 3 hours"
    state = Column(String, nullable=True)  # running, exited, ...
    updated_at = Column(DateTime, default=datetime.utcnow)
