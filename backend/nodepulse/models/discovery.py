"""Discovery model - detected capabilities per node."""
from datetime import datetime
from sqlalchemy import Column, Integer, DateTime, ForeignKey, Text

from ..database import Base


class NodeDiscovery(Base):
    """Capability set detected by the host probe."""
    
    __tablename__ = "node_discovery"
    
    node_id = Column(Integer, ForeignKey("nodes.id", ondelete="CASCADE"), primary_key=True)
    capabilities_json = Column(Text, nullable=True)  # {"docker": true, "proxmox": true, ...}
    is_proxmox_host = Column(Integer, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
