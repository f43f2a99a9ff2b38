"""Hardware model - identity and inventory snapshot written by tier 3."""
from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey, Text

from ..database import Base


class NodeHardware(Base):
    """Slow-changing hardware facts, independent from current stats."""
    
    __tablename__ = "node_hardware"
    
    node_id = Column(Integer, ForeignKey("nodes.id", ondelete="CASCADE"), primary_key=True)
    cpu_model = Column(String, nullable=True)
    cpu_cores = Column(Integer, nullable=True)
    ram_total_bytes = Column(BigInteger, nullable=True)
    os_name = Column(String, nullable=True)
    kernel = Column(String, nullable=True)
    pci_devices = Column(Text, nullable=True)  # JSON list
    usb_devices = Column(Text, nullable=True)  # JSON list
    smart_health = Column(String, nullable=True)  # PASSED, FAILED
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
