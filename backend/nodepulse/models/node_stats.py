"""Stats models - current snapshot and history per node."""
from datetime import datetime
from sqlalchemy import Column, Integer, BigInteger, Float, DateTime, ForeignKey

from ..database import Base


class NodeStatsCurrent(Base):
    """Latest metrics for a node - one row, overwritten field by field.
    
    Tier 1 and tier 2 write disjoint column subsets, so a partial upsert from
    one tier never clears the other tier's values.
    """
    
    __tablename__ = "node_stats_current"
    
    node_id = Column(Integer, ForeignKey("nodes.id", ondelete="CASCADE"), primary_key=True)
    
    # Tier 1 - live metrics
    cpu_percent = Column(Float, nullable=True)
    cpu_cores = Column(Integer, nullable=True)
    load_1m = Column(Float, nullable=True)
    load_5m = Column(Float, nullable=True)
    load_15m = Column(Float, nullable=True)
    ram_total_bytes = Column(BigInteger, nullable=True)
    ram_used_bytes = Column(BigInteger, nullable=True)
    ram_available_bytes = Column(BigInteger, nullable=True)
    ram_percent = Column(Float, nullable=True)
    swap_used_bytes = Column(BigInteger, nullable=True)
    uptime_seconds = Column(Integer, nullable=True)
    users = Column(Integer, nullable=True)
    containers_running = Column(Integer, nullable=True)
    tier1_updated_at = Column(DateTime, nullable=True)
    
    # Tier 2 - status & health
    disk_total_bytes = Column(BigInteger, nullable=True)
    disk_used_bytes = Column(BigInteger, nullable=True)
    disk_available_bytes = Column(BigInteger, nullable=True)
    disk_percent = Column(Float, nullable=True)
    temp_cpu = Column(Float, nullable=True)
    gpu_temp = Column(Float, nullable=True)
    gpu_utilization = Column(Float, nullable=True)
    zfs_pools = Column(Integer, nullable=True)
    zfs_degraded = Column(Integer, nullable=True)
    tier2_updated_at = Column(DateTime, nullable=True)
    
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class NodeStatsHistory(Base):
    """Time series of tier 1 samples, trimmed by retention."""
    
    __tablename__ = "node_stats_history"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    node_id = Column(Integer, ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True)
    recorded_at = Column(DateTime, default=datetime.utcnow, index=True)
    cpu_percent = Column(Float, nullable=True)
    load_1m = Column(Float, nullable=True)
    ram_percent = Column(Float, nullable=True)
    disk_percent = Column(Float, nullable=True)
    temp_cpu = Column(Float, nullable=True)
