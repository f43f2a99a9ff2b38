"""Settings model - key-value store for operator-editable configuration."""
from datetime import datetime
from sqlalchemy import Column, String, DateTime

from ..database import Base


class Setting(Base):
    """Global settings stored as key-value pairs."""
    
    __tablename__ = "settings"
    
    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Default settings
DEFAULT_SETTINGS = {
    # Discovery settings
    "auto_create_child_nodes": "0",  # 0 or 1 - also requires per-host auto_discovery
    
    # Child batch polling
    "child_poll_interval": "60",  # seconds
    
    # Stats history
    "save_history": "1",  # 0 or 1
    "stats_retention_hours": "168",  # 7 days
}
