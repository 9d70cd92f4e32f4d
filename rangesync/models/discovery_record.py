"""Container discovery record database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, UniqueConstraint, Index
from rangesync.database.database import Base


class ContainerDiscoveryRecord(Base):
    """Model for the probe-truth inventory of containers seen in a scope.

    The stored set for a scope is replaced incrementally on every successful
    probe: new containers are inserted, known ones refreshed, vanished ones
    deleted.
    """

    __tablename__ = "container_discovery_records"

    id = Column(Integer, primary_key=True, index=True)
    scope_id = Column(String(255), nullable=False)
    asset_id = Column(Integer, nullable=True)
    asset_name = Column(String(255), nullable=True)
    asset_ip = Column(String(100), nullable=True)
    container_id = Column(String(255), nullable=False)
    container_name = Column(String(255), nullable=True)
    image = Column(String(500), nullable=True)
    status = Column(String(50), nullable=True)
    ports = Column(Text, nullable=True)
    labels = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    discovered_at = Column(DateTime, nullable=True)
    last_seen_at = Column(DateTime, nullable=True)

    # Constraints
    __table_args__ = (
        UniqueConstraint('scope_id', 'container_id', name='uq_scope_container'),
        Index('ix_discovery_scope_id', 'scope_id'),
        Index('ix_discovery_asset_id', 'asset_id'),
        Index('ix_discovery_last_seen', 'last_seen_at'),
    )
