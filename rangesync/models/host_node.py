"""Host node database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, CheckConstraint
from rangesync.database.database import Base


class HostNode(Base):
    """A machine running containers, reachable through its Docker Engine API."""

    __tablename__ = "host_nodes"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, unique=True)
    docker_api_url = Column(String, nullable=False)
    api_token_encrypted = Column(String, nullable=True)
    scope_id = Column(String(255), nullable=True, index=True)
    is_active = Column(Boolean, default=True)
    probe_status = Column(String(20), nullable=False, default="never")
    probe_error = Column(Text, nullable=True)
    last_probed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Constraints
    __table_args__ = (
        CheckConstraint("probe_status IN ('never', 'success', 'failed')", name='ck_probe_status'),
    )

    @property
    def effective_scope_id(self) -> str:
        """Scope this host is probed under; unscoped hosts are their own scope."""
        return self.scope_id or f"host-{self.id}"
