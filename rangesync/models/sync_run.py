"""Sync run database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, CheckConstraint
from rangesync.database.database import Base


class SyncRun(Base):
    """Model for tracking reconciliation sync pass history."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    trigger = Column(String, nullable=False, default="scheduled")  # scheduled, manual
    status = Column(String, nullable=False)  # in_progress, success, failed, skipped
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    total_processed = Column(Integer, nullable=False, default=0)
    total_synced = Column(Integer, nullable=False, default=0)
    total_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    changes_summary = Column(Text, nullable=True)

    # Constraints
    __table_args__ = (
        CheckConstraint("status IN ('in_progress', 'success', 'failed', 'skipped')", name='ck_sync_run_status'),
        CheckConstraint("trigger IN ('scheduled', 'manual')", name='ck_sync_run_trigger'),
    )
