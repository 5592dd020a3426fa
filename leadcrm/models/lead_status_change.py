"""
LeadStatusChange model — audit trail of review status transitions.
"""
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey
from sqlalchemy.sql import func

from leadcrm.database import Base


class LeadStatusChange(Base):
    __tablename__ = 'lead_status_changes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey('leads.id'), nullable=False, index=True)
    from_status = Column(Text, nullable=True)
    to_status = Column(Text, nullable=False)
    reason = Column(Text, nullable=True)
    changed_by = Column(Text, nullable=True)
    changed_at = Column(DateTime(timezone=True), server_default=func.now())
