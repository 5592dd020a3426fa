"""
Lead model — one row per unique prospect, deduplicated by dedup_key.

dedup_key is the normalized LinkedIn URL when one is known, otherwise
"name:<full name>|<company>" (lower-cased). The unique constraint is what makes
two concurrent imports of the same prospect safe.
"""
from sqlalchemy import Column, Integer, Text, DateTime, UniqueConstraint
from sqlalchemy.sql import func

from leadcrm.database import Base


class Lead(Base):
    __tablename__ = 'leads'

    id = Column(Integer, primary_key=True, autoincrement=True)
    dedup_key = Column(Text, nullable=False)
    linkedin_url = Column(Text, nullable=True)
    first_name = Column(Text, nullable=True)
    last_name = Column(Text, nullable=True)
    full_name = Column(Text, nullable=True)
    title = Column(Text, nullable=True)
    company = Column(Text, nullable=True)
    location = Column(Text, nullable=True)
    industry = Column(Text, nullable=True)
    email = Column(Text, nullable=True)
    phone = Column(Text, nullable=True)
    connection_degree = Column(Text, nullable=True)   # 1st / 2nd / 3rd
    profile_image = Column(Text, nullable=True)
    source = Column(Text, nullable=True)              # connections_export / search_export
    import_job_id = Column(Text, nullable=True)
    review_status = Column(Text, nullable=False, default='to_be_reviewed')
    rejected_reason = Column(Text, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('dedup_key', name='uq_lead_dedup_key'),
        UniqueConstraint('linkedin_url', name='uq_lead_linkedin_url'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'linkedin_url': self.linkedin_url,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'full_name': self.full_name,
            'title': self.title,
            'company': self.company,
            'location': self.location,
            'industry': self.industry,
            'email': self.email,
            'phone': self.phone,
            'connection_degree': self.connection_degree,
            'profile_image': self.profile_image,
            'source': self.source,
            'import_job_id': self.import_job_id,
            'review_status': self.review_status,
            'rejected_reason': self.rejected_reason,
            'reviewed_at': self.reviewed_at.isoformat() if self.reviewed_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
