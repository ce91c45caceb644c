import uuid

from sqlalchemy import TIMESTAMP, Column, Index, Integer, Text
from sqlalchemy.sql import func

from chatcommerce.database import Base, JSONType


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Text, primary_key=True, default=lambda: uuid.uuid4().hex)
    hook = Column(Text, nullable=False)
    args = Column(JSONType, nullable=False, default=dict)
    caller = Column(Text, nullable=False, default="internal")  # internal, admin, automated
    status = Column(Text, nullable=False, default="pending")  # pending, running, succeeded, failed, abandoned
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    scheduled_at = Column(TIMESTAMP(timezone=True), nullable=False)
    next_retry_at = Column(TIMESTAMP(timezone=True))
    started_at = Column(TIMESTAMP(timezone=True))
    claim_token = Column(Text)  # owner of the current running claim
    finished_at = Column(TIMESTAMP(timezone=True))
    last_error = Column(Text)
    result = Column(JSONType)
    recurring_id = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("ix_jobs_status_scheduled_at", "status", "scheduled_at"),)
