from sqlalchemy import TIMESTAMP, Boolean, Column, Integer, Text

from chatcommerce.database import Base, JSONType


class RecurringJob(Base):
    __tablename__ = "recurring_jobs"

    name = Column(Text, primary_key=True)
    hook = Column(Text, nullable=False)
    args = Column(JSONType, nullable=False, default=dict)
    interval_seconds = Column(Integer, nullable=False)
    next_run_at = Column(TIMESTAMP(timezone=True), nullable=False)
    last_run_at = Column(TIMESTAMP(timezone=True))
    enabled = Column(Boolean, nullable=False, default=True)
