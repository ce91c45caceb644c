from sqlalchemy import TIMESTAMP, Column, Text
from sqlalchemy.sql import func

from chatcommerce.database import Base


class EventClaim(Base):
    __tablename__ = "event_claims"

    event_id = Column(Text, primary_key=True)
    scope = Column(Text, nullable=False, default="webhook")
    customer_id = Column(Text)
    claimed_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
