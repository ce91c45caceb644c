from sqlalchemy import TIMESTAMP, Column, Index, Integer, Text

from chatcommerce.database import Base


class SentMessageLog(Base):
    __tablename__ = "sent_message_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(Text, nullable=False)
    policy_key = Column(Text, nullable=False)
    sent_at = Column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (Index("ix_sent_message_log_lookup", "customer_id", "policy_key", "sent_at"),)
