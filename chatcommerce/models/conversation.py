from sqlalchemy import TIMESTAMP, Column, Integer, Text
from sqlalchemy.sql import func

from chatcommerce.database import Base, JSONType


class Conversation(Base):
    __tablename__ = "conversations"

    customer_id = Column(Text, primary_key=True)  # normalized, e.g. +5511999990000
    state = Column(Text, nullable=False, default="IDLE")
    context = Column(JSONType, nullable=False, default=dict)
    history = Column(JSONType, nullable=False, default=list)  # last transitions, newest last
    version = Column(Integer, nullable=False, default=0)
    last_activity_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
