"""
Ride Model - announced rides, their posted cards and participants
"""
from sqlalchemy import Column, String, DateTime, JSON, Boolean, Float, Integer, BigInteger, Text, Index

from app.db.database import Base
from app.domain.models import utcnow


class RideRecord(Base):
    """
    Persistent form of the Ride aggregate.

    messages: רשימת {chat_id, message_id, thread_id}: כרטיס אחד לכל (צ'אט, thread)
    participants: מילון user_id -> {username, first_name, last_name, state}
    """

    __tablename__ = "rides"

    id = Column(String(16), primary_key=True)

    title = Column(String(500), nullable=False)
    category = Column(String(100), nullable=False)
    organizer = Column(String(255), nullable=True)
    date = Column(DateTime(timezone=True), nullable=False)
    meeting_point = Column(String(500), nullable=True)
    route_link = Column(String(1000), nullable=True)
    distance = Column(Float, nullable=True)
    duration = Column(Integer, nullable=True)  # minutes
    speed_min = Column(Float, nullable=True)
    speed_max = Column(Float, nullable=True)
    additional_info = Column(Text, nullable=True)

    created_by = Column(BigInteger, nullable=False)
    updated_by = Column(BigInteger, nullable=True)
    cancelled = Column(Boolean, default=False, nullable=False)

    messages = Column(JSON, nullable=False, default=list)
    participants = Column(JSON, nullable=False, default=dict)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        # /listrides ממיין לפי תאריך בתוך רכיבות של יוצר יחיד
        Index("ix_rides_created_by_date", "created_by", "date"),
    )
