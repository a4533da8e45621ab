"""ProcessedEvent model"""
from sqlalchemy import Column, String, Text, DateTime
from datetime import datetime, timezone
from subsync.models.base import Base


class ProcessedEvent(Base):
    """Webhook events that reached a terminal outcome. Insert-only; the
    primary key on event_id is what detects redelivery."""
    __tablename__ = "processed_events"

    event_id = Column(String(255), primary_key=True)
    event_kind = Column(String(50), nullable=False, index=True)
    outcome = Column(String(50), nullable=False)
    detail = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
