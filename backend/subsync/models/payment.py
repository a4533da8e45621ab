"""Payment model"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone
from subsync.models.base import Base


class Payment(Base):
    """Payment outcomes reported by webhook events (succeeded / failed)"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    status = Column(String(20), nullable=False)  # 'succeeded', 'failed'
    amount = Column(Integer, nullable=True)
    currency = Column(String(10), nullable=True)
    plan_id = Column(String(100), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True)
    reference = Column(String(255), nullable=True)  # checkout session or invoice id
    attempt_count = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
