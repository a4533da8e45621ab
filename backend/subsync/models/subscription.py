"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from subsync.models.base import Base


class Subscription(Base):
    """Subscription/entitlement record, one per user, mutated only by reconciliation"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    status = Column(String(20), nullable=False)  # 'none', 'active', 'past_due', 'canceled'
    plan_id = Column(String(100), nullable=True)
    billing_cycle = Column(String(20), nullable=True)  # 'monthly', 'yearly'
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    last_payment_amount = Column(Integer, nullable=True)  # minor units
    last_payment_currency = Column(String(10), nullable=True)
    has_payment_issue = Column(Boolean, default=False, nullable=False)  # final dunning attempt failed
    last_event_id = Column(String(255), nullable=True)
    last_event_at = Column(DateTime(timezone=True), nullable=True)  # occurred-at of the last applied event
    last_event_key = Column(String(80), nullable=True)  # ordering key of the newest applied event
    field_keys = Column(JSON, default=dict, nullable=False)  # per-field ordering keys
    version = Column(Integer, default=1, nullable=False)  # compare-and-set counter
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="subscription")
