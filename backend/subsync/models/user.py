"""User model"""
from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from subsync.models.base import Base


class User(Base):
    """Application users (owned by the surrounding app, read here)"""
    __tablename__ = "users"

    id = Column(String(128), primary_key=True, index=True)  # application user id, carried in checkout metadata
    email = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)  # set by checkout-completed
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscription = relationship("Subscription", back_populates="user", uselist=False)
