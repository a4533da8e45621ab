"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from subsync.models.base import Base
from subsync.models.user import User
from subsync.models.subscription import Subscription
from subsync.models.processed_event import ProcessedEvent
from subsync.models.payment import Payment

# Export all for convenience
__all__ = ["Base", "User", "Subscription", "ProcessedEvent", "Payment"]
