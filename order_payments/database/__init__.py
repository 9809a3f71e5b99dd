"""Database models and connection management."""
from .connection import close_db, get_db, get_session_factory, init_db, session_scope
from .models import Base, Order, OutboxEvent, PaymentEvent, PaymentRecord, RetiredReference

__all__ = [
    "Base",
    "Order",
    "PaymentRecord",
    "PaymentEvent",
    "OutboxEvent",
    "RetiredReference",
    "get_db",
    "get_session_factory",
    "init_db",
    "close_db",
    "session_scope",
]
