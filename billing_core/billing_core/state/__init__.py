"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_core.state.database import create_tables, get_engine, get_session, get_session_factory
from billing_core.state.repository import (
    DisputeRepository,
    LeadChargeRepository,
    NotificationLogRepository,
    PaymentRecordRepository,
    ProviderAccountRepository,
    WebhookEventRepository,
)

__all__ = [
    "DisputeRepository",
    "LeadChargeRepository",
    "NotificationLogRepository",
    "PaymentRecordRepository",
    "ProviderAccountRepository",
    "WebhookEventRepository",
    "create_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
