"""Database module: async connection management, models and transactions."""

from .connection import (
    DatabaseConnection,
    create_engine,
    create_session_factory,
    get_database_url,
    get_db,
    set_db,
)
from .models import (
    Base,
    FeatureFlag,
    Job,
    QuotaCounter,
    SpendBucket,
    SpendReservation,
    TelemetryEvent,
    TimestampMixin,
    generate_uuid,
    utcnow,
)
from .transaction import dialect_insert, run_transaction

__all__ = [
    "Base",
    "DatabaseConnection",
    "FeatureFlag",
    "Job",
    "QuotaCounter",
    "SpendBucket",
    "SpendReservation",
    "TelemetryEvent",
    "TimestampMixin",
    "create_engine",
    "create_session_factory",
    "dialect_insert",
    "generate_uuid",
    "get_database_url",
    "get_db",
    "run_transaction",
    "set_db",
    "utcnow",
]
