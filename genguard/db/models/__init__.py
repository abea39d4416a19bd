"""SQLAlchemy database models for genguard."""

from .base import Base, TimestampMixin, generate_uuid, utcnow
from .feature_flag import FeatureFlag
from .job import Job
from .quota_counter import QuotaCounter
from .spend import SpendBucket, SpendReservation
from .telemetry_event import TelemetryEvent

__all__ = [
    "Base",
    "FeatureFlag",
    "Job",
    "QuotaCounter",
    "SpendBucket",
    "SpendReservation",
    "TelemetryEvent",
    "TimestampMixin",
    "generate_uuid",
    "utcnow",
]
