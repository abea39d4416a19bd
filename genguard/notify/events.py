"""Admission outcome events published to notification sinks."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from genguard.db.models import utcnow

ADMITTED = "admitted"
REJECTED = "rejected"


@dataclass(frozen=True)
class AdmissionEvent:
    """What happened to one admission attempt."""

    event: str
    outcome: str
    job_id: str | None = None
    error_kind: str | None = None
    cost_estimate_usd: Decimal | None = None
    actual_cost_usd: Decimal | None = None
    latency_ms: int | None = None
    notify_email: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def admitted(self) -> bool:
        return self.outcome == ADMITTED

    def to_payload(self) -> dict[str, Any]:
        """JSON-serializable form; the email address is never included."""
        return {
            "event": self.event,
            "outcome": self.outcome,
            "job_id": self.job_id,
            "error_kind": self.error_kind,
            "cost_estimate_usd": (
                None if self.cost_estimate_usd is None else str(self.cost_estimate_usd)
            ),
            "actual_cost_usd": None if self.actual_cost_usd is None else str(self.actual_cost_usd),
            "latency_ms": self.latency_ms,
            "attributes": self.attributes,
            "created_at": self.created_at.isoformat(),
        }
