"""Admission request/response models and the costed-operation contract."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

from pydantic import BaseModel, Field

from genguard.errors import ErrorKind, GenguardError
from genguard.jobs import JobRecord


class AdmissionRequest(BaseModel):
    """A request to run one costly generation."""

    job_id: str = Field(
        min_length=1,
        max_length=128,
        description="Caller-supplied correlation id; repeated ids resume the same job",
    )
    job_kind: str = Field(default="generation", max_length=50, description="Kind of work")
    identity_scope_key: str | None = Field(
        default=None,
        description="Account or email the request is metered against",
    )
    network_scope_key: str | None = Field(
        default=None,
        description="Client network address the request is metered against",
    )
    payload: dict[str, Any] = Field(default_factory=dict, description="Operation input")
    notify_email: str | None = Field(
        default=None,
        description="Address for the confirmation email, if any",
    )
    correlation_id: str | None = Field(default=None, description="Correlation ID for tracing")


class AdmissionResult(BaseModel):
    """Outcome of one admission attempt."""

    admitted: bool = Field(description="Whether the work ran (or had already run)")
    job_id: str | None = Field(default=None, description="Job the request was tied to")
    replayed: bool = Field(
        default=False,
        description="The job had already completed; nothing was run or billed",
    )
    error_kind: ErrorKind | None = Field(default=None, description="Why the request was rejected")
    detail: dict[str, Any] = Field(default_factory=dict, description="Error details")
    output: Any = Field(default=None, description="Whatever the operation produced")
    actual_cost_usd: Decimal | None = Field(default=None, description="Reconciled cost")

    @classmethod
    def rejected(cls, job_id: str | None, error: GenguardError) -> "AdmissionResult":
        return cls(
            admitted=False,
            job_id=job_id,
            error_kind=error.kind,
            detail=error.to_detail(),
        )


@dataclass(frozen=True)
class OperationOutcome:
    actual_cost_usd: Decimal
    output: Any = None


class CostedOperation(Protocol):
    """The metered work being admitted, e.g. a call to an AI provider.

    ``estimate_cost`` must be conservative: it is reserved against the spend
    ceilings before ``run`` is called. An operation that fails after incurring
    cost should raise ``CostedOperationError`` with ``actual_cost_usd``.

    A multi-step operation can checkpoint finished steps with
    ``JobLedger.record_progress`` and, on a retry, skip the steps listed as
    done in ``job.progress`` (see ``JobRecord.pending_steps``). The claim on
    ``job`` is renewed for the operation while it runs; if it is lost the
    operation is cancelled.
    """

    def estimate_cost(self, request: AdmissionRequest) -> Decimal: ...

    async def run(self, request: AdmissionRequest, job: JobRecord) -> OperationOutcome: ...


# Raises InvalidRequest when the request must not proceed
RequestValidator = Callable[[AdmissionRequest], Awaitable[None]]
