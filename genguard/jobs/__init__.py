"""Job ledger: idempotent creation, exclusive claims and retries."""

from .ledger import JobLedger, JobRecord, JobStatus, backoff_delay

__all__ = ["JobLedger", "JobRecord", "JobStatus", "backoff_delay"]
