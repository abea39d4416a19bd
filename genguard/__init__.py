"""Admission control and job orchestration for costly AI generation."""

from .errors import ErrorKind, GenguardError
from .orchestrator import (
    AdmissionOrchestrator,
    AdmissionRequest,
    AdmissionResult,
    CostedOperation,
    OperationOutcome,
    build_orchestrator,
    network_scope_from_headers,
)

__version__ = "0.1.0"

__all__ = [
    "AdmissionOrchestrator",
    "AdmissionRequest",
    "AdmissionResult",
    "CostedOperation",
    "ErrorKind",
    "GenguardError",
    "OperationOutcome",
    "build_orchestrator",
    "network_scope_from_headers",
]
