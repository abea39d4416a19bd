"""Admission orchestration."""

from .models import (
    AdmissionRequest,
    AdmissionResult,
    CostedOperation,
    OperationOutcome,
    RequestValidator,
)
from .network import network_scope_from_headers
from .service import AdmissionOrchestrator, build_orchestrator

__all__ = [
    "AdmissionOrchestrator",
    "AdmissionRequest",
    "AdmissionResult",
    "CostedOperation",
    "OperationOutcome",
    "RequestValidator",
    "build_orchestrator",
    "network_scope_from_headers",
]
