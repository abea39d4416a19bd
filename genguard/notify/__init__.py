"""Fire-and-forget notifications about admission outcomes."""

from .dispatcher import NotificationDispatcher
from .events import ADMITTED, REJECTED, AdmissionEvent
from .sinks import EmailSink, NotificationSink, TelemetrySink, WebhookSink, build_sinks

__all__ = [
    "ADMITTED",
    "REJECTED",
    "AdmissionEvent",
    "EmailSink",
    "NotificationDispatcher",
    "NotificationSink",
    "TelemetrySink",
    "WebhookSink",
    "build_sinks",
]
