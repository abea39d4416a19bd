"""Per-scope admission quotas."""

from .gate import QuotaGate, QuotaScope, QuotaTicket

__all__ = ["QuotaGate", "QuotaScope", "QuotaTicket"]
