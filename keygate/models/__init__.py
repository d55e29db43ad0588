"""
Core data models for KeyGate
"""

from .access_key import AccessKey
from .protected_payload import ProtectedPayload, PayloadKind
from .security_event import SecurityEvent
from .usage_ledger import UsageEntry, UsageLedger, USAGE_LOG_CAP

__all__ = [
    "AccessKey",
    "ProtectedPayload",
    "PayloadKind",
    "SecurityEvent",
    "UsageEntry",
    "UsageLedger",
    "USAGE_LOG_CAP",
]
