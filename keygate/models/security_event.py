"""
SecurityEvent data model for the operator-facing security log
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Dict, Any, Optional
import uuid

from ..utils.timeutil import utc_now

# Event types recorded by the validation and operator paths
MISSING_PARAMS = "missing_params"
INVALID_KEY = "invalid_key"
BLACKLISTED_KEY_USED = "blacklisted_key_used"
EXPIRED_KEY_USED = "expired_key_used"
MAX_USES_REACHED = "max_uses_reached"
WRONG_PAYLOAD = "wrong_payload"
DEVICE_MISMATCH = "device_mismatch"
PAYLOAD_NOT_FOUND = "payload_not_found"
RATE_LIMITED = "rate_limited"
BAD_ADMIN_CREDENTIAL = "bad_admin_credential"
ADMIN_LOCKED_OUT = "admin_locked_out"


@dataclass
class SecurityEvent:
    """
    A denied or suspicious request

    Attributes:
        event_id: Unique identifier for the event
        timestamp: When the event happened
        event_type: One of the module-level event type constants
        source_address: Client network address
        key_id: Key involved, when one was presented
        details: Extra metadata; never contains payload content
    """
    event_id: str
    timestamp: datetime
    event_type: str
    source_address: str
    key_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create_new(cls, event_type: str, source_address: str, key_id: Optional[str] = None,
                   details: Optional[Dict[str, Any]] = None) -> 'SecurityEvent':
        return cls(
            event_id=str(uuid.uuid4()),
            timestamp=utc_now(),
            event_type=event_type,
            source_address=source_address or "unknown",
            key_id=key_id,
            details=dict(details or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data
