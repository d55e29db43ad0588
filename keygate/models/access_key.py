"""
AccessKey data model for issued script access keys
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from .usage_ledger import UsageLedger, UsageEntry, USAGE_LOG_CAP
from ..utils.identifiers import generate_access_key
from ..utils.timeutil import utc_now, parse_timestamp, isoformat

# Distinct identities remembered per key, newest first
KNOWN_IDENTITIES_CAP = 20


@dataclass
class AccessKey:
    """
    Represents an issued access key and its constraints

    Attributes:
        key_id: Opaque token; also the secret presented by clients
        note: Free text visible to operators only
        bound_payload_hash: If set, the key only unlocks this payload
        device_fingerprint: Device the key is pinned to after first use
        expires_at: Optional expiry time
        max_uses: Optional ceiling on successful validations
        use_count: Number of successful validations so far
        blacklisted: Operator revocation flag
        usage_log: Most-recent-first usage history, bounded
        known_identities: Distinct client identities seen with this key
        created_at: When the key was issued
        last_used_at: Time of the latest successful validation
        version: Incremented on every write, used for compare-and-swap
    """
    key_id: str
    note: str = ""
    bound_payload_hash: Optional[str] = None
    device_fingerprint: Optional[str] = None
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = None
    use_count: int = 0
    blacklisted: bool = False
    usage_log: UsageLedger = field(default_factory=UsageLedger)
    known_identities: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    last_used_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def create_new(cls, note: str = "", bound_payload_hash: Optional[str] = None,
                   expires_at: Optional[datetime] = None,
                   max_uses: Optional[int] = None) -> 'AccessKey':
        """Create a new AccessKey with a generated token"""
        return cls(
            key_id=generate_access_key(),
            note=note or "",
            bound_payload_hash=bound_payload_hash or None,
            expires_at=expires_at,
            max_uses=max_uses,
        )

    def validate(self) -> bool:
        """Validate the AccessKey instance"""
        if not self.key_id or not isinstance(self.key_id, str):
            return False
        if not isinstance(self.note, str):
            return False
        if self.max_uses is not None and (not isinstance(self.max_uses, int) or self.max_uses <= 0):
            return False
        if not isinstance(self.use_count, int) or self.use_count < 0:
            return False
        if self.max_uses is not None and self.use_count > self.max_uses:
            return False
        if not isinstance(self.blacklisted, bool):
            return False
        if len(self.usage_log) > USAGE_LOG_CAP:
            return False
        return True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) > self.expires_at

    def quota_exhausted(self) -> bool:
        return self.max_uses is not None and self.use_count >= self.max_uses

    def record_use(self, entry: UsageEntry) -> None:
        """Apply the side effects of a successful validation"""
        self.usage_log.append(entry)
        self.use_count += 1
        self.last_used_at = entry.timestamp
        if entry.identity and entry.identity not in self.known_identities:
            self.known_identities.insert(0, entry.identity)
            del self.known_identities[KNOWN_IDENTITIES_CAP:]

    def reset_device(self) -> None:
        """Operator action: unpin the key from its device"""
        self.device_fingerprint = None

    def to_dict(self, include_usage: bool = True) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        data = {
            'key_id': self.key_id,
            'note': self.note,
            'bound_payload_hash': self.bound_payload_hash,
            'device_fingerprint': self.device_fingerprint,
            'expires_at': isoformat(self.expires_at),
            'max_uses': self.max_uses,
            'use_count': self.use_count,
            'blacklisted': self.blacklisted,
            'known_identities': list(self.known_identities),
            'created_at': self.created_at.isoformat(),
            'last_used_at': isoformat(self.last_used_at),
            'version': self.version,
        }
        if include_usage:
            data['usage_log'] = self.usage_log.to_list()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccessKey':
        """Create AccessKey from dictionary"""
        return cls(
            key_id=data['key_id'],
            note=data.get('note') or "",
            bound_payload_hash=data.get('bound_payload_hash'),
            device_fingerprint=data.get('device_fingerprint'),
            expires_at=parse_timestamp(data.get('expires_at')),
            max_uses=data.get('max_uses'),
            use_count=data.get('use_count', 0),
            blacklisted=bool(data.get('blacklisted', False)),
            usage_log=UsageLedger.from_list(data.get('usage_log')),
            known_identities=list(data.get('known_identities') or []),
            created_at=parse_timestamp(data.get('created_at')) or utc_now(),
            last_used_at=parse_timestamp(data.get('last_used_at')),
            version=data.get('version', 0),
        )
