"""
ProtectedPayload data model for obfuscated script artifacts
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional

from .usage_ledger import UsageLedger, UsageEntry
from ..utils import content_codec
from ..utils.identifiers import compute_payload_hash
from ..utils.timeutil import utc_now, isoformat


class PayloadKind(str, Enum):
    """How the consumer treats the decoded payload"""
    INLINE = "inline"
    INDIRECTION = "indirection"


@dataclass
class ProtectedPayload:
    """
    Represents a stored payload; only the encoded form is kept

    Attributes:
        payload_hash: Content-derived identifier and lookup key
        label: Display name
        kind: Inline code or an indirection URL
        seed: Codec seed for this artifact
        encoded: Codec output; the cleartext is never stored
        created_at: When the payload was first stored
        updated_at: When the content or label last changed
        use_count: Successful validations that released this payload
        last_used_at: Time of the latest release
        usage_log: Most-recent-first release history, bounded
        version: Incremented on every write, used for compare-and-swap
    """
    payload_hash: str
    label: str
    kind: PayloadKind
    seed: int
    encoded: bytes
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    use_count: int = 0
    last_used_at: Optional[datetime] = None
    usage_log: UsageLedger = field(default_factory=UsageLedger)
    version: int = 0

    @classmethod
    def create_new(cls, content: str, label: str = "", kind: PayloadKind = PayloadKind.INLINE,
                   payload_hash: Optional[str] = None, seed: Optional[int] = None) -> 'ProtectedPayload':
        """Encode ``content`` under a fresh seed and build the payload record"""
        kind = PayloadKind(kind)
        if seed is None:
            seed = content_codec.generate_seed()
        return cls(
            payload_hash=payload_hash or compute_payload_hash(content, kind.value),
            label=label or "Unnamed",
            kind=kind,
            seed=seed,
            encoded=content_codec.encode(content, seed),
        )

    def validate(self) -> bool:
        """Validate the ProtectedPayload instance"""
        if not self.payload_hash or not isinstance(self.payload_hash, str):
            return False
        if not isinstance(self.label, str):
            return False
        if not isinstance(self.kind, PayloadKind):
            return False
        if not isinstance(self.seed, int) or not 0 <= self.seed < content_codec.LCG_MODULUS:
            return False
        if not isinstance(self.encoded, bytes) or not self.encoded:
            return False
        return True

    def decode_content(self) -> str:
        return content_codec.decode_text(self.encoded, self.seed)

    def replace_content(self, content: str, kind: Optional[PayloadKind] = None) -> None:
        """Re-encode new content under a fresh seed; the hash stays the same"""
        if kind is not None:
            self.kind = PayloadKind(kind)
        self.seed = content_codec.generate_seed()
        self.encoded = content_codec.encode(content, self.seed)
        self.updated_at = utc_now()

    def record_use(self, entry: UsageEntry) -> None:
        self.usage_log.append(entry)
        self.use_count += 1
        self.last_used_at = entry.timestamp

    def to_dict(self, include_usage: bool = True, include_content: bool = False) -> Dict[str, Any]:
        """Convert to dictionary for serialization; seed and bytes stay out"""
        data = {
            'payload_hash': self.payload_hash,
            'label': self.label,
            'kind': self.kind.value,
            'size': len(self.encoded),
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'use_count': self.use_count,
            'last_used_at': isoformat(self.last_used_at),
        }
        if include_usage:
            data['usage_log'] = self.usage_log.to_list()
        if include_content:
            data['content'] = self.decode_content()
        return data
