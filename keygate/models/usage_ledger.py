"""
UsageEntry and UsageLedger models - bounded, most-recent-first usage history
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Any, Iterable, Iterator, List, Optional

from ..utils.timeutil import utc_now, parse_timestamp

USAGE_LOG_CAP = 50


@dataclass(frozen=True)
class UsageEntry:
    """
    One successful validation recorded against a key or payload

    Attributes:
        timestamp: When the validation succeeded
        source_address: Client network address
        device_fingerprint: Device id presented by the caller, if any
        identity: Client identity (player name) reported by the caller
    """
    timestamp: datetime
    source_address: str
    device_fingerprint: Optional[str] = None
    identity: Optional[str] = None

    @classmethod
    def create_new(cls, source_address: str, device_fingerprint: Optional[str] = None,
                   identity: Optional[str] = None) -> 'UsageEntry':
        return cls(
            timestamp=utc_now(),
            source_address=source_address or "unknown",
            device_fingerprint=device_fingerprint,
            identity=identity,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UsageEntry':
        return cls(
            timestamp=parse_timestamp(data['timestamp']),
            source_address=data.get('source_address') or "unknown",
            device_fingerprint=data.get('device_fingerprint'),
            identity=data.get('identity'),
        )


class UsageLedger:
    """
    Append-only log with fixed capacity

    New entries go to the front; once the capacity is exceeded the oldest
    entries fall off the tail. Entries are never edited or removed one by
    one; the only mutations are ``append`` and ``clear``.
    """

    def __init__(self, entries: Optional[Iterable[UsageEntry]] = None, capacity: int = USAGE_LOG_CAP):
        if capacity <= 0:
            raise ValueError("Ledger capacity must be positive")
        self.capacity = capacity
        self._entries: List[UsageEntry] = list(entries or [])[:capacity]

    def append(self, entry: UsageEntry) -> None:
        self._entries.insert(0, entry)
        del self._entries[self.capacity:]

    def clear(self) -> None:
        self._entries = []

    @property
    def entries(self) -> List[UsageEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[UsageEntry]:
        return iter(list(self._entries))

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    @classmethod
    def from_list(cls, data: Optional[List[Dict[str, Any]]], capacity: int = USAGE_LOG_CAP) -> 'UsageLedger':
        return cls((UsageEntry.from_dict(item) for item in (data or [])), capacity=capacity)
