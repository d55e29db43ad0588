"""
Security event log - bounded record of denied and suspicious requests
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Dict, List, Optional

from ..models.security_event import SecurityEvent

logger = logging.getLogger(__name__)

SECURITY_LOG_CAP = 200


class SecurityEventStore(ABC):
    """Backing store for security events, newest first"""

    @abstractmethod
    def add(self, event: SecurityEvent) -> None:
        """Store an event, evicting the oldest beyond capacity"""

    @abstractmethod
    def recent(self, limit: int) -> List[SecurityEvent]:
        """Up to ``limit`` events, newest first"""

    @abstractmethod
    def clear(self) -> int:
        """Drop every event; returns how many were dropped"""


class InMemorySecurityEventStore(SecurityEventStore):
    """Per-process store; events are lost on restart"""

    def __init__(self, capacity: int = SECURITY_LOG_CAP):
        self._events = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def add(self, event):
        with self._lock:
            self._events.appendleft(event)

    def recent(self, limit):
        with self._lock:
            return list(self._events)[:limit]

    def clear(self):
        with self._lock:
            count = len(self._events)
            self._events.clear()
            return count


class SecurityLog:
    """
    Operator-facing security log

    Recording never raises into the request path: a failing store is logged
    and the request carries on.
    """

    def __init__(self, store: SecurityEventStore = None):
        self.store = store or InMemorySecurityEventStore()

    def record(self, event_type: str, source_address: str, key_id: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None) -> SecurityEvent:
        event = SecurityEvent.create_new(event_type, source_address, key_id=key_id, details=details)
        logger.warning(f"Security event {event_type} from {event.source_address}"
                       + (f" key={key_id}" if key_id else ""))
        try:
            self.store.add(event)
        except Exception as e:
            logger.error(f"Failed to store security event {event_type}: {e}")
        return event

    def list_events(self, limit: int = 100, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Recent events as dictionaries

        Args:
            limit: Maximum number of events (1-1000)
            event_type: Optional filter on event type
        """
        if limit <= 0 or limit > 1000:
            raise ValueError("Limit must be between 1 and 1000")
        events = self.store.recent(SECURITY_LOG_CAP if event_type else limit)
        if event_type:
            events = [e for e in events if e.event_type == event_type][:limit]
        return [e.to_dict() for e in events]

    def clear(self) -> int:
        count = self.store.clear()
        logger.info(f"Cleared {count} security events")
        return count
