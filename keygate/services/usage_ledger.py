"""
Usage ledger service - operator view over key and payload usage history
"""

import asyncio
import logging
from typing import Any, Dict, List

from ..errors import ErrorKind, NotFoundError, StorageUnavailableError
from ..models.usage_ledger import UsageLedger
from .key_storage import KeyStorageService
from .payload_storage import PayloadStorageService

logger = logging.getLogger(__name__)


def ledger_statistics(ledger: UsageLedger, use_count: int) -> Dict[str, Any]:
    """
    Summarize a ledger

    ``use_count`` is the lifetime count from the owning record; the ledger
    only holds the most recent entries.
    """
    entries = ledger.entries
    return {
        'total_uses': use_count,
        'logged_entries': len(entries),
        'unique_sources': len({e.source_address for e in entries}),
        'unique_devices': len({e.device_fingerprint for e in entries if e.device_fingerprint}),
        'unique_identities': len({e.identity for e in entries if e.identity}),
        'last_used_at': entries[0].timestamp.isoformat() if entries else None,
    }


class UsageLedgerService:
    """
    Reads and clears usage ledgers

    Ledgers are embedded in their AccessKey or ProtectedPayload record, so
    clearing one is a compare-and-swap write of the whole record like any
    other update. Clearing does not reset the lifetime ``use_count``.
    """

    def __init__(self, key_storage: KeyStorageService, payload_storage: PayloadStorageService,
                 max_retries: int = 5):
        self.key_storage = key_storage
        self.payload_storage = payload_storage
        self.max_retries = max_retries

    async def get_key_ledger(self, key_id: str) -> List[Dict[str, Any]]:
        key = await asyncio.to_thread(self.key_storage.get_key, key_id)
        if key is None:
            raise NotFoundError(f"Key not found: {key_id}")
        return key.usage_log.to_list()

    async def get_payload_ledger(self, payload_hash: str) -> List[Dict[str, Any]]:
        payload = await asyncio.to_thread(self.payload_storage.get_payload, payload_hash)
        if payload is None:
            raise NotFoundError(f"Payload not found: {payload_hash}", kind=ErrorKind.PAYLOAD_NOT_FOUND)
        return payload.usage_log.to_list()

    async def get_statistics(self, key_id: str = None, payload_hash: str = None) -> Dict[str, Any]:
        """
        Usage statistics for exactly one key or one payload

        Raises:
            ValueError: If neither or both identifiers are given
            NotFoundError: If the record does not exist
        """
        if bool(key_id) == bool(payload_hash):
            raise ValueError("Provide exactly one of key_id or payload_hash")

        if key_id:
            key = await asyncio.to_thread(self.key_storage.get_key, key_id)
            if key is None:
                raise NotFoundError(f"Key not found: {key_id}")
            stats = ledger_statistics(key.usage_log, key.use_count)
            stats['known_identities'] = list(key.known_identities)
            return stats

        payload = await asyncio.to_thread(self.payload_storage.get_payload, payload_hash)
        if payload is None:
            raise NotFoundError(f"Payload not found: {payload_hash}", kind=ErrorKind.PAYLOAD_NOT_FOUND)
        return ledger_statistics(payload.usage_log, payload.use_count)

    async def clear_key_ledger(self, key_id: str) -> int:
        """Empty a key's ledger; returns the number of entries removed"""
        return await asyncio.to_thread(self._clear_key_ledger, key_id)

    async def clear_payload_ledger(self, payload_hash: str) -> int:
        """Empty a payload's ledger; returns the number of entries removed"""
        return await asyncio.to_thread(self._clear_payload_ledger, payload_hash)

    def _clear_key_ledger(self, key_id: str) -> int:
        for _ in range(self.max_retries):
            key = self.key_storage.get_key(key_id)
            if key is None:
                raise NotFoundError(f"Key not found: {key_id}")
            removed = len(key.usage_log)
            expected_version = key.version
            key.usage_log.clear()
            if self.key_storage.compare_and_swap(key, expected_version):
                logger.info(f"Cleared {removed} usage entries for key {key_id}")
                return removed
        raise StorageUnavailableError("Key is under heavy contention, retry later")

    def _clear_payload_ledger(self, payload_hash: str) -> int:
        for _ in range(self.max_retries):
            payload = self.payload_storage.get_payload(payload_hash)
            if payload is None:
                raise NotFoundError(f"Payload not found: {payload_hash}", kind=ErrorKind.PAYLOAD_NOT_FOUND)
            removed = len(payload.usage_log)
            expected_version = payload.version
            payload.usage_log.clear()
            if self.payload_storage.compare_and_swap(payload, expected_version):
                logger.info(f"Cleared {removed} usage entries for payload {payload_hash}")
                return removed
        raise StorageUnavailableError("Payload is under heavy contention, retry later")
