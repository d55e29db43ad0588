"""
Key Management Service for KeyGate - operator lifecycle of access keys
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import logging

from ..errors import NotFoundError, StorageUnavailableError
from ..models.access_key import AccessKey
from ..utils.identifiers import validate_payload_hash
from ..utils.timeutil import parse_timestamp
from .key_storage import KeyStorageService


logger = logging.getLogger(__name__)

# Fields an operator may change through update_key
UPDATABLE_FIELDS = {'note', 'expires_at', 'max_uses', 'bound_payload_hash', 'blacklisted', 'reset_device'}

_CREATE_ATTEMPTS = 3


def _parse_expiry(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError, OverflowError, OSError):
        raise ValueError(f"Invalid expiry time: {value!r}")


def _parse_max_uses(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("max_uses must be a positive integer")
    try:
        max_uses = int(value)
    except (TypeError, ValueError):
        raise ValueError("max_uses must be a positive integer")
    if max_uses <= 0:
        raise ValueError("max_uses must be a positive integer")
    return max_uses


def _parse_payload_hash(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    value = value.strip().lower()
    if not validate_payload_hash(value):
        raise ValueError(f"Invalid payload hash: {value}")
    return value


class KeyManager:
    """
    High-level key management service used by operator endpoints

    Every change after creation is a compare-and-swap on the key's version,
    so an operator edit that races a validation is retried on fresh state
    instead of overwriting the validation's usage update.
    """

    def __init__(self, storage_service: KeyStorageService = None, max_retries: int = 5):
        """
        Initialize KeyManager with its storage service

        Args:
            storage_service: Storage service for key persistence
            max_retries: Compare-and-swap attempts per update
        """
        self.storage_service = storage_service or KeyStorageService()
        self.max_retries = max_retries

    async def create_key(self, note: str = "", bound_payload_hash: Optional[str] = None,
                         expires_at: Union[str, int, float, datetime, None] = None,
                         max_uses: Any = None) -> AccessKey:
        """
        Issue a new access key

        Args:
            note: Operator-only free text
            bound_payload_hash: Restrict the key to one payload
            expires_at: Expiry as datetime, ISO string or epoch (s or ms)
            max_uses: Optional positive quota

        Returns:
            The stored AccessKey

        Raises:
            ValueError: If any field is invalid
            StorageUnavailableError: If storage fails
        """
        key = AccessKey.create_new(
            note=(note or "").strip(),
            bound_payload_hash=_parse_payload_hash(bound_payload_hash),
            expires_at=_parse_expiry(expires_at),
            max_uses=_parse_max_uses(max_uses),
        )

        for _ in range(_CREATE_ATTEMPTS):
            if await asyncio.to_thread(self.storage_service.create_key, key):
                logger.info(f"Created key {key.key_id}"
                            + (f" bound to payload {key.bound_payload_hash}" if key.bound_payload_hash else ""))
                return key
            # Token collision; draw another
            key = AccessKey.create_new(key.note, key.bound_payload_hash, key.expires_at, key.max_uses)

        raise RuntimeError("Could not allocate a unique key id")

    async def get_key(self, key_id: str) -> AccessKey:
        key = await asyncio.to_thread(self.storage_service.get_key, key_id)
        if key is None:
            raise NotFoundError(f"Key not found: {key_id}")
        return key

    async def list_keys(self, payload_hash: Optional[str] = None) -> List[AccessKey]:
        """List keys newest first, optionally only those bound to one payload"""
        keys = await asyncio.to_thread(self.storage_service.list_keys, payload_hash)
        logger.debug(f"Listed {len(keys)} keys")
        return keys

    async def update_key(self, key_id: str, **changes) -> AccessKey:
        """
        Apply operator changes to a key

        Only the keyword arguments actually passed are changed. ``None`` for
        ``expires_at``, ``max_uses`` or ``bound_payload_hash`` clears the
        constraint. ``reset_device=True`` unpins the key from its device.

        Raises:
            ValueError: On unknown fields or invalid values
            NotFoundError: If the key does not exist
            StorageUnavailableError: If storage fails or stays contended
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")

        parsed: Dict[str, Any] = {}
        if 'note' in changes:
            parsed['note'] = (changes['note'] or "").strip()
        if 'expires_at' in changes:
            parsed['expires_at'] = _parse_expiry(changes['expires_at'])
        if 'max_uses' in changes:
            parsed['max_uses'] = _parse_max_uses(changes['max_uses'])
        if 'bound_payload_hash' in changes:
            parsed['bound_payload_hash'] = _parse_payload_hash(changes['bound_payload_hash'])
        if 'blacklisted' in changes:
            if not isinstance(changes['blacklisted'], bool):
                raise ValueError("blacklisted must be a boolean")
            parsed['blacklisted'] = changes['blacklisted']
        reset_device = bool(changes.get('reset_device'))

        return await asyncio.to_thread(self._apply_update, key_id, parsed, reset_device)

    def _apply_update(self, key_id: str, parsed: Dict[str, Any], reset_device: bool) -> AccessKey:
        for attempt in range(1, self.max_retries + 1):
            key = self.storage_service.get_key(key_id)
            if key is None:
                raise NotFoundError(f"Key not found: {key_id}")

            expected_version = key.version
            for name, value in parsed.items():
                setattr(key, name, value)
            if reset_device:
                key.reset_device()

            if key.max_uses is not None and key.use_count > key.max_uses:
                raise ValueError(f"max_uses cannot be lower than the current use count ({key.use_count})")

            if self.storage_service.compare_and_swap(key, expected_version):
                logger.info(f"Updated key {key_id}: {', '.join(sorted(parsed)) or 'no fields'}"
                            + (" (device reset)" if reset_device else ""))
                return key

            logger.debug(f"Version conflict updating key {key_id}, attempt {attempt}")

        raise StorageUnavailableError("Key is under heavy contention, retry later")

    async def revoke_key(self, key_id: str) -> AccessKey:
        """Blacklist a key; later validations report Revoked"""
        return await self.update_key(key_id, blacklisted=True)

    async def unrevoke_key(self, key_id: str) -> AccessKey:
        return await self.update_key(key_id, blacklisted=False)

    async def reset_device(self, key_id: str) -> AccessKey:
        return await self.update_key(key_id, reset_device=True)

    async def delete_key(self, key_id: str) -> bool:
        """
        Permanently delete a key

        Raises:
            NotFoundError: If the key does not exist
        """
        deleted = await asyncio.to_thread(self.storage_service.delete_key, key_id)
        if not deleted:
            raise NotFoundError(f"Key not found: {key_id}")
        logger.info(f"Deleted key {key_id}")
        return True

    async def get_statistics(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self.storage_service.get_storage_stats)
