"""
Payload Management Service for KeyGate - operator lifecycle of protected payloads
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from ..errors import ErrorKind, NotFoundError, StorageUnavailableError
from ..models.protected_payload import ProtectedPayload, PayloadKind
from ..utils.identifiers import validate_payload_hash
from ..utils.timeutil import utc_now
from .payload_storage import PayloadStorageService

logger = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 200


def _parse_kind(kind) -> PayloadKind:
    try:
        return PayloadKind(kind or PayloadKind.INLINE)
    except ValueError:
        raise ValueError(f"Invalid payload kind: {kind!r}")


def _check_content(content: Optional[str], kind: PayloadKind) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValueError("Content cannot be empty")
    if kind is PayloadKind.INDIRECTION and not content.strip().startswith(("http://", "https://")):
        raise ValueError("Indirection payloads must be an http(s) URL")
    return content.strip() if kind is PayloadKind.INDIRECTION else content


def _check_label(label: Optional[str]) -> Optional[str]:
    if label is None:
        return None
    label = label.strip()
    if len(label) > MAX_LABEL_LENGTH:
        raise ValueError(f"Label cannot exceed {MAX_LABEL_LENGTH} characters")
    return label or None


def _not_found(payload_hash: str) -> NotFoundError:
    return NotFoundError(f"Payload not found: {payload_hash}", kind=ErrorKind.PAYLOAD_NOT_FOUND)


class PayloadManager:
    """
    Stores, replaces and removes protected payloads

    Content is encoded with a fresh seed every time it is written. Replacing
    the content of an existing payload keeps its hash, so keys bound to that
    hash keep working.
    """

    def __init__(self, storage_service: PayloadStorageService = None, max_retries: int = 5):
        self.storage_service = storage_service or PayloadStorageService()
        self.max_retries = max_retries

    async def save_payload(self, content: str, label: Optional[str] = None,
                           kind: PayloadKind = PayloadKind.INLINE,
                           payload_hash: Optional[str] = None) -> Tuple[ProtectedPayload, bool]:
        """
        Create a payload, or replace the content of the one with the same hash

        Args:
            content: Cleartext code (inline) or URL (indirection)
            label: Display name; an empty label keeps the existing one
            kind: Payload kind
            payload_hash: Explicit 32-64 char hex hash; derived from content if None

        Returns:
            (payload, created)

        Raises:
            ValueError: If any field is invalid
        """
        kind = _parse_kind(kind)
        content = _check_content(content, kind)
        label = _check_label(label)
        if payload_hash:
            payload_hash = payload_hash.strip().lower()
            if not validate_payload_hash(payload_hash):
                raise ValueError(f"Invalid payload hash: {payload_hash}")

        payload = ProtectedPayload.create_new(content, label=label or "", kind=kind, payload_hash=payload_hash)
        if await asyncio.to_thread(self.storage_service.create_payload, payload):
            logger.info(f"Stored payload {payload.payload_hash} ({kind.value}, {len(payload.encoded)} bytes)")
            return payload, True

        updated = await asyncio.to_thread(
            self._apply_update, payload.payload_hash, label, content, kind
        )
        return updated, False

    async def update_payload(self, payload_hash: str, label: Optional[str] = None,
                             content: Optional[str] = None, kind: Optional[PayloadKind] = None) -> ProtectedPayload:
        """
        Change the label, content or kind of an existing payload

        Changing only the kind requires new content, since the stored bytes
        were validated against the old kind.

        Raises:
            ValueError: If nothing is given or a value is invalid
            NotFoundError: If the payload does not exist
        """
        if label is None and content is None and kind is None:
            raise ValueError("Nothing to update")
        parsed_kind = _parse_kind(kind) if kind is not None else None
        if parsed_kind is not None and content is None:
            raise ValueError("Changing the payload kind requires new content")
        if content is not None:
            content = _check_content(content, parsed_kind or await self._current_kind(payload_hash))
        label = _check_label(label)

        return await asyncio.to_thread(self._apply_update, payload_hash, label, content, parsed_kind)

    async def _current_kind(self, payload_hash: str) -> PayloadKind:
        payload = await self.get_payload(payload_hash)
        return payload.kind

    def _apply_update(self, payload_hash: str, label: Optional[str], content: Optional[str],
                      kind: Optional[PayloadKind]) -> ProtectedPayload:
        for attempt in range(1, self.max_retries + 1):
            payload = self.storage_service.get_payload(payload_hash)
            if payload is None:
                raise _not_found(payload_hash)

            expected_version = payload.version
            if label:
                payload.label = label
                payload.updated_at = utc_now()
            if content is not None:
                payload.replace_content(content, kind)

            if self.storage_service.compare_and_swap(payload, expected_version):
                logger.info(f"Updated payload {payload_hash}")
                return payload

            logger.debug(f"Version conflict updating payload {payload_hash}, attempt {attempt}")

        raise StorageUnavailableError("Payload is under heavy contention, retry later")

    async def get_payload(self, payload_hash: str) -> ProtectedPayload:
        payload = await asyncio.to_thread(self.storage_service.get_payload, payload_hash)
        if payload is None:
            raise _not_found(payload_hash)
        return payload

    async def list_payloads(self) -> List[ProtectedPayload]:
        return await asyncio.to_thread(self.storage_service.list_payloads)

    async def delete_payload(self, payload_hash: str) -> bool:
        """
        Permanently delete a payload

        Keys bound to it are left in place and will report PayloadNotFound.
        """
        deleted = await asyncio.to_thread(self.storage_service.delete_payload, payload_hash)
        if not deleted:
            raise _not_found(payload_hash)
        logger.info(f"Deleted payload {payload_hash}")
        return True
