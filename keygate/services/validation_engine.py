"""
Validation Engine for KeyGate - decides whether an access key may release a payload
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import ErrorKind, StorageUnavailableError
from ..models import security_event as events
from ..models.access_key import AccessKey
from ..models.protected_payload import ProtectedPayload
from ..models.usage_ledger import UsageEntry
from ..utils.identifiers import normalize_fingerprint
from ..utils.timeutil import utc_now
from .delivery_assembler import DeliveryAssembler
from .key_storage import KeyStorageService
from .payload_storage import PayloadStorageService
from .security_log import SecurityLog

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5

# Longest key, hash, fingerprint or identity kept from a request
MAX_FIELD_LENGTH = 128

# Security event recorded for each denial
DENIAL_EVENTS = {
    ErrorKind.MALFORMED_REQUEST: events.MISSING_PARAMS,
    ErrorKind.INVALID_KEY: events.INVALID_KEY,
    ErrorKind.REVOKED: events.BLACKLISTED_KEY_USED,
    ErrorKind.EXPIRED: events.EXPIRED_KEY_USED,
    ErrorKind.QUOTA_EXCEEDED: events.MAX_USES_REACHED,
    ErrorKind.WRONG_PAYLOAD: events.WRONG_PAYLOAD,
    ErrorKind.DEVICE_MISMATCH: events.DEVICE_MISMATCH,
    ErrorKind.PAYLOAD_NOT_FOUND: events.PAYLOAD_NOT_FOUND,
}


def _clip(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()[:MAX_FIELD_LENGTH]
    return value or None


@dataclass
class ValidationRequest:
    """
    One attempt to redeem a key

    Attributes:
        key: Access key token presented by the caller
        payload_hash: Payload the caller wants released
        device_fingerprint: Caller's device id (``hwid``); "unknown" means absent
        identity: Optional client identity, e.g. the player name
        source_address: Client network address
    """
    key: Optional[str]
    payload_hash: Optional[str]
    device_fingerprint: Optional[str] = None
    identity: Optional[str] = None
    source_address: str = "unknown"

    def __post_init__(self):
        self.key = _clip(self.key)
        self.payload_hash = _clip(self.payload_hash)
        self.device_fingerprint = _clip(normalize_fingerprint(self.device_fingerprint))
        self.identity = _clip(self.identity)
        if self.identity and self.identity.lower() == "unknown":
            self.identity = None


@dataclass
class ValidationResult:
    """
    Outcome of a validation

    Attributes:
        ok: True if the payload was released
        error: Denial reason when ``ok`` is False
        content: Decoded payload text (code or indirection URL) on success
        artifact: Freshly assembled Lua wrapper on success
        key_id: Key that was evaluated, when one was presented
        use_count: Key use count after this request
    """
    ok: bool
    error: Optional[ErrorKind] = None
    content: Optional[str] = None
    artifact: Optional[str] = None
    key_id: Optional[str] = None
    use_count: Optional[int] = None

    @classmethod
    def denied(cls, kind: ErrorKind, key: Optional[AccessKey] = None) -> 'ValidationResult':
        return cls(
            ok=False,
            error=kind,
            key_id=key.key_id if key else None,
            use_count=key.use_count if key else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Client-facing body; never carries the artifact"""
        if self.ok:
            return {'ok': True, 'content': self.content}
        return {'ok': False, 'error': self.error.value}


class ValidationEngine:
    """
    Applies the access key state machine

    Checks run in a fixed order and the first failing check decides the
    result: unknown key, revoked, expired, quota used up, bound to another
    payload, bound to another device, payload missing. Only when every check
    passes is the key mutated, and that mutation is a single compare-and-swap
    so first-use device binding and the quota increment land together or not
    at all. A lost race re-reads the key and evaluates every check again.
    """

    def __init__(self, key_storage: KeyStorageService, payload_storage: PayloadStorageService,
                 assembler: DeliveryAssembler = None, security_log: SecurityLog = None,
                 max_retries: int = DEFAULT_MAX_RETRIES, clock: Callable[[], datetime] = utc_now):
        """
        Initialize the validation engine

        Args:
            key_storage: Access key persistence
            payload_storage: Payload persistence
            assembler: Wrapper builder for released payloads
            security_log: Sink for denial events
            max_retries: Compare-and-swap attempts before giving up
            clock: Source of "now" for expiry checks
        """
        if max_retries <= 0:
            raise ValueError("max_retries must be positive")
        self.key_storage = key_storage
        self.payload_storage = payload_storage
        self.assembler = assembler or DeliveryAssembler()
        self.security_log = security_log or SecurityLog()
        self.max_retries = max_retries
        self.clock = clock

    async def validate(self, request: ValidationRequest) -> ValidationResult:
        """
        Validate a request and, if authorized, release the payload

        Denials come back as ``ValidationResult(ok=False)``.

        Raises:
            StorageUnavailableError: If storage fails or stays contended
        """
        result = await asyncio.to_thread(self._validate_sync, request)
        if not result.ok:
            self._record_denial(request, result)
        return result

    def check(self, key: Optional[AccessKey], request: ValidationRequest) -> Optional[ErrorKind]:
        """
        Run the key checks without side effects

        Returns:
            The first failing check, or None if the key may be redeemed
        """
        if key is None:
            return ErrorKind.INVALID_KEY
        if key.blacklisted:
            return ErrorKind.REVOKED
        if key.is_expired(self.clock()):
            return ErrorKind.EXPIRED
        if key.quota_exhausted():
            return ErrorKind.QUOTA_EXCEEDED
        if key.bound_payload_hash and key.bound_payload_hash != request.payload_hash:
            return ErrorKind.WRONG_PAYLOAD
        if key.device_fingerprint is not None and key.device_fingerprint != request.device_fingerprint:
            return ErrorKind.DEVICE_MISMATCH
        return None

    def _validate_sync(self, request: ValidationRequest) -> ValidationResult:
        if not request.key or not request.payload_hash:
            return ValidationResult.denied(ErrorKind.MALFORMED_REQUEST)

        payload = None
        for attempt in range(1, self.max_retries + 1):
            key = self.key_storage.get_key(request.key)
            denial = self.check(key, request)
            if denial is not None:
                return ValidationResult.denied(denial, key)

            if payload is None:
                payload = self.payload_storage.get_payload(request.payload_hash)
                if payload is None:
                    return ValidationResult.denied(ErrorKind.PAYLOAD_NOT_FOUND, key)

            entry = UsageEntry.create_new(
                source_address=request.source_address,
                device_fingerprint=request.device_fingerprint,
                identity=request.identity,
            )
            expected_version = key.version
            if key.device_fingerprint is None and request.device_fingerprint is not None:
                key.device_fingerprint = request.device_fingerprint
                logger.info(f"Binding key {key.key_id} to its first device")
            key.record_use(entry)

            if self.key_storage.compare_and_swap(key, expected_version):
                self._record_payload_use(payload, entry)
                logger.info(f"Key {key.key_id} released payload {payload.payload_hash} "
                            f"(use {key.use_count}{'/' + str(key.max_uses) if key.max_uses else ''})")
                return ValidationResult(
                    ok=True,
                    content=payload.decode_content(),
                    artifact=self.assembler.assemble(payload),
                    key_id=key.key_id,
                    use_count=key.use_count,
                )

            logger.debug(f"Version conflict on key {key.key_id}, attempt {attempt}/{self.max_retries}")

        logger.error(f"Giving up on key {request.key} after {self.max_retries} conflicting updates")
        raise StorageUnavailableError("Key is under heavy contention, retry later")

    def _record_payload_use(self, payload: ProtectedPayload, entry: UsageEntry) -> None:
        """
        Count a release against the payload

        The key has already been committed at this point, so a failure here
        is logged rather than turned into a denial.
        """
        try:
            record_payload_use(self.payload_storage, payload.payload_hash, entry, self.max_retries)
        except StorageUnavailableError as e:
            logger.error(f"Could not record usage for payload {payload.payload_hash}: {e}")

    def _record_denial(self, request: ValidationRequest, result: ValidationResult) -> None:
        event_type = DENIAL_EVENTS.get(result.error, result.error.value)
        details = {'payload_hash': request.payload_hash}
        if request.identity:
            details['identity'] = request.identity
        self.security_log.record(
            event_type,
            request.source_address,
            key_id=request.key,
            details=details,
        )


def record_payload_use(payload_storage: PayloadStorageService, payload_hash: str,
                       entry: UsageEntry, max_retries: int = DEFAULT_MAX_RETRIES) -> Tuple[bool, int]:
    """
    Append ``entry`` to a payload's ledger with compare-and-swap

    Returns:
        (recorded, attempts). ``recorded`` is False if the payload vanished.

    Raises:
        StorageUnavailableError: If every attempt lost a race
    """
    for attempt in range(1, max_retries + 1):
        payload = payload_storage.get_payload(payload_hash)
        if payload is None:
            return False, attempt
        expected_version = payload.version
        payload.record_use(entry)
        if payload_storage.compare_and_swap(payload, expected_version):
            return True, attempt
    raise StorageUnavailableError("Payload is under heavy contention, retry later")
