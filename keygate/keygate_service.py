"""
Main KeyGate class - wires storage, validation, delivery and operator services together
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config.settings import Settings
from .errors import (
    ErrorKind,
    KeyGateError,
    MalformedRequestError,
    RateLimitedError,
    UnauthorizedError,
    status_for,
)
from .models import security_event as events
from .services.delivery_assembler import DeliveryAssembler, build_delivery_url
from .services.key_manager import KeyManager
from .services.key_storage import KeyStorageService
from .services.payload_manager import PayloadManager
from .services.payload_storage import PayloadStorageService
from .services.rate_limiter import FailedAttemptLimiter, RateLimiter, RateLimitPolicy
from .services.security_log import SecurityLog
from .services.usage_ledger import UsageLedgerService
from .services.validation_engine import ValidationEngine, ValidationRequest, ValidationResult
from .utils.encryption import EncryptionManager
from .utils.identifiers import validate_payload_hash


logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """
    A Lua response for the loader endpoint

    Attributes:
        status_code: HTTP status to send
        body: Lua source (artifact, stub or error line)
        error: Denial reason, None on success
        retry_after: Seconds the client should wait, for 429 and 503
    """
    status_code: int
    body: str
    error: Optional[ErrorKind] = None
    retry_after: Optional[int] = None


class KeyGate:
    """
    Entry point used by the HTTP layer

    Rate limiters and the security log are plain objects passed in (or built
    from Settings), so each KeyGate owns its own state and tests can run
    several side by side.
    """

    def __init__(self,
                 settings: Settings,
                 key_storage: Optional[KeyStorageService] = None,
                 payload_storage: Optional[PayloadStorageService] = None,
                 assembler: Optional[DeliveryAssembler] = None,
                 security_log: Optional[SecurityLog] = None,
                 validate_limiter: Optional[RateLimiter] = None,
                 delivery_limiter: Optional[RateLimiter] = None,
                 operator_limiter: Optional[RateLimiter] = None,
                 failed_logins: Optional[FailedAttemptLimiter] = None):
        """
        Initialize KeyGate with all required services

        Args:
            settings: Resolved configuration
            key_storage: Access key storage (built from settings if None)
            payload_storage: Payload storage (built from settings if None)
            assembler: Lua wrapper builder
            security_log: Denial and credential-failure log
            validate_limiter: Admission control for /api/validate
            delivery_limiter: Admission control for the loader endpoint
            operator_limiter: Admission control for operator endpoints
            failed_logins: Lockout tracker for bad operator credentials
        """
        self.settings = settings
        self.key_storage = key_storage or KeyStorageService(settings.database)
        self.payload_storage = payload_storage or PayloadStorageService(
            settings.database, EncryptionManager(settings.master_key)
        )
        self.assembler = assembler or DeliveryAssembler()
        self.security_log = security_log or SecurityLog()

        self.validate_limiter = validate_limiter or RateLimiter(
            RateLimitPolicy(*settings.validate_limit), name="validate")
        self.delivery_limiter = delivery_limiter or RateLimiter(
            RateLimitPolicy(*settings.delivery_limit), name="delivery")
        self.operator_limiter = operator_limiter or RateLimiter(
            RateLimitPolicy(*settings.operator_limit), name="operator")
        self.failed_logins = failed_logins or FailedAttemptLimiter(
            settings.admin_max_failures, settings.admin_lockout_seconds)

        self.validation_engine = ValidationEngine(
            self.key_storage, self.payload_storage, self.assembler, self.security_log
        )
        self.key_manager = KeyManager(self.key_storage)
        self.payload_manager = PayloadManager(self.payload_storage)
        self.usage_ledger = UsageLedgerService(self.key_storage, self.payload_storage)

        logger.info(f"KeyGate initialized with {settings.database.describe()} storage")

    def _admit(self, limiter: RateLimiter, source_address: str) -> None:
        if not limiter.admit(source_address):
            retry_after = limiter.retry_after(source_address)
            self.security_log.record(events.RATE_LIMITED, source_address,
                                     details={'limiter': limiter.name})
            raise RateLimitedError(retry_after=retry_after)

    def authenticate_operator(self, token: Optional[str], source_address: str) -> None:
        """
        Check an operator credential

        Raises:
            RateLimitedError: If the client is locked out or over its window
            UnauthorizedError: If the credential is missing or wrong
        """
        if self.failed_logins.is_blocked(source_address):
            self.security_log.record(events.ADMIN_LOCKED_OUT, source_address)
            raise RateLimitedError(retry_after=self.failed_logins.retry_after(source_address))

        self._admit(self.operator_limiter, source_address)

        if not token or not hmac.compare_digest(token.encode('utf-8'),
                                                self.settings.admin_token.encode('utf-8')):
            failures = self.failed_logins.record_failure(source_address)
            self.security_log.record(events.BAD_ADMIN_CREDENTIAL, source_address,
                                     details={'failures': failures})
            raise UnauthorizedError()

        self.failed_logins.clear(source_address)

    async def validate(self, key: Optional[str], payload_hash: Optional[str],
                       device_fingerprint: Optional[str] = None, identity: Optional[str] = None,
                       source_address: str = "unknown") -> ValidationResult:
        """
        Public validation call

        Raises:
            RateLimitedError: If the client exceeded the validation window
            StorageUnavailableError: If storage fails
        """
        self._admit(self.validate_limiter, source_address)
        request = ValidationRequest(
            key=key,
            payload_hash=payload_hash.lower() if payload_hash else payload_hash,
            device_fingerprint=device_fingerprint,
            identity=identity,
            source_address=source_address,
        )
        return await self.validation_engine.validate(request)

    async def deliver(self, payload_hash: str, key: Optional[str] = None,
                      device_fingerprint: Optional[str] = None, identity: Optional[str] = None,
                      source_address: str = "unknown") -> Delivery:
        """
        Loader endpoint

        Without a key the caller gets the stub that re-requests this URL with
        its key, device fingerprint and identity attached. With a key the
        request is validated and the freshly assembled artifact returned.
        Every failure is rendered as a Lua error line.
        """
        try:
            self._admit(self.delivery_limiter, source_address)

            payload_hash = (payload_hash or "").strip().lower()
            if not validate_payload_hash(payload_hash):
                raise MalformedRequestError("Invalid payload hash")

            if not key:
                url = build_delivery_url(self.settings.public_url, payload_hash)
                return Delivery(200, self.assembler.assemble_stub(payload_hash, url))

            request = ValidationRequest(
                key=key,
                payload_hash=payload_hash,
                device_fingerprint=device_fingerprint,
                identity=identity,
                source_address=source_address,
            )
            result = await self.validation_engine.validate(request)
        except KeyGateError as e:
            return Delivery(
                e.status_code,
                self.assembler.assemble_denial(e.kind),
                error=e.kind,
                retry_after=getattr(e, 'retry_after', None) or (1 if e.retryable else None),
            )

        if not result.ok:
            return Delivery(status_for(result.error), self.assembler.assemble_denial(result.error), error=result.error)
        return Delivery(200, result.artifact)

    # Operator operations

    async def create_key(self, **fields) -> Dict[str, Any]:
        key = await self.key_manager.create_key(**fields)
        return key.to_dict()

    async def list_keys(self, payload_hash: Optional[str] = None) -> List[Dict[str, Any]]:
        keys = await self.key_manager.list_keys(payload_hash)
        return [k.to_dict(include_usage=False) for k in keys]

    async def get_key(self, key_id: str) -> Dict[str, Any]:
        key = await self.key_manager.get_key(key_id)
        return key.to_dict()

    async def update_key(self, key_id: str, **changes) -> Dict[str, Any]:
        key = await self.key_manager.update_key(key_id, **changes)
        return key.to_dict()

    async def revoke_key(self, key_id: str) -> Dict[str, Any]:
        key = await self.key_manager.revoke_key(key_id)
        return key.to_dict(include_usage=False)

    async def unrevoke_key(self, key_id: str) -> Dict[str, Any]:
        key = await self.key_manager.unrevoke_key(key_id)
        return key.to_dict(include_usage=False)

    async def delete_key(self, key_id: str) -> bool:
        return await self.key_manager.delete_key(key_id)

    async def save_payload(self, content: str, label: Optional[str] = None, kind: str = "inline",
                           payload_hash: Optional[str] = None) -> Dict[str, Any]:
        payload, created = await self.payload_manager.save_payload(content, label, kind, payload_hash)
        data = payload.to_dict(include_usage=False)
        data['created'] = created
        data['loader_url'] = build_delivery_url(self.settings.public_url, payload.payload_hash)
        return data

    async def list_payloads(self) -> List[Dict[str, Any]]:
        payloads = await self.payload_manager.list_payloads()
        return [p.to_dict(include_usage=False) for p in payloads]

    async def get_payload(self, payload_hash: str) -> Dict[str, Any]:
        payload = await self.payload_manager.get_payload(payload_hash)
        data = payload.to_dict(include_content=True)
        data['loader_url'] = build_delivery_url(self.settings.public_url, payload.payload_hash)
        return data

    async def update_payload(self, payload_hash: str, **changes) -> Dict[str, Any]:
        payload = await self.payload_manager.update_payload(payload_hash, **changes)
        return payload.to_dict(include_usage=False)

    async def delete_payload(self, payload_hash: str) -> bool:
        return await self.payload_manager.delete_payload(payload_hash)

    async def get_key_usage(self, key_id: str) -> Dict[str, Any]:
        return {
            'entries': await self.usage_ledger.get_key_ledger(key_id),
            'stats': await self.usage_ledger.get_statistics(key_id=key_id),
        }

    async def clear_key_usage(self, key_id: str) -> int:
        return await self.usage_ledger.clear_key_ledger(key_id)

    async def get_payload_usage(self, payload_hash: str) -> Dict[str, Any]:
        return {
            'entries': await self.usage_ledger.get_payload_ledger(payload_hash),
            'stats': await self.usage_ledger.get_statistics(payload_hash=payload_hash),
        }

    async def clear_payload_usage(self, payload_hash: str) -> int:
        return await self.usage_ledger.clear_payload_ledger(payload_hash)

    def list_security_events(self, limit: int = 100, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.security_log.list_events(limit=limit, event_type=event_type)

    def clear_security_events(self) -> int:
        return self.security_log.clear()

    async def get_statistics(self) -> Dict[str, Any]:
        stats = await self.key_manager.get_statistics()
        stats['total_payloads'] = len(await self.payload_manager.list_payloads())
        return stats
