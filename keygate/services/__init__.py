"""
Core services for KeyGate
"""

from .key_storage import KeyStorageService
from .payload_storage import PayloadStorageService
from .rate_limiter import RateLimiter, RateLimitPolicy, FailedAttemptLimiter, InMemoryRateWindowStore
from .security_log import SecurityLog, InMemorySecurityEventStore
from .delivery_assembler import DeliveryAssembler
from .validation_engine import ValidationEngine, ValidationRequest, ValidationResult
from .usage_ledger import UsageLedgerService
from .key_manager import KeyManager
from .payload_manager import PayloadManager

__all__ = [
    'KeyStorageService', 'PayloadStorageService', 'RateLimiter', 'RateLimitPolicy',
    'FailedAttemptLimiter', 'InMemoryRateWindowStore', 'SecurityLog', 'InMemorySecurityEventStore',
    'DeliveryAssembler', 'ValidationEngine', 'ValidationRequest', 'ValidationResult',
    'UsageLedgerService', 'KeyManager', 'PayloadManager',
]
