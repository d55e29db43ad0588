"""
Utility functions and helpers for KeyGate
"""

from .encryption import EncryptionManager
from .identifiers import (
    generate_access_key,
    compute_payload_hash,
    validate_payload_hash,
    normalize_fingerprint,
)
from . import content_codec

__all__ = [
    'EncryptionManager',
    'content_codec',
    'generate_access_key',
    'compute_payload_hash',
    'validate_payload_hash',
    'normalize_fingerprint',
]
