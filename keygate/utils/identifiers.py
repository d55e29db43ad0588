"""
Identifier generation and validation helpers
"""

import hashlib
import re
import secrets
from typing import Optional

KEY_PREFIX = "KG"

# Sentinel executors send when they cannot read a device id
UNKNOWN_FINGERPRINT = "unknown"

_PAYLOAD_HASH_RE = re.compile(r'^[a-f0-9]{32,64}$')


def generate_access_key() -> str:
    """Generate a new access key token, e.g. KG-1A2B-3C4D-5E6F-7A8B"""
    segments = [secrets.token_hex(2).upper() for _ in range(4)]
    return "-".join([KEY_PREFIX] + segments)


def compute_payload_hash(content: str, kind: str) -> str:
    """Content-derived payload identifier (32 lowercase hex chars)"""
    digest = hashlib.sha256()
    digest.update(kind.encode('utf-8'))
    digest.update(b'\x00')
    digest.update(content.encode('utf-8'))
    return digest.hexdigest()[:32]


def validate_payload_hash(payload_hash: str) -> bool:
    """Check a payload hash is 32-64 lowercase hex characters"""
    if not isinstance(payload_hash, str):
        return False
    return bool(_PAYLOAD_HASH_RE.match(payload_hash))


def normalize_fingerprint(fingerprint: Optional[str]) -> Optional[str]:
    """Collapse empty values and the 'unknown' sentinel to None"""
    if fingerprint is None:
        return None
    fingerprint = fingerprint.strip()
    if not fingerprint or fingerprint.lower() == UNKNOWN_FINGERPRINT:
        return None
    return fingerprint
