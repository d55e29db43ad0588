"""
Reversible obfuscation codec for protected payloads

A 32-bit linear congruential generator produces a keystream from a seed and
each byte is XORed with the low byte of the generator state. The transform is
its own inverse. This raises the cost of casual static inspection of a
delivered artifact; it is NOT encryption and offers no secrecy against anyone
who holds the seed, which ships inside every delivered wrapper.
"""

import secrets
from typing import Iterator, Union

# Same constants the delivered Lua decoder uses
LCG_MULTIPLIER = 1664525
LCG_INCREMENT = 1013904223
LCG_MODULUS = 2 ** 32


def generate_seed() -> int:
    """Draw a fresh 32-bit seed from a cryptographically strong source"""
    return secrets.randbits(32)


def _check_seed(seed: int) -> int:
    if not isinstance(seed, int) or isinstance(seed, bool):
        raise ValueError("Seed must be an integer")
    if seed < 0 or seed >= LCG_MODULUS:
        raise ValueError("Seed must be a 32-bit unsigned integer")
    return seed


def keystream(seed: int) -> Iterator[int]:
    """Yield keystream bytes; the state is advanced before each byte"""
    state = _check_seed(seed)
    while True:
        state = (state * LCG_MULTIPLIER + LCG_INCREMENT) % LCG_MODULUS
        yield state & 0xFF


def _transform(data: bytes, seed: int) -> bytes:
    _check_seed(seed)
    return bytes(b ^ k for b, k in zip(data, keystream(seed)))


def encode(plaintext: Union[str, bytes], seed: int) -> bytes:
    """
    Obfuscate plaintext with the keystream for ``seed``

    Args:
        plaintext: Text (UTF-8 encoded first) or raw bytes
        seed: 32-bit unsigned seed

    Returns:
        Encoded bytes, same length as the UTF-8 plaintext
    """
    if isinstance(plaintext, str):
        plaintext = plaintext.encode('utf-8')
    if not isinstance(plaintext, (bytes, bytearray)):
        raise ValueError("Plaintext must be str or bytes")
    return _transform(bytes(plaintext), seed)


def decode(data: bytes, seed: int) -> bytes:
    """Invert ``encode``; returns the original bytes"""
    if not isinstance(data, (bytes, bytearray)):
        raise ValueError("Encoded data must be bytes")
    return _transform(bytes(data), seed)


def decode_text(data: bytes, seed: int) -> str:
    """Invert ``encode`` for payloads stored from text"""
    return decode(data, seed).decode('utf-8')


def split_seed(seed: int):
    """Split a seed into (high, low) 16-bit halves for embedding in wrappers"""
    _check_seed(seed)
    return (seed >> 16) & 0xFFFF, seed & 0xFFFF
