"""
At-rest sealing for stored payload artifacts using Fernet
"""

import base64
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class EncryptionManager:
    """
    Seals and unseals bytes with Fernet (AES-128-CBC with HMAC-SHA256)

    Sealing protects payload artifacts inside the database. It is unrelated to
    the delivery-time content codec, which only obfuscates.
    """

    def __init__(self, master_key: str = None):
        """
        Initialize encryption manager with master key

        Args:
            master_key: Secret to derive the Fernet key from. If None, a random
                key is generated and sealed data will not survive a restart.
        """
        if master_key:
            self._key = self._derive_key_from_password(master_key)
        else:
            self._key = Fernet.generate_key()
        self._fernet = Fernet(self._key)

    def _derive_key_from_password(self, password: str, salt: bytes = None) -> bytes:
        """
        Derive encryption key from password using PBKDF2

        Args:
            password: Master secret
            salt: Salt for key derivation. Fixed when None so the same secret
                always yields the same key.

        Returns:
            URL-safe base64 Fernet key
        """
        if salt is None:
            salt = b'keygate_sealing_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def seal(self, data: bytes) -> bytes:
        """Encrypt raw bytes"""
        if not isinstance(data, (bytes, bytearray)):
            raise ValueError("Data to seal must be bytes")
        return self._fernet.encrypt(bytes(data))

    def unseal(self, token: bytes) -> bytes:
        """
        Decrypt bytes produced by ``seal``

        Raises:
            ValueError: If the token was sealed with another key or is corrupt
        """
        if not isinstance(token, (bytes, bytearray, memoryview)):
            raise ValueError("Sealed data must be bytes")
        try:
            return self._fernet.decrypt(bytes(token))
        except InvalidToken:
            raise ValueError("Sealed data could not be opened with the configured master key")
