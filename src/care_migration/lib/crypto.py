"""
Symmetric encryption for backup artifacts and PII fields.

AES-256-GCM with a key derived from an operator-supplied secret via scrypt.
Every payload gets a fresh 96-bit nonce; the on-disk/in-column layout is::

    MAGIC (4 bytes) | nonce (12 bytes) | ciphertext + GCM tag

Field values are the same layout, base64-encoded so they fit text columns.
"""

import base64
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .exceptions import CryptoException, MissingConfigurationException

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
MAGIC = b"CMG1"
NONCE_SIZE = 12
KEY_SIZE = 32
DEFAULT_SALT = b"care-migration-v1"


def derive_key(secret: str, salt: bytes = DEFAULT_SALT) -> bytes:
    """Derive a 256-bit key from a secret with scrypt"""
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=2 ** 14, r=8, p=1)
    return kdf.derive(secret.encode('utf-8'))


class EncryptionService:
    """
    AES-256-GCM encryption keyed once at construction

    Key derivation is deliberately slow, so one instance should be shared by
    every caller that uses the same secret.
    """

    algorithm = ALGORITHM

    def __init__(self, secret: Optional[str] = None, key: Optional[bytes] = None,
                 salt: bytes = DEFAULT_SALT):
        if key is None:
            if not secret:
                raise MissingConfigurationException(
                    "An encryption secret is required when encryption is enabled"
                )
            key = derive_key(secret, salt)

        if len(key) != KEY_SIZE:
            raise CryptoException(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")

        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: bytes, associated_data: Optional[bytes] = None) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext, associated_data)
        return MAGIC + nonce + ciphertext

    def decrypt(self, payload: bytes, associated_data: Optional[bytes] = None) -> bytes:
        if not payload.startswith(MAGIC):
            raise CryptoException("Payload is not an encrypted care-migration payload")

        nonce = payload[len(MAGIC):len(MAGIC) + NONCE_SIZE]
        ciphertext = payload[len(MAGIC) + NONCE_SIZE:]

        try:
            return self._aesgcm.decrypt(nonce, ciphertext, associated_data)
        except InvalidTag as e:
            raise CryptoException("Decryption failed: wrong key or tampered payload") from e

    def encrypt_field(self, value) -> str:
        """Encrypt a scalar field value into a base64 text token"""
        payload = self.encrypt(str(value).encode('utf-8'))
        return base64.b64encode(payload).decode('ascii')

    def decrypt_field(self, token: str) -> str:
        payload = base64.b64decode(token.encode('ascii'))
        return self.decrypt(payload).decode('utf-8')
