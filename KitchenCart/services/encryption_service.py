"""
Encryption Service for Supplier Credentials

AES-256-GCM encryption of supplier usernames, passwords and serialized
browser sessions. Every value is encrypted under its own PBKDF2-derived key
and stored as a single "<salt_b64>:<ciphertext_b64>" token so one column
holds everything needed to decrypt it.
"""

import os
import base64
import secrets
from typing import Optional, Tuple
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.backends import default_backend
from dotenv import load_dotenv
import binascii
import logging

from KitchenCart.exceptions import EncryptionError

load_dotenv()

logger = logging.getLogger(__name__)

TOKEN_SEPARATOR = ":"


class EncryptionService:
    """
    Encrypts and decrypts individual credential values.

    The master key comes from KITCHENCART_ENCRYPTION_KEY (base64, 32 bytes).
    When it is missing a throwaway key is generated, which means anything
    encrypted in this process cannot be read after a restart.
    """

    def __init__(self, master_key: Optional[str] = None):
        self.logger = logging.getLogger(f"{__name__}.EncryptionService")
        self.master_key = master_key or self._get_master_key()
        self.key_length = 32  # 256 bits
        self.salt_length = 16
        self.nonce_length = 12  # GCM nonce
        self.tag_length = 16
        self.iterations = 100000

        try:
            self._master_key_bytes = base64.b64decode(self.master_key.encode('utf-8'), validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"Master encryption key is not valid base64: {e}")

    def _get_master_key(self) -> str:
        master_key = os.getenv("KITCHENCART_ENCRYPTION_KEY")

        if not master_key:
            master_key = base64.b64encode(secrets.token_bytes(32)).decode('utf-8')
            self.logger.warning(
                "No master encryption key found in environment. Generated a temporary key. "
                "Set KITCHENCART_ENCRYPTION_KEY so stored credentials survive a restart."
            )

        return master_key

    def derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.key_length,
            salt=salt,
            iterations=self.iterations,
            backend=default_backend()
        )
        return kdf.derive(self._master_key_bytes)

    def encrypt(self, plaintext: str) -> Tuple[str, str]:
        """
        Encrypt plaintext under a fresh salt.

        Returns:
            Tuple of (salt_base64, ciphertext_base64) where the ciphertext is
            nonce + data + tag.
        """
        salt = secrets.token_bytes(self.salt_length)
        key = self.derive_key(salt)
        nonce = secrets.token_bytes(self.nonce_length)

        encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce), backend=default_backend()).encryptor()
        ciphertext = encryptor.update(plaintext.encode('utf-8')) + encryptor.finalize()

        encrypted = base64.b64encode(nonce + ciphertext + encryptor.tag).decode('utf-8')
        return base64.b64encode(salt).decode('utf-8'), encrypted

    def decrypt(self, salt_base64: str, ciphertext_base64: str) -> str:
        try:
            salt = base64.b64decode(salt_base64.encode('utf-8'), validate=True)
            data = base64.b64decode(ciphertext_base64.encode('utf-8'), validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"Encrypted value is not valid base64: {e}")

        if len(data) < self.nonce_length + self.tag_length:
            raise EncryptionError("Encrypted value is truncated")

        nonce = data[:self.nonce_length]
        tag = data[-self.tag_length:]
        ciphertext = data[self.nonce_length:-self.tag_length]

        decryptor = Cipher(
            algorithms.AES(self.derive_key(salt)), modes.GCM(nonce, tag), backend=default_backend()
        ).decryptor()
        try:
            plaintext = decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag:
            raise EncryptionError("Encrypted value failed authentication (wrong key or tampered data)")

        return plaintext.decode('utf-8')

    def encrypt_value(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt to a storable "salt:ciphertext" token; None and "" stay None."""
        if not plaintext:
            return None
        salt, ciphertext = self.encrypt(plaintext)
        return f"{salt}{TOKEN_SEPARATOR}{ciphertext}"

    def decrypt_value(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        salt, sep, ciphertext = token.partition(TOKEN_SEPARATOR)
        if not sep or not salt or not ciphertext:
            raise EncryptionError("Encrypted value is not a salt:ciphertext token")
        return self.decrypt(salt, ciphertext)

    def rotate_value(self, token: Optional[str]) -> Optional[str]:
        """Re-encrypt a token under a fresh salt."""
        return self.encrypt_value(self.decrypt_value(token))


_default_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Process-wide service built from the environment on first use."""
    global _default_service
    if _default_service is None:
        _default_service = EncryptionService()
    return _default_service
