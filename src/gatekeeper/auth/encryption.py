"""
Symmetric encryption for data at rest.

AES-256-GCM with a random 96-bit nonce per message. The ciphertext envelope
is ``base64(nonce || ciphertext || tag)`` so it can be stored as text.
"""

import base64
import binascii
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import DecryptionError


NONCE_SIZE = 12


class DataCipher:
    """
    AES-GCM text cipher.

    Without an explicit key a fresh 256-bit key is generated, which makes
    ciphertexts valid for the lifetime of this object only.
    """

    def __init__(self, key: Optional[bytes] = None):
        if key is None:
            key = AESGCM.generate_key(bit_length=256)
        if len(key) != 32:
            raise ValueError("AES-256 key must be 32 bytes")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str, associated_data: Optional[bytes] = None) -> str:
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data)
        return base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str, associated_data: Optional[bytes] = None) -> str:
        """
        Decrypt an envelope produced by encrypt().

        Raises:
            DecryptionError: If the envelope is malformed, tampered with, or
                was produced under a different key
        """
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
        except (binascii.Error, ValueError) as e:
            raise DecryptionError(f"Malformed ciphertext: {e}")

        if len(raw) <= NONCE_SIZE:
            raise DecryptionError("Ciphertext too short")

        try:
            plaintext = self._aesgcm.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], associated_data)
        except InvalidTag:
            raise DecryptionError()
        return plaintext.decode("utf-8")
