"""
Symmetric encryption for upstream OAuth tokens at rest.

AES-256-GCM with a fresh random 96-bit nonce per encryption. The nonce is
stored in front of the ciphertext and the pair is base64 encoded, so a stored
value is self-describing:

    base64( nonce[12] || ciphertext+tag )

decrypt() never raises. Anything malformed, truncated, tampered with or
encrypted under another key comes back as None, which callers treat as
"credential unusable" (the user must re-authorize).
"""
import base64
import binascii
import hashlib
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

NONCE_LENGTH = 12
_DEV_KEY_SEED = b"fleetsync-dev-token-key"


def decode_key_material(value: str) -> bytes:
    """Decode hex or base64 key material and stretch it to 32 bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        raw = bytes.fromhex(stripped)
    except ValueError:
        try:
            raw = base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc
    if len(raw) == 32:
        return raw
    return hashlib.sha256(raw).digest()


class TokenVault:
    """Encrypts and decrypts token strings with a single AES-256 key."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("TokenVault key must be 32 bytes")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_setting(cls, key_material: str) -> "TokenVault":
        """Build from the TOKEN_ENCRYPTION_KEY setting.

        An empty setting yields a deterministic development key.
        """
        if key_material.strip():
            return cls(decode_key_material(key_material))
        logger.warning("TOKEN_ENCRYPTION_KEY not set; using development key")
        return cls(hashlib.sha256(_DEV_KEY_SEED).digest())

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        if not ciphertext:
            return None
        try:
            payload = base64.b64decode(ciphertext.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError):
            logger.warning("Token decryption failed: not valid base64")
            return None
        if len(payload) <= NONCE_LENGTH:
            logger.warning("Token decryption failed: payload too short")
            return None
        nonce, body = payload[:NONCE_LENGTH], payload[NONCE_LENGTH:]
        try:
            return self._aesgcm.decrypt(nonce, body, None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            logger.warning("Token decryption failed: authentication tag mismatch")
            return None
