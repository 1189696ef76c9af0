"""
Reversible encryption of tenant bot tokens.

Tokens are sealed with AES-256-GCM. The stored form is base64 of::

    [12 bytes] nonce
    [16 bytes] GCM auth tag
    [N bytes]  ciphertext

The key comes from ``ENCRYPTION_KEY`` (64 hex characters or base64 of 32
bytes). Decryption is synchronous and fast; it never touches the network.
"""

import base64
import binascii
import logging
import os
import re
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from postify.exceptions import ConfigurationError, CredentialDecryptError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def parse_key(raw: str) -> bytes:
    """Decode an ``ENCRYPTION_KEY`` value into 32 key bytes.

    Raises:
        ConfigurationError: If the value is neither 64 hex characters nor
            base64 of exactly 32 bytes.
    """
    raw = raw.strip()
    if _HEX_KEY.match(raw):
        return bytes.fromhex(raw)
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("ENCRYPTION_KEY is not valid hex or base64") from exc
    if len(key) != KEY_SIZE:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must decode to {KEY_SIZE} bytes, got {len(key)}"
        )
    return key


class CredentialVault:
    """Encrypts and decrypts tenant credentials with a single AES-256 key.

    Args:
        key: 32 raw key bytes.

    Usage::

        vault = CredentialVault.from_env()
        sealed = vault.encrypt("123456:ABC-token")
        token = vault.decrypt(sealed)
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ConfigurationError(
                f"CredentialVault key must be {KEY_SIZE} bytes, got {len(key)}"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_env(cls, allow_ephemeral: bool = False) -> "CredentialVault":
        """Build a vault from ``ENCRYPTION_KEY``.

        Args:
            allow_ephemeral: When ``True`` and the variable is unset, use a
                random key for this process only (development mode). Tokens
                sealed with it are unreadable after restart.

        Raises:
            ConfigurationError: If the key is missing (and ephemeral keys are
                not allowed) or malformed.
        """
        raw: Optional[str] = os.environ.get("ENCRYPTION_KEY")
        if raw:
            return cls(parse_key(raw))
        if not allow_ephemeral:
            raise ConfigurationError("ENCRYPTION_KEY must be set")
        logger.warning(
            "[VAULT] ENCRYPTION_KEY not set - using an ephemeral key (dev mode)"
        )
        return cls(secrets.token_bytes(KEY_SIZE))

    def encrypt(self, plain: str) -> str:
        """Seal *plain* and return the base64 envelope."""
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plain.encode("utf-8"), None)
        # AESGCM appends the tag; the stored layout puts it before the data.
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, cipher: str) -> str:
        """Open a base64 envelope produced by :meth:`encrypt`.

        Raises:
            CredentialDecryptError: If the envelope is malformed, was sealed
                with another key, or has been tampered with.
        """
        try:
            buf = base64.b64decode(cipher, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CredentialDecryptError("Credential is not valid base64") from exc

        if len(buf) < NONCE_SIZE + TAG_SIZE:
            raise CredentialDecryptError("Credential envelope is truncated")

        nonce = buf[:NONCE_SIZE]
        tag = buf[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = buf[NONCE_SIZE + TAG_SIZE:]
        try:
            plain = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CredentialDecryptError(
                "Credential failed authentication (wrong key or tampered)"
            ) from exc
        return plain.decode("utf-8")


__all__ = ["CredentialVault", "parse_key"]
