from __future__ import annotations

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..logging import get_logger

LOG = get_logger(__name__)

NONCE_LENGTH = 12
TAG_LENGTH = 16


def derive_key(passphrase: str) -> bytes:
    """Hash an arbitrary passphrase to the 32 bytes AES-256 needs."""
    return hashlib.sha256(passphrase.encode("utf-8")).digest()


class ValueCipher:
    """
    AES-256-GCM for cached values at rest. Stored form is
    base64(nonce || tag || ciphertext) with a fresh nonce per write.
    """

    def __init__(self, passphrase: str) -> None:
        self._aead = AESGCM(derive_key(passphrase))

    def encrypt(self, value: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, value.encode("utf-8"), None)
        # cryptography appends the tag; reorder to nonce || tag || ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """
        Return the plaintext, or the blob unchanged when it cannot be decrypted
        (wrong key, corruption, or a value written before encryption was enabled).
        """
        try:
            combined = base64.b64decode(blob, validate=True)
            if len(combined) < NONCE_LENGTH + TAG_LENGTH:
                raise ValueError("ciphertext too short")
            nonce = combined[:NONCE_LENGTH]
            tag = combined[NONCE_LENGTH : NONCE_LENGTH + TAG_LENGTH]
            ciphertext = combined[NONCE_LENGTH + TAG_LENGTH :]
            return self._aead.decrypt(nonce, ciphertext + tag, None).decode("utf-8")
        except (ValueError, InvalidTag) as e:
            LOG.debug("Decryption failed (%s); returning stored value", type(e).__name__)
            return blob
