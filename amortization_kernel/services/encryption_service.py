"""
EncryptionService -- password-derived symmetric encryption for tokens at rest.

Contract:
    encrypt(plain) / decrypt(cipher) are inverses under the same secret and
    salt.  Both return None for None input.

Invariants enforced:
    - The key is PBKDF2-HMAC-SHA256(secret, salt) fed to Fernet
      (AES-128-CBC with a random IV per message, authenticated by
      HMAC-SHA256).
    - Decrypting under a different secret or salt, or decrypting tampered
      ciphertext, raises DecryptionError.  A wrong key never yields a
      plausible plaintext because the MAC is checked before decryption.
    - The secret is held only in memory and never appears in repr or logs.

Failure modes:
    - ConfigurationError for an empty secret.
    - DecryptionError on authentication failure or malformed input.
"""

from __future__ import annotations

import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from amortization_kernel.exceptions import ConfigurationError, DecryptionError

DEFAULT_ITERATIONS = 100_000


def derive_key(secret: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """Derive a urlsafe-base64 Fernet key from ``secret``."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class EncryptionService:
    """Encrypts and decrypts credential tokens."""

    def __init__(
        self,
        secret: str,
        salt: str | bytes,
        iterations: int = DEFAULT_ITERATIONS,
    ):
        if not secret:
            raise ConfigurationError("encryption_secret", "must not be empty")
        salt_bytes = salt.encode("utf-8") if isinstance(salt, str) else salt
        if not salt_bytes:
            raise ConfigurationError("kdf_salt", "must not be empty")
        self._fernet = Fernet(derive_key(secret, salt_bytes, iterations))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(<secret hidden>)"

    def encrypt(self, plain: str | None) -> str | None:
        if plain is None:
            return None
        return self._fernet.encrypt(plain.encode("utf-8")).decode("ascii")

    def decrypt(self, cipher: str | None) -> str | None:
        """
        Raises:
            DecryptionError: wrong secret, tampered or malformed ciphertext.
        """
        if cipher is None:
            return None
        try:
            token = cipher.encode("ascii")
        except UnicodeEncodeError as exc:
            raise DecryptionError("ciphertext is not ASCII") from exc
        try:
            return self._fernet.decrypt(token).decode("utf-8")
        except InvalidToken as exc:
            raise DecryptionError() from exc
        except UnicodeDecodeError as exc:
            raise DecryptionError("plaintext is not valid UTF-8") from exc
