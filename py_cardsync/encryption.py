"""Symmetric encryption for CardDAV passwords stored at rest."""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


def _derive_key(secret_key: str) -> bytes:
    """Derive a Fernet key from the application secret using SHA-256."""
    digest = hashlib.sha256(secret_key.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_password(plain_password: str, secret_key: str) -> str:
    """Encrypt a password and return the ciphertext as a URL-safe string."""
    f = Fernet(_derive_key(secret_key))
    return f.encrypt(plain_password.encode()).decode()


def decrypt_password(encrypted_password: str, secret_key: str) -> str:
    """Decrypt a stored password. Raises ValueError on failure."""
    f = Fernet(_derive_key(secret_key))
    try:
        return f.decrypt(encrypted_password.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Invalid encrypted password") from exc
