"""Encryption for project secrets and source-control tokens."""

from cryptography.fernet import Fernet, InvalidToken

from .config import get_settings

__all__ = ["InvalidToken", "decrypt_secret", "encrypt_secret", "generate_key"]


def _get_fernet(key: str | None = None) -> Fernet:
    key = key or get_settings().secrets_encryption_key
    if not key:
        raise RuntimeError("SECRETS_ENCRYPTION_KEY is not set")
    return Fernet(key.encode("utf-8"))


def generate_key() -> str:
    return Fernet.generate_key().decode("utf-8")


def encrypt_secret(plaintext: str, key: str | None = None) -> str:
    return _get_fernet(key).encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str, key: str | None = None) -> str:
    return _get_fernet(key).decrypt(ciphertext.encode("utf-8")).decode("utf-8")
