"""Encryption of source secrets at rest.

Secrets (VulnDB consumer secret, NVD API key, OSS Index token) are stored as
Fernet tokens and decrypted once per run by the dispatch gate.

Provides:
- SecretDecryptionError: Raised when a secret cannot be decrypted
- generate_key: Create a new Fernet key
- encrypt_secret / decrypt_secret: Round-trip a secret with a key
"""

from cryptography.fernet import Fernet, InvalidToken


class SecretDecryptionError(Exception):
    """Raised when a stored secret cannot be decrypted with the configured key."""


def generate_key() -> str:
    """Generate a new url-safe base64 Fernet key."""
    return Fernet.generate_key().decode("ascii")


def _fernet(key: str) -> Fernet:
    if not key:
        raise SecretDecryptionError("No secret key configured (VULNSYNC_SECRET_KEY)")
    try:
        return Fernet(key.encode("ascii"))
    except (ValueError, TypeError) as e:
        raise SecretDecryptionError(f"Invalid secret key: {e}") from e


def encrypt_secret(plaintext: str, key: str) -> str:
    """Encrypt a secret for storage.

    Args:
        plaintext: Secret value
        key: Fernet key

    Returns:
        Fernet token as a string
    """
    return _fernet(key).encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str, key: str) -> str:
    """Decrypt a stored secret.

    Args:
        token: Fernet token produced by encrypt_secret()
        key: Fernet key

    Returns:
        Plain text secret

    Raises:
        SecretDecryptionError: If the key is missing/invalid or the token does
            not decrypt with it
    """
    try:
        return _fernet(key).decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as e:
        raise SecretDecryptionError("Secret could not be decrypted with the configured key") from e
