"""
API key encryption, fingerprinting and masking using Fernet symmetric encryption.
"""

import base64
import hashlib

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings


def _get_fernet() -> Fernet:
    """Get Fernet instance from encryption key."""
    key = settings.ENCRYPTION_KEY

    # If key is not 32 bytes, derive a key using PBKDF2
    if len(key) != 32:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"genova_gateway_salt",
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(key.encode()))
    else:
        key = base64.urlsafe_b64encode(key.encode())

    return Fernet(key)


def encrypt_secret(secret: str) -> str:
    """
    Encrypt an upstream API key for storage.

    Args:
        secret: Plain text key

    Returns:
        Base64-encoded encrypted key
    """
    fernet = _get_fernet()
    return fernet.encrypt(secret.encode()).decode()


def decrypt_secret(encrypted_secret: str) -> str:
    """Decrypt a stored upstream API key."""
    fernet = _get_fernet()
    return fernet.decrypt(encrypted_secret.encode()).decode()


def fingerprint_secret(secret: str) -> str:
    """Stable digest used for duplicate detection (Fernet output is randomized)."""
    return hashlib.sha256(secret.encode()).hexdigest()
