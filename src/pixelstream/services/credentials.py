"""Owner credential resolution for upstream generation calls.

Stored API keys are AES-256-GCM encrypted with ENCRYPTION_KEY (64 hex chars).
The stored value is base64 of ``iv (12 bytes) | ciphertext | tag (16 bytes)``,
which is exactly what AESGCM.encrypt() produces after the IV.
"""

import base64
import binascii
import os

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from pixelstream.repositories.user_account import UserAccountRepository
from pixelstream.services.exceptions import CredentialError

logger = structlog.get_logger(__name__)

IV_LENGTH = 12
AUTH_TAG_LENGTH = 16

MISSING_KEY_MESSAGE = "No generation API key configured. Please add your API key in settings."
DECRYPT_FAILED_MESSAGE = "Failed to decrypt API key. Please re-enter your API key in settings."


def _load_key(encryption_key: str) -> bytes:
    if len(encryption_key) != 64:
        raise CredentialError("ENCRYPTION_KEY must be exactly 64 hex characters (32 bytes)")
    try:
        return bytes.fromhex(encryption_key)
    except ValueError as e:
        raise CredentialError("ENCRYPTION_KEY must be hex encoded") from e


def encrypt_api_key(plaintext: str, encryption_key: str) -> str:
    """Encrypt an API key for storage.

    Args:
        plaintext: API key to encrypt
        encryption_key: 64 hex character AES-256 key

    Returns:
        Base64 string of iv | ciphertext | tag
    """
    key = _load_key(encryption_key)
    iv = os.urandom(IV_LENGTH)
    encrypted = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(iv + encrypted).decode("ascii")


def decrypt_api_key(ciphertext: str, encryption_key: str) -> str:
    """Decrypt a stored API key.

    Args:
        ciphertext: Base64 string of iv | ciphertext | tag
        encryption_key: 64 hex character AES-256 key

    Returns:
        Plaintext API key

    Raises:
        CredentialError: If the key is malformed or the payload fails authentication
    """
    key = _load_key(encryption_key)
    try:
        combined = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CredentialError("Encrypted API key is not valid base64") from e

    if len(combined) < IV_LENGTH + AUTH_TAG_LENGTH:
        raise CredentialError("Encrypted API key is too short")

    iv, encrypted = combined[:IV_LENGTH], combined[IV_LENGTH:]
    try:
        return AESGCM(key).decrypt(iv, encrypted, None).decode("utf-8")
    except (InvalidTag, UnicodeDecodeError) as e:
        raise CredentialError("Encrypted API key failed authentication") from e


async def resolve_api_key(
    accounts: UserAccountRepository, owner_id: str, encryption_key: str
) -> str:
    """Look up and decrypt the owner's upstream API key.

    Raises:
        CredentialError: With a user-facing message when the key is missing or undecryptable
    """
    account = await accounts.get_by_owner(owner_id)
    if account is None or not account.encrypted_api_key:
        raise CredentialError(MISSING_KEY_MESSAGE)

    try:
        return decrypt_api_key(account.encrypted_api_key, encryption_key)
    except CredentialError as e:
        logger.error("credentials.decrypt_failed", owner_id=owner_id, error=str(e))
        raise CredentialError(DECRYPT_FAILED_MESSAGE) from e
