"""
Encrypted deployment state.

Provisioning state and delegated role ARNs are stored AES-256-GCM encrypted
with a key derived per record: scrypt(master key, salt=record id). The
serialized form is "iv:tag:ciphertext", all hex.
"""
from typing import Optional
from functools import lru_cache
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from iac_engine.core.config import config
from iac_engine.core.errors import AppError
from iac_engine.services.store import InMemoryStore, get_store


logger = logging.getLogger(__name__)

IV_BYTES = 16
TAG_BYTES = 16
KEY_BYTES = 32


class StateEncryptionError(AppError):
    """A blob could not be encrypted or decrypted (wrong key, tampering, bad format)."""
    status_code = 500
    code = "STATE_ENCRYPTION_ERROR"


@lru_cache(maxsize=256)
def derive_key(master_key: str, salt: str) -> bytes:
    """32-byte key for one record, cached per (master key, salt)."""
    kdf = Scrypt(salt=salt.encode("utf-8"), length=KEY_BYTES, n=2 ** 14, r=8, p=1)
    return kdf.derive(master_key.encode("utf-8"))


def encrypt(plaintext: str, record_id: str, master_key: Optional[str] = None) -> str:
    key = derive_key(master_key or config.STATE_ENCRYPTION_KEY, record_id)
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt(blob: str, record_id: str, master_key: Optional[str] = None) -> str:
    """
    Reverse of encrypt().

    Raises:
        StateEncryptionError: On bad format, wrong key or a modified blob
    """
    parts = blob.split(":") if isinstance(blob, str) else []
    if len(parts) != 3:
        raise StateEncryptionError("Invalid encrypted data format: expected iv:tag:ciphertext")

    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as error:
        raise StateEncryptionError("Invalid encrypted data format: not hex") from error

    key = derive_key(master_key or config.STATE_ENCRYPTION_KEY, record_id)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except (InvalidTag, ValueError) as error:
        raise StateEncryptionError("Decryption failed") from error
    return plaintext.decode("utf-8")


class StateService:
    """Encrypted state blobs keyed by deployment ID."""

    def __init__(self, store: Optional[InMemoryStore] = None, master_key: Optional[str] = None):
        self.store = store or get_store()
        self.master_key = master_key or config.STATE_ENCRYPTION_KEY
        if not self.master_key:
            raise StateEncryptionError("STATE_ENCRYPTION_KEY is not configured")

    async def store_state(self, deployment_id: str, state_content: str) -> None:
        await self.store.put("states", deployment_id, encrypt(state_content, deployment_id, self.master_key))
        logger.info(f"Stored encrypted state for deployment {deployment_id}")

    async def retrieve_state(self, deployment_id: str) -> Optional[str]:
        """
        Decrypted state, or None if none is stored.

        Raises:
            StateEncryptionError: If the stored blob cannot be decrypted
        """
        blob = await self.store.get("states", deployment_id)
        if blob is None:
            return None
        try:
            return decrypt(blob, deployment_id, self.master_key)
        except StateEncryptionError:
            logger.error(f"Failed to decrypt state for deployment {deployment_id}")
            raise

    async def delete_state(self, deployment_id: str) -> None:
        await self.store.delete("states", deployment_id)

    def encrypt_role_arn(self, role_arn: str, record_id: str) -> str:
        return encrypt(role_arn, record_id, self.master_key)

    def decrypt_role_arn(self, blob: str, record_id: str) -> str:
        return decrypt(blob, record_id, self.master_key)
