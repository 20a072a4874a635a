"""
Master-password key management and authenticated encryption of credentials.

A symmetric key is derived from the master password with PBKDF2-HMAC-SHA256
and held only in a KeySession object for the lifetime of the session.
Credentials are encrypted with AES-256-GCM; only the
{ciphertext, iv, salt} triple is ever persisted.

Usage:
    manager = KeyManager(salt=stored_salt)
    session = manager.set_master_password("correct horse battery")
    payload = manager.encrypt("sk-...")
    api_key = manager.decrypt(payload)
    manager.clear_master_password()  # zeroes the key
"""

import base64
import binascii
import logging
import os
import threading
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, Field

from mnemosyne.errors import CredentialError, DecryptionFailed

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
SALT_SIZE = 16
MIN_PASSWORD_LENGTH = 8
VERIFIER_PLAINTEXT = "mnemosyne-password-verifier"


class EncryptedPayload(BaseModel):
    """Base64-encoded AES-GCM ciphertext with its nonce and KDF salt."""

    ciphertext: str = Field(description="Ciphertext with appended GCM tag (base64)")
    iv: str = Field(description="12-byte GCM nonce (base64)")
    salt: str = Field(description="PBKDF2 salt the key was derived with (base64)")


class KeySession:
    """
    Derived key for one unlocked session.

    The key is kept in a mutable buffer so destroy() can zero it in place.
    Readers take a copy under the lock, so a concurrent destroy() either
    happens before the copy (the read fails) or after it (the read completes
    with the key that was valid when it started).
    """

    def __init__(self, key: bytes, salt: bytes) -> None:
        self._key = bytearray(key)
        self.salt = salt
        self._lock = threading.Lock()
        self._active = True

    @property
    def is_active(self) -> bool:
        return self._active

    def key_snapshot(self) -> bytes:
        """
        Copy of the derived key.

        Raises:
            CredentialError: If the session has been destroyed
        """
        with self._lock:
            if not self._active:
                raise CredentialError("Session is locked; set the master password first")
            return bytes(self._key)

    def destroy(self) -> None:
        """Zero the key and deactivate the session."""
        with self._lock:
            for i in range(len(self._key)):
                self._key[i] = 0
            self._active = False


class KeyManager:
    """
    Derives session keys and encrypts/decrypts provider credentials.

    The manager is an explicit object owned by the service that uses it;
    there is no module-level key cache.
    """

    def __init__(self, salt: Optional[bytes] = None, iterations: Optional[int] = None) -> None:
        """
        Initialize the manager.

        Args:
            salt: Persisted KDF salt (a new random salt is generated if None)
            iterations: PBKDF2 iterations (default from settings)
        """
        from mnemosyne.config import settings

        self.salt = salt or self.generate_salt()
        self.iterations = iterations or settings.kdf_iterations
        self._session: Optional[KeySession] = None
        self._lock = threading.Lock()

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(SALT_SIZE)

    @property
    def salt_b64(self) -> str:
        return base64.b64encode(self.salt).decode("ascii")

    @property
    def session(self) -> Optional[KeySession]:
        return self._session

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive a 256-bit key from a password with PBKDF2-HMAC-SHA256."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(password.encode("utf-8"))

    # ==========================================================================
    # Session lifecycle
    # ==========================================================================
    def set_master_password(self, password: str) -> KeySession:
        """
        Derive the session key from the master password.

        Any previous session is destroyed.

        Raises:
            CredentialError: If the password is shorter than 8 characters
        """
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise CredentialError(f"Master password must be at least {MIN_PASSWORD_LENGTH} characters")

        session = KeySession(self.derive_key(password, self.salt), self.salt)
        with self._lock:
            previous, self._session = self._session, session
        if previous is not None:
            previous.destroy()
        logger.info("Master password set for session")
        return session

    def has_master_password(self) -> bool:
        session = self._session
        return session is not None and session.is_active

    def clear_master_password(self) -> None:
        """Zero the in-memory key. decrypt() fails until the password is set again."""
        with self._lock:
            session, self._session = self._session, None
        if session is not None:
            session.destroy()
            logger.info("Master password cleared")

    # ==========================================================================
    # Encryption
    # ==========================================================================
    def encrypt(self, plaintext: str, session: Optional[KeySession] = None) -> EncryptedPayload:
        """
        Encrypt a string with AES-256-GCM under the session key.

        Raises:
            CredentialError: If no session is active
        """
        active = self._require_session(session)
        key = active.key_snapshot()
        iv = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedPayload(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            salt=base64.b64encode(active.salt).decode("ascii"),
        )

    def decrypt(self, payload: EncryptedPayload, session: Optional[KeySession] = None) -> str:
        """
        Decrypt and authenticate a payload.

        Raises:
            CredentialError: If no session is active
            DecryptionFailed: If the tag does not verify (wrong password or corrupted data)
        """
        active = self._require_session(session)
        key = active.key_snapshot()
        return self._decrypt_with_key(payload, key, active.salt)

    def _decrypt_with_key(self, payload: EncryptedPayload, key: bytes, salt: bytes) -> str:
        try:
            ciphertext = base64.b64decode(payload.ciphertext, validate=True)
            iv = base64.b64decode(payload.iv, validate=True)
            payload_salt = base64.b64decode(payload.salt, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailed("Encrypted payload is not valid base64") from e

        if payload_salt != salt:
            raise DecryptionFailed("Payload was encrypted under a different key salt")
        if len(iv) != NONCE_SIZE:
            raise DecryptionFailed("Encrypted payload has an invalid nonce")

        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
        except InvalidTag:
            raise DecryptionFailed("Decryption failed: wrong master password or corrupted data") from None

        return plaintext.decode("utf-8")

    def _require_session(self, session: Optional[KeySession]) -> KeySession:
        active = session or self._session
        if active is None or not active.is_active:
            raise CredentialError("Master password not set for this session")
        return active

    # ==========================================================================
    # Password verification and rotation
    # ==========================================================================
    def create_verifier(self, session: Optional[KeySession] = None) -> EncryptedPayload:
        """Encrypt a known value so a password can later be checked against it."""
        return self.encrypt(VERIFIER_PLAINTEXT, session)

    def verify_password(self, password: str, verifier: EncryptedPayload) -> bool:
        """Check a password against a stored verifier without changing the session."""
        try:
            salt = base64.b64decode(verifier.salt, validate=True)
        except (binascii.Error, ValueError):
            return False
        try:
            return self._decrypt_with_key(verifier, self.derive_key(password, salt), salt) == VERIFIER_PLAINTEXT
        except DecryptionFailed:
            return False

    def change_password(
        self,
        old_password: str,
        new_password: str,
        payloads: list[EncryptedPayload],
    ) -> list[EncryptedPayload]:
        """
        Re-encrypt payloads under a new password and a fresh salt.

        The new password becomes the active session.

        Raises:
            DecryptionFailed: If old_password does not decrypt every payload
            CredentialError: If new_password is too short
        """
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise CredentialError(f"Master password must be at least {MIN_PASSWORD_LENGTH} characters")

        old_session = KeySession(self.derive_key(old_password, self.salt), self.salt)
        try:
            plaintexts = [self.decrypt(payload, old_session) for payload in payloads]
        finally:
            old_session.destroy()

        self.salt = self.generate_salt()
        session = self.set_master_password(new_password)
        logger.info(f"Master password changed, re-encrypted {len(payloads)} credentials")
        return [self.encrypt(text, session) for text in plaintexts]


def sanitize_api_key(api_key: str) -> str:
    """Mask an API key for display, keeping the first and last four characters."""
    if not api_key:
        return ""
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}{'*' * min(len(api_key) - 8, 20)}{api_key[-4:]}"


def validate_api_key_format(backend: str, api_key: str) -> bool:
    """Cheap format check before a key is stored."""
    if not api_key:
        return False
    if backend == "anthropic":
        return api_key.startswith("sk-ant-") and len(api_key) > 20
    if backend == "openai":
        return api_key.startswith("sk-") and len(api_key) > 20
    return len(api_key) > 0
