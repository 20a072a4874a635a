"""
Credential protection: master-password key derivation and authenticated encryption.
"""

from mnemosyne.security.key_manager import EncryptedPayload, KeyManager, KeySession

__all__ = ["EncryptedPayload", "KeyManager", "KeySession"]
