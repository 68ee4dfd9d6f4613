"""
Symmetric encryption for stored broker credentials.

Blobs are ``iv_hex:tag_hex:ciphertext_hex`` produced by AES-256-GCM with a
16-byte IV and a key derived from the configured secret with scrypt
(N=16384, r=8, p=1).
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from core.config.settings import CredentialSettings
from core.utils.exceptions import ConfigurationError, CopyTraderException

KEY_LEN = 32
IV_LEN = 16
TAG_LEN = 16
MIN_SECRET_LEN = 32


class CredentialDecryptError(CopyTraderException):
    """Stored blob is malformed or was sealed with a different key"""
    pass


class CredentialCipher:
    def __init__(self, settings: CredentialSettings):
        self._secret = settings.encryption_secret
        self._salt = settings.salt.encode("utf-8")
        self._key: bytes | None = None

    def _get_key(self) -> bytes:
        if self._key is None:
            if len(self._secret) < MIN_SECRET_LEN:
                raise ConfigurationError(
                    f"Encryption secret must be at least {MIN_SECRET_LEN} characters",
                    config_field="credentials.encryption_secret",
                )
            kdf = Scrypt(salt=self._salt, length=KEY_LEN, n=2 ** 14, r=8, p=1)
            self._key = kdf.derive(self._secret.encode("utf-8"))
        return self._key

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LEN)
        sealed = AESGCM(self._get_key()).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LEN], sealed[-TAG_LEN:]
        return ":".join((iv.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, blob: str) -> str:
        try:
            iv_hex, tag_hex, data_hex = blob.split(":")
            iv, tag, data = bytes.fromhex(iv_hex), bytes.fromhex(tag_hex), bytes.fromhex(data_hex)
        except ValueError as e:
            raise CredentialDecryptError("Malformed credential blob") from e
        if len(iv) != IV_LEN or len(tag) != TAG_LEN:
            raise CredentialDecryptError("Malformed credential blob")
        try:
            plaintext = AESGCM(self._get_key()).decrypt(iv, data + tag, None)
        except InvalidTag as e:
            raise CredentialDecryptError("Credential blob failed authentication") from e
        return plaintext.decode("utf-8")
