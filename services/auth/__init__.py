"""Credential sealing and owner token verification."""

from .credentials import CredentialCipher, CredentialDecryptError
from .security import decode_access_token, owner_id_from_token

__all__ = [
    "CredentialCipher",
    "CredentialDecryptError",
    "decode_access_token",
    "owner_id_from_token",
]
