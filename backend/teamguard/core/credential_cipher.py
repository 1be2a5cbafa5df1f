"""Encryption of integration secrets at rest."""

import base64
import hashlib
import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from teamguard.config import get_settings
from teamguard.core.errors import CredentialError


class CredentialCipher:
    """Fernet encryption keyed from CREDENTIAL_ENCRYPTION_KEY.

    Any string is accepted as key material; it is stretched to the 32
    bytes Fernet needs with SHA-256.
    """

    def __init__(self, key_material: str | None = None):
        if key_material is None:
            key_material = get_settings().credential_encryption_key
        if not key_material:
            raise CredentialError("Credential encryption key is not configured")
        key_bytes = hashlib.sha256(key_material.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, plaintext: str | None) -> str | None:
        if plaintext is None:
            return None
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str | None) -> str | None:
        if ciphertext is None:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            # Key rotated or row tampered with; never echo the ciphertext
            raise CredentialError("Stored credential could not be decrypted") from e

    def encrypt_json(self, data: dict[str, Any] | None) -> str | None:
        if data is None:
            return None
        return self.encrypt(json.dumps(data))

    def decrypt_json(self, ciphertext: str | None) -> dict[str, Any] | None:
        plaintext = self.decrypt(ciphertext)
        if plaintext is None:
            return None
        return json.loads(plaintext)
