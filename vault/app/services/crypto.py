"""
Note encryption.

Envelope format (encryption_version 1):
  key       = PBKDF2-HMAC-SHA256(passphrase, APP_SALT, 100_000 iterations), 32 bytes
  key_id    = first 16 hex chars of SHA-256(key)
  nonce     = 12 random bytes, fresh per encryption
  aad       = note ID (UTF-8), so a ciphertext cannot be moved to another note
  ciphertext = AES-256-GCM(key, nonce, payload_json, aad)
  checksum  = SHA-256(ciphertext), checked before any decryption attempt
  content_hash = SHA-256(plaintext content)

Key derivation is deterministic: the same passphrase always yields the same
key, and there is no key rotation.
"""

import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from vault.app.models.notes import EncryptedEnvelope
from vault.app.services.errors import DecryptionFailure, EncryptionFailure
from vault.app.services.hashing import sha256_hex, sha256_text

APP_SALT = b"clinical-note-vault/notes/v1"
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32
NONCE_LENGTH = 12
ENCRYPTION_VERSION = 1


def derive_key(passphrase: str) -> bytes:
    """Derive the store key from a passphrase and the fixed application salt."""
    if not passphrase:
        raise EncryptionFailure("Passphrase must not be empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=APP_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def compute_key_id(key: bytes) -> str:
    return sha256_hex(key)[:16]


class NoteCipher:
    """AES-256-GCM cipher bound to one derived key."""

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise EncryptionFailure("Invalid key length")
        self._aead = AESGCM(key)
        self.key_id = compute_key_id(key)

    @classmethod
    def from_passphrase(cls, passphrase: str) -> "NoteCipher":
        return cls(derive_key(passphrase))

    def encrypt_content(self, note_id: str, content: str) -> EncryptedEnvelope:
        """Encrypt note content under a fresh nonce."""
        payload = json.dumps({"content": content}, ensure_ascii=False).encode("utf-8")
        nonce = os.urandom(NONCE_LENGTH)
        try:
            ciphertext = self._aead.encrypt(nonce, payload, note_id.encode("utf-8"))
        except (ValueError, OverflowError) as e:
            raise EncryptionFailure(f"Cipher failure: {type(e).__name__}")

        return EncryptedEnvelope(
            ciphertext=ciphertext,
            nonce=nonce,
            checksum=sha256_hex(ciphertext),
            key_id=self.key_id,
            content_hash=sha256_text(content),
            encryption_version=ENCRYPTION_VERSION,
        )

    def decrypt_content(self, note_id: str, envelope: EncryptedEnvelope) -> str:
        """
        Verify and decrypt an envelope.

        Raises:
            DecryptionFailure: naming the failed check; never includes content
        """
        if envelope.encryption_version != ENCRYPTION_VERSION:
            raise DecryptionFailure("unsupported encryption version")
        if envelope.key_id != self.key_id:
            raise DecryptionFailure("key identifier mismatch")
        if sha256_hex(envelope.ciphertext) != envelope.checksum:
            raise DecryptionFailure("checksum mismatch")
        if len(envelope.nonce) != NONCE_LENGTH:
            raise DecryptionFailure("malformed nonce")

        try:
            payload = self._aead.decrypt(
                envelope.nonce, envelope.ciphertext, note_id.encode("utf-8")
            )
        except InvalidTag:
            raise DecryptionFailure("authentication tag mismatch")

        try:
            content = json.loads(payload.decode("utf-8"))["content"]
        except (UnicodeDecodeError, ValueError, KeyError, TypeError):
            raise DecryptionFailure("malformed payload")

        if sha256_text(content) != envelope.content_hash:
            raise DecryptionFailure("content hash mismatch")
        return content
