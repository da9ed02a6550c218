"""
auth/crypto.py -- SecretCipher: encryption at rest for third-party api keys.

Security design decisions:
  Cipher: AES-256-CBC with PKCS7 padding via the cryptography package. A
       fresh 128-bit IV from secrets.token_bytes() is generated per call, so
       encrypting the same plaintext twice yields different ciphertexts. The IV
       is not secret; it is stored next to the ciphertext (hex encoded).

  Integrity: CBC alone cannot detect a ciphertext paired with the wrong IV --
       only the first block is garbled and the padding check still passes.
       Every ciphertext therefore carries an HMAC-SHA256 tag over iv || ct
       (encrypt-then-MAC). Decrypt verifies the tag before touching the
       cipher, so a mixed-up (ciphertext, iv) pair fails loudly.

  Keys: ENCRYPTION_KEY (exactly 32 bytes) is the input keying material. HKDF
       expands it into independent 32-byte encryption and MAC keys so the
       same bytes are never used for two purposes.

  Failure: every decrypt problem (bad encoding, bad tag, bad padding, invalid
       UTF-8, empty result) raises DecryptionError. Nothing is retried and no
       partial plaintext is returned.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from core.config import ENCRYPTION_KEY_LENGTH
from core.errors import ConfigurationError, DecryptionError, InputValidationError

logger = logging.getLogger("anirec.auth.crypto")

_IV_BYTES = 16
_TAG_BYTES = 32
_BLOCK_BITS = algorithms.AES.block_size  # 128
_HKDF_INFO = b"anirec secret cipher v1"


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: str  # base64(ct || hmac tag)
    iv: str  # hex


class SecretCipher:
    """Encrypt and decrypt small secrets with one process-wide key.

    Usage:
        cipher = SecretCipher(settings.encryption_key)
        sealed = cipher.encrypt("anilist-token")
        cipher.decrypt(sealed)  # -> "anilist-token"
    """

    def __init__(self, key: str) -> None:
        key_bytes = key.encode("utf-8")
        if len(key_bytes) != ENCRYPTION_KEY_LENGTH:
            raise ConfigurationError(f"Encryption key must be exactly {ENCRYPTION_KEY_LENGTH} characters")
        material = HKDF(
            algorithm=hashes.SHA256(),
            length=64,
            salt=None,
            info=_HKDF_INFO,
        ).derive(key_bytes)
        self._enc_key = material[:32]
        self._mac_key = material[32:]

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        if not plaintext:
            raise InputValidationError("Secret cannot be empty", fields=["api_key"])

        iv = secrets.token_bytes(_IV_BYTES)
        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(iv)).encryptor()
        ct = encryptor.update(padded) + encryptor.finalize()

        tag = self._tag(iv, ct)
        return EncryptedSecret(
            ciphertext=base64.b64encode(ct + tag).decode("ascii"),
            iv=iv.hex(),
        )

    def decrypt(self, sealed: EncryptedSecret) -> str:
        try:
            raw = base64.b64decode(sealed.ciphertext, validate=True)
            iv = bytes.fromhex(sealed.iv)
        except (binascii.Error, ValueError) as exc:
            logger.error("Decryption error: stored secret is not valid base64/hex")
            raise DecryptionError("Failed to decrypt data") from exc

        if len(iv) != _IV_BYTES or len(raw) < _TAG_BYTES + _IV_BYTES or (len(raw) - _TAG_BYTES) % _IV_BYTES:
            logger.error("Decryption error: stored secret has an invalid length")
            raise DecryptionError("Failed to decrypt data")

        ct, tag = raw[:-_TAG_BYTES], raw[-_TAG_BYTES:]
        if not hmac.compare_digest(tag, self._tag(iv, ct)):
            logger.error("Decryption error: authentication tag mismatch")
            raise DecryptionError("Failed to decrypt data")

        decryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ct) + decryptor.finalize()
        try:
            unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
            plaintext = (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            logger.error("Decryption error: invalid padding or encoding")
            raise DecryptionError("Failed to decrypt data") from exc

        if not plaintext:
            raise DecryptionError("Decryption failed - invalid encrypted data")
        return plaintext

    def _tag(self, iv: bytes, ct: bytes) -> bytes:
        return hmac.new(self._mac_key, iv + ct, hashlib.sha256).digest()
