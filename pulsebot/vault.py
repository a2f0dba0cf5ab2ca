from __future__ import annotations

import os
import secrets
from typing import Union

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from pulsebot.errors import DecryptionError

KEY_BYTES = 32
IV_BYTES = 16


def derive_key(secret: str) -> bytes:
    """Space-pad or truncate the secret's UTF-8 bytes to the AES-256 key length."""
    raw = str(secret).encode("utf-8")
    return raw.ljust(KEY_BYTES, b" ")[:KEY_BYTES]


class TokenVault:
    """AES-256-CBC envelope encryption for bot credentials at rest.

    Envelope format is ``<iv hex>:<ciphertext hex>`` with a fresh random IV per
    encryption and PKCS7 padding.
    """

    def __init__(self, secret: str) -> None:
        self._key = derive_key(secret)

    def encrypt(self, plaintext: Union[str, bytes]) -> str:
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        iv = os.urandom(IV_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(data) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ct = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ct.hex()}"

    def decrypt_bytes(self, envelope: str) -> bytes:
        parts = str(envelope or "").split(":")
        if len(parts) != 2:
            raise DecryptionError("malformed envelope")
        try:
            iv = bytes.fromhex(parts[0])
            ct = bytes.fromhex(parts[1])
        except ValueError as exc:
            raise DecryptionError("malformed envelope") from exc
        if len(iv) != IV_BYTES or not ct or len(ct) % IV_BYTES:
            raise DecryptionError("malformed envelope")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ct) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise DecryptionError("bad padding (wrong key or corrupt ciphertext)") from exc

    def decrypt(self, envelope: str) -> str:
        data = self.decrypt_bytes(envelope)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("plaintext is not valid UTF-8 (wrong key?)") from exc

    def generate_bot_token(self) -> str:
        # Stand-in for registering a bot application with the chat platform.
        return self.encrypt(f"Bot.{secrets.token_hex(16)}")
