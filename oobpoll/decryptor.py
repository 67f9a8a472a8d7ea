"""Two-stage unwrap of interaction payloads.

The server encrypts every interaction with AES-CFB under a fresh symmetric
key and wraps that key with the session's RSA public key (OAEP, SHA-256).
Each envelope is ``base64(iv[16] || ciphertext)``.
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import List, Union

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import DecryptionFailed
from .keys import KeyExchangeManager, KeyPair, oaep
from .models import PollResult

logger = logging.getLogger(__name__)

IV_SIZE = 16


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionFailed(f"{what} is not valid base64") from e


class MessageDecryptor:
    def __init__(self, keys: KeyExchangeManager):
        self.keys = keys

    def unwrap_key(self, wrapped_aes_key: str, key_pair: KeyPair) -> bytes:
        return self.keys.decrypt(key_pair, _b64decode(wrapped_aes_key, "wrapped AES key"))

    def decrypt(self, wrapped_aes_key: str, envelope: str, key_pair: KeyPair) -> str:
        return self.open(self.unwrap_key(wrapped_aes_key, key_pair), envelope)

    def open(self, aes_key: bytes, envelope: str) -> str:
        """Decrypt one envelope with an already unwrapped AES key."""
        raw = _b64decode(envelope, "envelope")
        if len(raw) < IV_SIZE:
            raise DecryptionFailed(f"envelope too short ({len(raw)} bytes)")
        iv, ciphertext = raw[:IV_SIZE], raw[IV_SIZE:]
        try:
            decryptor = Cipher(algorithms.AES(aes_key), modes.CFB(iv)).decryptor()
            plaintext = decryptor.update(ciphertext) + decryptor.finalize()
        except ValueError as e:
            raise DecryptionFailed(f"AES-CFB decryption failed: {e}") from e
        try:
            text = plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailed("plaintext is not valid UTF-8") from e
        if not text:
            raise DecryptionFailed("decryption produced an empty message")
        return text

    def decrypt_batch(self, result: PollResult, key_pair: KeyPair) -> List[Union[str, DecryptionFailed]]:
        """Decrypt every envelope of a poll result, in server order.

        A failing record yields a DecryptionFailed in its slot instead of
        aborting the batch. If the AES key cannot be unwrapped, every slot
        carries that error.
        """
        if not result.data:
            return []
        if not result.aes_key:
            err = DecryptionFailed("poll result carries no aes_key")
            return [err for _ in result.data]
        try:
            aes_key = self.unwrap_key(result.aes_key, key_pair)
        except DecryptionFailed as e:
            return [e for _ in result.data]
        out: List[Union[str, DecryptionFailed]] = []
        for envelope in result.data:
            try:
                out.append(self.open(aes_key, envelope))
            except DecryptionFailed as e:
                out.append(e)
        return out


def wrap_key(aes_key: bytes, public_key) -> str:
    """RSA-OAEP wrap ``aes_key`` the way the server does."""
    return base64.b64encode(public_key.encrypt(aes_key, oaep())).decode("ascii")


def seal(message: str, aes_key: bytes, iv: bytes | None = None) -> str:
    """Build a server-compatible envelope for ``message``."""
    iv = iv if iv is not None else os.urandom(IV_SIZE)
    if len(iv) != IV_SIZE:
        raise ValueError("IV must be 16 bytes")
    encryptor = Cipher(algorithms.AES(aes_key), modes.CFB(iv)).encryptor()
    ciphertext = encryptor.update(message.encode("utf-8")) + encryptor.finalize()
    return base64.b64encode(iv + ciphertext).decode("ascii")
