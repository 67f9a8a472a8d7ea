from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .errors import CryptoUnavailable, DecryptionFailed, KeyGenerationFailed

logger = logging.getLogger(__name__)

PEM_LINE_LENGTH = 64
PUBLIC_KEY_LABEL = "PUBLIC KEY"


def oaep() -> padding.OAEP:
    return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


def format_pem(b64: str, label: str) -> str:
    """Armor base64 text as PEM: 64-char lines, no newline after the footer."""
    lines = [b64[i:i + PEM_LINE_LENGTH] for i in range(0, len(b64), PEM_LINE_LENGTH)]
    return f"-----BEGIN {label}-----\n" + "\n".join(lines) + f"\n-----END {label}-----"


@dataclass(frozen=True)
class KeyPair:
    private_key: rsa.RSAPrivateKey = field(repr=False)
    public_key_der: bytes = field(repr=False)

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()


class KeyExchangeManager:
    """Owns the single RSA key pair of one session."""

    def __init__(self, key_size: int = 2048):
        self.key_size = key_size
        self.key_pair: KeyPair | None = None

    def generate(self) -> KeyPair:
        if self.key_pair is not None:
            raise KeyGenerationFailed("key pair already generated for this session")
        try:
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        except UnsupportedAlgorithm as e:
            raise CryptoUnavailable(str(e)) from e
        except (ValueError, TypeError) as e:
            raise KeyGenerationFailed(str(e)) from e
        self.key_pair = self._wrap(private_key)
        logger.debug("generated %d-bit RSA key pair", self.key_size)
        return self.key_pair

    def ensure(self) -> KeyPair:
        return self.key_pair if self.key_pair is not None else self.generate()

    def encode_public_key(self, key_pair: KeyPair | None = None) -> str:
        kp = key_pair or self.key_pair
        if kp is None:
            raise KeyGenerationFailed("no key pair to encode")
        return format_pem(base64.b64encode(kp.public_key_der).decode("ascii"), PUBLIC_KEY_LABEL)

    def decrypt(self, key_pair: KeyPair, ciphertext: bytes) -> bytes:
        try:
            return key_pair.private_key.decrypt(ciphertext, oaep())
        except (ValueError, TypeError) as e:
            raise DecryptionFailed("RSA-OAEP decryption failed") from e

    def load_private_key(self, pem: str) -> KeyPair:
        """Adopt a previously exported private key (session re-attachment)."""
        if self.key_pair is not None:
            raise KeyGenerationFailed("key pair already set for this session")
        try:
            private_key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
        except UnsupportedAlgorithm as e:
            raise CryptoUnavailable(str(e)) from e
        except (ValueError, TypeError) as e:
            raise KeyGenerationFailed(f"cannot load private key: {e}") from e
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise KeyGenerationFailed("session private key must be RSA")
        self.key_pair = self._wrap(private_key)
        return self.key_pair

    @staticmethod
    def export_private_key(key_pair: KeyPair) -> str:
        return key_pair.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")

    @staticmethod
    def _wrap(private_key: rsa.RSAPrivateKey) -> KeyPair:
        der = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return KeyPair(private_key=private_key, public_key_der=der)
