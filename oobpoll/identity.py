from __future__ import annotations
import secrets
from yarl import URL
from .errors import NotRegistered

ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"

def random_id(length: int) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))

class CorrelationIdentity:
    """Correlation ID + secret key of one session, and the probe hosts derived from them."""

    def __init__(self, server_url: str, nonce_length: int = 13):
        self.server_url = server_url
        self.nonce_length = nonce_length
        self.correlation_id: str | None = None
        self.secret_key: str | None = None

    @property
    def host(self) -> str:
        return URL(self.server_url).host or ""

    def generate(self, id_length: int = 20, secret_length: int = 32) -> tuple[str, str]:
        self.correlation_id = random_id(id_length)
        self.secret_key = random_id(secret_length)
        return self.correlation_id, self.secret_key

    def adopt(self, correlation_id: str, secret_key: str) -> None:
        self.correlation_id, self.secret_key = correlation_id, secret_key

    def derive_url(self, nonce_length: int | None = None) -> str:
        if not self.correlation_id:
            raise NotRegistered("no correlation id yet")
        nonce = random_id(nonce_length or self.nonce_length)
        return f"{self.correlation_id}{nonce}.{self.host}"

    def probe_url(self, nonce_length: int | None = None, scheme: str = "http") -> str:
        return str(URL.build(scheme=scheme, host=self.derive_url(nonce_length)))

    def matches(self, full_id: str | None) -> bool:
        return bool(self.correlation_id and full_id and full_id.lower().startswith(self.correlation_id))
