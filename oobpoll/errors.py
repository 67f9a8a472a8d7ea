from __future__ import annotations


class OOBPollError(Exception):
    """Base class for every error raised by oobpoll."""


class CryptoUnavailable(OOBPollError):
    pass


class KeyGenerationFailed(OOBPollError):
    pass


class DecryptionFailed(OOBPollError):
    pass


class NotRegistered(OOBPollError):
    pass


class TransportError(OOBPollError):
    """Network-level failure, timeout or unexpected HTTP status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class DeregistrationFailed(TransportError):
    pass


class RegistrationFailed(OOBPollError):
    def __init__(self, status: int | None, message: str | None = None):
        super().__init__(message or f"registration rejected (status {status})")
        self.status = status


class InvalidState(OOBPollError):
    def __init__(self, current, attempted: str):
        name = getattr(current, "name", current)
        super().__init__(f"cannot {attempted} while {name}")
        self.current = current
        self.attempted = attempted
