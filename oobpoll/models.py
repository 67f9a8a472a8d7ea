from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionState(enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    CLOSED = "closed"


@dataclass
class HTTPResponse:
    status: int
    body: str = ""

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


class SessionInfo(BaseModel):
    """Everything needed to re-attach to a registered session.

    ``private_key_pem`` is only filled in when explicitly requested, so a
    snapshot can be handed around without leaking key material.
    """

    model_config = ConfigDict(frozen=True)

    server_url: str
    token: str
    correlation_id: str
    secret_key: str
    public_key_pem: str
    private_key_pem: Optional[str] = Field(default=None, repr=False)


class PollResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[str] = Field(default_factory=list)
    aes_key: Optional[str] = None
    extra: List[str] = Field(default_factory=list)
    tld_data: List[str] = Field(default_factory=list)

    @field_validator("data", "extra", "tld_data", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return [] if v is None else v


class Interaction(BaseModel):
    """One decoded out-of-band hit. Unknown keys are kept as extra fields."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    protocol: Optional[str] = None
    unique_id: Optional[str] = Field(default=None, alias="unique-id")
    full_id: Optional[str] = Field(default=None, alias="full-id")
    q_type: Optional[str] = Field(default=None, alias="q-type")
    raw_request: Optional[str] = Field(default=None, alias="raw-request")
    raw_response: Optional[str] = Field(default=None, alias="raw-response")
    remote_address: Optional[str] = Field(default=None, alias="remote-address")
    timestamp: Optional[str] = None

    @classmethod
    def from_text(cls, text: str) -> "Interaction":
        return cls.model_validate(json.loads(text))
