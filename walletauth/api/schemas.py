from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from walletauth.service.claims import ConsentKind

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "nonce_mismatch",
        "invalid_signature",
        "forbidden",
        "not_found",
        "validation_error",
        "server_error",
    }
)

_ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"
# Upper bound on typed-data sections accepted from clients
MAX_TYPED_DATA_KEYS = 64


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class NonceRequest(BaseModel):
    address: str = Field(..., pattern=_ADDRESS_PATTERN)
    audience: str = Field(..., min_length=1, max_length=255)
    scope: List[str] = Field(default_factory=list, max_length=16)
    user_id: Optional[str] = Field(None, max_length=255)
    chain_id: Optional[int] = Field(None, gt=0)


class NonceResponse(BaseModel):
    nonce: str
    nonce_token: str
    expires_at: int


class TypedData(BaseModel):
    """EIP-712 payload exactly as the wallet signed it."""

    model_config = ConfigDict(populate_by_name=True)

    domain: Dict[str, Any]
    types: Dict[str, Any]
    primary_type: str = Field(..., alias="primaryType", min_length=1)
    message: Dict[str, Any]

    @field_validator("domain", "types", "message")
    @classmethod
    def _limit_size(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if len(value) > MAX_TYPED_DATA_KEYS:
            raise ValueError(f"typed data section exceeds {MAX_TYPED_DATA_KEYS} keys")
        return value


class VerifyRequest(BaseModel):
    address: str = Field(..., pattern=_ADDRESS_PATTERN)
    signature: str = Field(..., min_length=1, max_length=16384)
    nonce_token: str = Field(..., min_length=1, max_length=8192)
    typed_data: TypedData


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(None, max_length=8192)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    sid: str
    access_token_expires_at: int
    refresh_token_expires_at: int


class SessionResponse(BaseModel):
    sid: str
    aud: str
    created_at: datetime
    refresh_expires_at: datetime
    created_ip: Optional[str] = None
    created_user_agent: Optional[str] = None
    last_refresh_at: Optional[datetime] = None
    chain_id: Optional[int] = None
    current: bool = False


class MeResponse(BaseModel):
    sub: str
    aud: str
    user_id: str
    scope: List[str]
    sid: Optional[str] = None
    chain_id: Optional[int] = None
    consent: Optional[Dict[str, int]] = None
    exp: int


class ConsentRequest(BaseModel):
    kind: ConsentKind


class ConsentResponse(BaseModel):
    kind: str
    start_time: datetime
