from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sessionkeeper.logging import get_correlation_id

# Stable error codes clients may branch on
_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "token_expired",
    "token_not_found",
    "reuse_detected",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "store_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

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
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(None, min_length=1, max_length=4096)


class TokenResponse(BaseModel):
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "bearer"


class SessionResponse(BaseModel):
    """Public view of a session; never includes the token value."""

    id: str
    kind: str
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    remember_me: bool = False
    issued_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
    next_cursor: Optional[str] = None


class RevokeAllResponse(BaseModel):
    revoked: int
