from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "not_found",
    "conflict",
    "quota_exceeded",
    "storage_unavailable",
    "configuration_error",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class PreferencesUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    model_config = ConfigDict(extra="forbid")

    google_simple_api_key: Optional[str] = None
    enketo_api_url: Optional[str] = None
    enketo_api_token: Optional[str] = None
    skip_malformed_submissions: Optional[bool] = None
    faster_watchdog_cycle_enabled: Optional[bool] = None
    faster_background_actions_disabled: Optional[bool] = None


class RegisteredUserResponse(BaseModel):
    uri: str
    username: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    display_name: Optional[str] = None
    is_removed: bool = False
    last_update_date: Optional[datetime] = None

    @classmethod
    def from_row(cls, user) -> "RegisteredUserResponse":
        return cls(
            uri=user.uri,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            display_name=user.display_name,
            is_removed=user.is_removed,
            last_update_date=user.last_update_date,
        )


class RegisteredUserList(BaseModel):
    items: List[RegisteredUserResponse]


class IdentityAssertionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: Optional[str] = Field(default=None, max_length=80)
    email: Optional[str] = None
    full_name: Optional[str] = None

    @model_validator(mode="after")
    def _require_key(self) -> "IdentityAssertionRequest":
        if not self.username and not self.email:
            raise ValueError("username or email is required")
        return self


class BootstrapResponse(BaseModel):
    super_users: List[RegisteredUserResponse]
    last_super_user_revision: Optional[datetime] = None
