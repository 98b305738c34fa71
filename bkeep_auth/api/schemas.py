from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAX_NAME_LENGTH = 255

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class FieldError(BaseModel):
    field: str
    message: str


class Envelope(BaseModel):
    """Uniform body for every JSON response."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    success: bool
    status_code: int
    message: str
    data: Optional[Any] = None
    errors: Optional[List[FieldError]] = None

    @classmethod
    def ok(cls, message: str, data: Any = None, status_code: int = 200) -> dict:
        return cls(success=True, status_code=status_code, message=message, data=data).model_dump(
            by_alias=True, exclude={"errors"}
        )

    @classmethod
    def fail(
        cls, status_code: int, message: str, errors: Optional[List[dict]] = None
    ) -> dict:
        body = cls(
            success=False,
            status_code=status_code,
            message=message,
            errors=[FieldError(**e) for e in errors] if errors else None,
        )
        return body.model_dump(by_alias=True, exclude={"data"}, exclude_none=True)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EmailBody(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(EmailBody):
    password: str = Field(..., min_length=1, max_length=128)


class MfaVerifyRequest(EmailBody):
    code: str = Field(..., min_length=6, max_length=6)


class TotpLoginRequest(EmailBody):
    code: str = Field(..., min_length=6, max_length=16)
    is_backup_code: bool = False


class TotpVerifyRequest(CamelModel):
    code: str = Field(..., min_length=6, max_length=6)


class ForgotPasswordRequest(EmailBody):
    pass


class ResetPasswordRequest(EmailBody):
    token: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RefreshRequest(CamelModel):
    refresh_token: Optional[str] = None


class UpdateProfileRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)


class PasskeyRegisterVerifyRequest(CamelModel):
    credential: dict
    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)


class PasskeyLoginOptionsRequest(CamelModel):
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None


class PasskeyLoginVerifyRequest(CamelModel):
    credential: dict


class PasskeyRenameRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)


class CreateInvitationRequest(EmailBody):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    role_id: str = Field(..., min_length=1)


class InvitationTokenRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=256)


class AcceptInvitationRequest(InvitationTokenRequest):
    password: Optional[str] = None

    @field_validator("password")
    @classmethod
    def _password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value else None


class CreateTenantRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    schema_name: str = Field(..., min_length=1, max_length=63)


class UpdateUserRolesRequest(CamelModel):
    role_ids: List[str] = Field(..., min_length=1)
