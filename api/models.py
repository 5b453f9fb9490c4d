"""
API request and response models for Homeboard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Session, User
from auth.passwords import BCRYPT_MAX_BYTES

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class GroupEnum(str, Enum):
    admin = "admin"
    user = "user"
    guest = "guest"


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


def _check_bcrypt_length(value: str) -> str:
    # Measured in UTF-8 bytes, not characters.
    if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded")
    return value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)
    remember_me: bool = False

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, value):
        # Passwords are never stripped; whitespace in them is significant.
        return value.strip() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_bcrypt_length(value)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (admin only)."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=8)
    email: Optional[str] = Field(default=None, max_length=255)
    group_id: GroupEnum = GroupEnum.user

    @field_validator("username", "email", mode="before")
    @classmethod
    def strip_identity_fields(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_bcrypt_length(value)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    group_id: str
    expires_in: int


class LogoutResponse(BaseModel):
    """redirect_url is set when the proxy logout override is active."""

    model_config = ConfigDict(frozen=True)

    message: str = "Logged out."
    redirect_url: Optional[str] = None


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    email: Optional[str]
    group_id: str
    auth_method: str


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: Optional[str]
    group_id: str
    is_setup_admin: bool
    created_at: str
    last_login: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            group_id=user.group_id,
            is_setup_admin=user.is_setup_admin,
            created_at=user.created_at or "",
            last_login=user.last_login,
        )


class SessionResponse(BaseModel):
    """One row in GET /api/v1/auth/sessions.

    id is the token hash: safe to expose (it cannot be turned back into a
    cookie) and enough to revoke the session.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    created_at: float
    expires_at: float
    ip_address: Optional[str]
    user_agent: Optional[str]
    current: bool

    @classmethod
    def from_session(cls, session: Session, current_hash: Optional[str]) -> "SessionResponse":
        return cls(
            id=session.token_hash,
            created_at=session.created_at,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            current=session.token_hash == current_hash,
        )


# ---------------------------------------------------------------------------
# System -- auth configuration
# ---------------------------------------------------------------------------


class ProxyConfigModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    header_name: str
    email_header_name: str
    whitelist: str
    override_logout: bool
    logout_url: str


class SessionConfigModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    timeout: int
    remember_me: int


class AuthConfigResponse(BaseModel):
    """Response for GET/PATCH /api/v1/system/auth.

    warnings lists whitelist entries that failed to parse; they are stored
    as typed but never match any address.
    """

    model_config = ConfigDict(frozen=True)

    local_enabled: bool
    default_group: str
    proxy: ProxyConfigModel
    session: SessionConfigModel
    warnings: list[str] = Field(default_factory=list)


class ProxyConfigPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    enabled: Optional[bool] = None
    header_name: Optional[str] = Field(default=None, max_length=255)
    email_header_name: Optional[str] = Field(default=None, max_length=255)
    whitelist: Optional[str] = Field(default=None, max_length=4096)
    override_logout: Optional[bool] = None
    logout_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("logout_url")
    @classmethod
    def check_logout_url(cls, value: Optional[str]) -> Optional[str]:
        """Only absolute http(s) URLs or site-relative paths; no javascript: and friends."""
        if value and not value.startswith(("http://", "https://", "/")):
            raise ValueError("logout_url must be an http(s) URL or an absolute path")
        return value


class SessionConfigPatch(BaseModel):
    timeout: Optional[int] = Field(default=None, gt=0)
    remember_me: Optional[int] = Field(default=None, gt=0)


class AuthConfigPatch(BaseModel):
    """Request body for PATCH /api/v1/system/auth. Every section is optional."""

    local_enabled: Optional[bool] = None
    default_group: Optional[GroupEnum] = None
    proxy: Optional[ProxyConfigPatch] = None
    session: Optional[SessionConfigPatch] = None


# ---------------------------------------------------------------------------
# System -- migrations and health
# ---------------------------------------------------------------------------


class MigrationStepInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: int
    name: str


class MigrationStatusResponse(BaseModel):
    """Response for GET /api/v1/system/migrations."""

    model_config = ConfigDict(frozen=True)

    state: str
    current_version: int
    expected_version: int
    pending: list[MigrationStepInfo] = Field(default_factory=list)
    backups: list[str] = Field(default_factory=list)


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    schema_version: Optional[int] = None
    components: dict[str, str] = Field(default_factory=dict)
