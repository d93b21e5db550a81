"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Legacy export records are the one exception: their shape belongs to the
external tool that produced them and is parsed by the import adapter.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Provider(str, Enum):
    """OAuth provider variants; each maps to one refresh protocol."""

    KIRO_IDC = "kiro_idc"
    KIRO_SOCIAL = "kiro_social"
    QWEN = "qwen"

    @property
    def requires_client_credentials(self) -> bool:
        """Whether refresh needs a per-account OIDC client id/secret."""
        return self is Provider.KIRO_IDC


class AccountStatus(str, Enum):
    """Administrative account status."""

    ACTIVE = "active"
    DISABLED = "disabled"


# ============================================================================
# Import Models
# ============================================================================


class QwenCredential(BaseModel):
    """Credential file exported by QwenCli."""

    model_config = ConfigDict(extra="ignore")

    type: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    email: str | None = None
    resource_url: str | None = None
    expired: str | None = None
    last_refresh: str | None = None


class QwenImportRequest(BaseModel):
    """POST /api/qwen/accounts/import request body."""

    is_shared: bool = False
    credential: QwenCredential | None = None
    credential_json: str | None = Field(
        None, description="Raw QwenCli export, used when credential is not supplied"
    )
    account_name: str | None = Field(None, max_length=255)


class KiroImportRequest(BaseModel):
    """POST /api/kiro/accounts/import request body."""

    is_shared: bool = False
    accounts: list[dict[str, Any]] = Field(
        ..., description="Records exported by the Kiro account manager"
    )


class ImportSummaryResponse(BaseModel):
    """Outcome counts of a bulk import."""

    imported: int = 0
    skipped: int = 0
    failed: int = 0
    filtered: int = 0
    total: int = 0


# ============================================================================
# Account Mutation Models
# ============================================================================


class UpdateStatusRequest(BaseModel):
    """PUT /api/accounts/{account_id}/status request body."""

    status: AccountStatus


class UpdateNameRequest(BaseModel):
    """PUT /api/accounts/{account_id}/name request body."""

    account_name: str = Field(..., min_length=1, max_length=255)

    @field_validator("account_name")
    @classmethod
    def validate_account_name(cls, v: str) -> str:
        """Reject whitespace-only names."""
        v = v.strip()
        if not v:
            raise ValueError("account_name cannot be blank")
        return v


class UpdateRefreshTokenRequest(BaseModel):
    """PUT /api/accounts/{account_id}/refresh-token request body."""

    refresh_token: str = Field(..., min_length=1)

    @field_validator("refresh_token")
    @classmethod
    def validate_refresh_token(cls, v: str) -> str:
        """Reject whitespace-only tokens."""
        v = v.strip()
        if not v:
            raise ValueError("refresh_token cannot be blank")
        return v


class SelectAccountRequest(BaseModel):
    """POST /api/accounts/select request body."""

    provider: Provider
    shared_only: bool = False


# ============================================================================
# Account Response Models
# ============================================================================


class UsageResponse(BaseModel):
    """Advisory quota information."""

    subscription: str = "unknown"
    current_usage: float = 0
    usage_limit: float = 0
    reset_date: str | None = None
    free_trial_status: bool | None = None
    free_trial_usage: float | None = None
    free_trial_limit: float | None = None
    free_trial_expiry: str | None = None


class AccountResponse(BaseModel):
    """Sanitized account view. Never carries tokens or client secrets."""

    account_id: str
    user_id: str | None
    provider: Provider
    account_name: str
    is_shared: bool
    status: AccountStatus
    need_refresh: bool
    expires_at: int | None
    email: str | None
    resource_url: str | None
    region: str | None
    usage: UsageResponse
    last_refresh: str | None
    last_used_at: str | None
    created_at: str
    updated_at: str


class AccountEnvelope(BaseModel):
    """Single-account response wrapper."""

    success: Literal[True] = True
    message: str | None = None
    data: AccountResponse


class AccountListEnvelope(BaseModel):
    """Account list response wrapper."""

    success: Literal[True] = True
    data: list[AccountResponse]


class ImportSummaryEnvelope(BaseModel):
    """Bulk import response wrapper."""

    success: Literal[True] = True
    data: ImportSummaryResponse


class MessageResponse(BaseModel):
    """Plain acknowledgement."""

    success: Literal[True] = True
    message: str


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str


# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Error body returned for every mapped pool error."""

    error: str
    existing_account_id: str | None = None
