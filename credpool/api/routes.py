"""
API Routes - FastAPI endpoints for credential pool operations.

Pool errors propagate to the PoolError handler registered in main,
which renders them as ErrorResponse bodies.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from credpool.api.dependencies import get_actor, get_importer, get_pool_manager, require_admin
from credpool.db.session import get_db
from credpool.models.api import (
    AccountEnvelope,
    AccountListEnvelope,
    AccountResponse,
    HealthResponse,
    ImportSummaryEnvelope,
    ImportSummaryResponse,
    KiroImportRequest,
    MessageResponse,
    Provider,
    QwenImportRequest,
    SelectAccountRequest,
    UpdateNameRequest,
    UpdateRefreshTokenRequest,
    UpdateStatusRequest,
    UsageResponse,
)
from credpool.models.domain import AccountData, Actor
from credpool.services.legacy_import import (
    LegacyImporter,
    parse_qwen_credential,
    qwen_registration_from_export,
)
from credpool.services.pool_manager import CredentialPoolManager

router = APIRouter()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def account_response(account: AccountData) -> AccountResponse:
    """Sanitized view of an account. Tokens and client secrets are never included."""
    usage = account.usage
    return AccountResponse(
        account_id=account.account_id,
        user_id=account.owner_user_id,
        provider=account.provider,
        account_name=account.account_name,
        is_shared=account.is_shared,
        status=account.status,
        need_refresh=account.need_refresh,
        expires_at=account.expires_at,
        email=account.identity.email,
        resource_url=account.resource_url,
        region=account.region,
        usage=UsageResponse(
            subscription=usage.subscription,
            current_usage=usage.current_usage,
            usage_limit=usage.usage_limit,
            reset_date=_iso(usage.reset_date),
            free_trial_status=usage.free_trial_status,
            free_trial_usage=usage.free_trial_usage,
            free_trial_limit=usage.free_trial_limit,
            free_trial_expiry=_iso(usage.free_trial_expiry),
        ),
        last_refresh=_iso(account.last_refresh),
        last_used_at=_iso(account.last_used_at),
        created_at=account.created_at.isoformat(),
        updated_at=account.updated_at.isoformat(),
    )


# =============================================================================
# Import
# =============================================================================


@router.post("/api/qwen/accounts/import", response_model=AccountEnvelope)
async def import_qwen_account(
    request: QwenImportRequest,
    actor: Actor = Depends(get_actor),
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> AccountEnvelope:
    """
    Import one credential file exported by QwenCli.

    Body carries either the parsed `credential` object or the raw
    `credential_json` text.
    """
    credential = parse_qwen_credential(request.credential, request.credential_json)
    registration = qwen_registration_from_export(
        credential, account_name=request.account_name, is_shared=request.is_shared
    )
    account = await manager.register(registration, actor.user_id)
    return AccountEnvelope(message="Qwen account imported", data=account_response(account))


@router.post("/api/kiro/accounts/import", response_model=ImportSummaryEnvelope)
async def import_kiro_accounts(
    request: KiroImportRequest,
    actor: Actor = Depends(get_actor),
    importer: LegacyImporter = Depends(get_importer),
) -> ImportSummaryEnvelope:
    """
    Bulk import records exported by the Kiro account manager.

    Records without an active status or refresh token are filtered;
    duplicates are skipped.
    """
    summary = await importer.import_batch(
        request.accounts, owner_user_id=actor.user_id, is_shared=request.is_shared
    )
    return ImportSummaryEnvelope(
        data=ImportSummaryResponse(
            imported=summary.imported,
            skipped=summary.skipped,
            failed=summary.failed,
            filtered=summary.filtered,
            total=summary.total,
        )
    )


# =============================================================================
# Accounts
# =============================================================================


@router.get("/api/accounts", response_model=AccountListEnvelope)
async def list_accounts(
    provider: Provider | None = None,
    actor: Actor = Depends(get_actor),
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> AccountListEnvelope:
    """List the caller's own accounts."""
    accounts = await manager.list_for_user(actor, provider=provider)
    return AccountListEnvelope(data=[account_response(a) for a in accounts])


@router.post("/api/accounts/select", response_model=AccountEnvelope)
async def select_account(
    request: SelectAccountRequest,
    actor: Actor = Depends(get_actor),
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> AccountEnvelope:
    """Pick an eligible account with a usable access token."""
    account = await manager.select_fresh(
        request.provider, requesting_user=actor.user_id, shared_only=request.shared_only
    )
    return AccountEnvelope(data=account_response(account))


@router.get("/api/accounts/{account_id}", response_model=AccountEnvelope)
async def get_account(
    account_id: str,
    actor: Actor = Depends(get_actor),
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> AccountEnvelope:
    account = await manager.get_for_user(account_id, actor)
    return AccountEnvelope(data=account_response(account))


@router.put("/api/accounts/{account_id}/status", response_model=AccountEnvelope)
async def update_account_status(
    account_id: str,
    request: UpdateStatusRequest,
    actor: Actor = Depends(get_actor),
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> AccountEnvelope:
    """Enable or disable an account (owner or admin)."""
    account = await manager.update_status(account_id, request.status, actor)
    return AccountEnvelope(message="Account status updated", data=account_response(account))


@router.put("/api/accounts/{account_id}/name", response_model=AccountEnvelope)
async def update_account_name(
    account_id: str,
    request: UpdateNameRequest,
    actor: Actor = Depends(get_actor),
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> AccountEnvelope:
    account = await manager.rename(account_id, request.account_name, actor)
    return AccountEnvelope(message="Account name updated", data=account_response(account))


@router.put("/api/accounts/{account_id}/refresh-token", response_model=AccountEnvelope)
async def update_refresh_token(
    account_id: str,
    request: UpdateRefreshTokenRequest,
    actor: Actor = Depends(get_actor),
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> AccountEnvelope:
    """Re-authorize an account whose refresh token was rejected."""
    account = await manager.reauthorize(account_id, request.refresh_token, actor)
    return AccountEnvelope(message="Refresh token updated", data=account_response(account))


@router.post("/api/accounts/{account_id}/refresh", response_model=AccountEnvelope)
async def refresh_account(
    account_id: str,
    actor: Actor = Depends(get_actor),
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> AccountEnvelope:
    """Force a token refresh now, even if the current token is still fresh."""
    await manager.get_for_user(account_id, actor)
    account = await manager.ensure_fresh(account_id, force=True)
    return AccountEnvelope(message="Token refreshed", data=account_response(account))


@router.delete("/api/accounts/{account_id}", response_model=MessageResponse)
async def delete_account(
    account_id: str,
    actor: Actor = Depends(get_actor),
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> MessageResponse:
    await manager.delete(account_id, actor)
    return MessageResponse(message="Account deleted")


# =============================================================================
# Admin
# =============================================================================


@router.get("/api/admin/accounts", response_model=AccountListEnvelope)
async def admin_list_accounts(
    provider: Provider | None = None,
    actor: Actor = Depends(require_admin),
    manager: CredentialPoolManager = Depends(get_pool_manager),
) -> AccountListEnvelope:
    """List every account across all users."""
    accounts = await manager.list_for_user(actor, provider=provider, include_all=True)
    return AccountListEnvelope(data=[account_response(a) for a in accounts])


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
