"""
Account Store - durable account records behind a narrow interface.

The pool manager depends only on the AccountStore protocol:
get, find_by_identity, insert, update_fields, delete, list.
SQLAccountStore implements it with one short transaction per call;
update_fields is a single UPDATE statement, so a refresh write lands
completely or not at all.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credpool.db.models import PoolAccount, utc_now
from credpool.exceptions import DuplicateAccountError
from credpool.models.api import AccountStatus, Provider
from credpool.models.domain import AccountData, ProviderIdentity, UsageSnapshot

logger = get_logger(__name__)

# Columns update_fields may touch; identity and creation time are immutable
UPDATABLE_FIELDS = frozenset(
    {
        "owner_user_id",
        "account_name",
        "is_shared",
        "access_token",
        "refresh_token",
        "expires_at",
        "client_id",
        "client_secret",
        "region",
        "profile_arn",
        "resource_url",
        "status",
        "need_refresh",
        "email",
        "subscription",
        "current_usage",
        "usage_limit",
        "reset_date",
        "free_trial_status",
        "free_trial_usage",
        "free_trial_limit",
        "free_trial_expiry",
        "bonus_usage",
        "bonus_limit",
        "bonus_available",
        "bonus_details",
        "last_refresh",
        "last_used_at",
    }
)


@dataclass(frozen=True)
class AccountFilter:
    """Criteria for AccountStore.list. Unset fields do not filter."""

    provider: Provider | None = None
    owner_user_id: str | None = None
    visible_to_user: str | None = None  # shared accounts plus this user's own
    shared_only: bool = False
    status: AccountStatus | None = None
    exclude_need_refresh: bool = False

    def matches(self, account: AccountData) -> bool:
        """In-process equivalent of the SQL predicate."""
        if self.provider is not None and account.provider != self.provider:
            return False
        if self.owner_user_id is not None and account.owner_user_id != self.owner_user_id:
            return False
        if self.shared_only and not account.is_shared:
            return False
        if self.visible_to_user is not None and not (
            account.is_shared or account.owner_user_id == self.visible_to_user
        ):
            return False
        if self.status is not None and account.status != self.status:
            return False
        if self.exclude_need_refresh and account.need_refresh:
            return False
        return True


class AccountStore(Protocol):
    """Persistence operations the pool manager relies on."""

    async def get(self, account_id: str) -> AccountData | None: ...

    async def find_by_identity(
        self, provider: Provider, identity: ProviderIdentity
    ) -> str | None: ...

    async def insert(self, account: AccountData) -> AccountData: ...

    async def update_fields(
        self, account_id: str, fields: Mapping[str, Any]
    ) -> AccountData | None: ...

    async def delete(self, account_id: str) -> bool: ...

    async def list(self, account_filter: AccountFilter) -> list[AccountData]: ...


def usage_fields(usage: UsageSnapshot) -> dict[str, Any]:
    """Column values for a usage snapshot."""
    return {
        "subscription": usage.subscription,
        "current_usage": usage.current_usage,
        "usage_limit": usage.usage_limit,
        "reset_date": usage.reset_date,
        "free_trial_status": usage.free_trial_status,
        "free_trial_usage": usage.free_trial_usage,
        "free_trial_limit": usage.free_trial_limit,
        "free_trial_expiry": usage.free_trial_expiry,
        "bonus_usage": usage.bonus_usage,
        "bonus_limit": usage.bonus_limit,
        "bonus_available": usage.bonus_available,
        "bonus_details": list(usage.bonus_details),
    }


def row_to_account(row: PoolAccount) -> AccountData:
    """Convert an ORM row into an immutable AccountData."""
    return AccountData(
        account_id=row.account_id,
        owner_user_id=row.owner_user_id,
        provider=Provider(row.provider),
        account_name=row.account_name,
        is_shared=row.is_shared,
        status=AccountStatus(row.status),
        need_refresh=row.need_refresh,
        access_token=row.access_token or "",
        refresh_token=row.refresh_token or "",
        expires_at=row.expires_at,
        client_id=row.client_id,
        client_secret=row.client_secret,
        region=row.region,
        profile_arn=row.profile_arn,
        resource_url=row.resource_url,
        identity=ProviderIdentity(
            remote_user_id=row.remote_user_id,
            machine_id=row.machine_id,
            email=row.email,
        ),
        usage=UsageSnapshot(
            subscription=row.subscription,
            current_usage=row.current_usage,
            usage_limit=row.usage_limit,
            reset_date=row.reset_date,
            free_trial_status=row.free_trial_status,
            free_trial_usage=row.free_trial_usage,
            free_trial_limit=row.free_trial_limit,
            free_trial_expiry=row.free_trial_expiry,
            bonus_usage=row.bonus_usage,
            bonus_limit=row.bonus_limit,
            bonus_available=row.bonus_available,
            bonus_details=tuple(row.bonus_details or ()),
        ),
        last_refresh=row.last_refresh,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def account_to_row(account: AccountData) -> PoolAccount:
    """Build an ORM row for insertion."""
    return PoolAccount(
        account_id=account.account_id,
        owner_user_id=account.owner_user_id,
        provider=account.provider.value,
        account_name=account.account_name,
        is_shared=account.is_shared,
        status=account.status.value,
        need_refresh=account.need_refresh,
        access_token=account.access_token,
        refresh_token=account.refresh_token,
        expires_at=account.expires_at,
        client_id=account.client_id,
        client_secret=account.client_secret,
        region=account.region,
        profile_arn=account.profile_arn,
        resource_url=account.resource_url,
        remote_user_id=account.identity.remote_user_id,
        machine_id=account.identity.machine_id,
        email=account.identity.email,
        last_refresh=account.last_refresh,
        last_used_at=account.last_used_at,
        created_at=account.created_at,
        updated_at=account.updated_at,
        **usage_fields(account.usage),
    )


class SQLAccountStore:
    """AccountStore backed by PostgreSQL through async SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, account_id: str) -> AccountData | None:
        async with self._session_factory() as session:
            row = await session.get(PoolAccount, account_id)
            return row_to_account(row) if row else None

    async def find_by_identity(
        self, provider: Provider, identity: ProviderIdentity
    ) -> str | None:
        """Return the id of an account clashing on remote user id or machine id."""
        if identity.is_empty:
            return None

        clauses = []
        if identity.remote_user_id:
            clauses.append(PoolAccount.remote_user_id == identity.remote_user_id)
        if identity.machine_id:
            clauses.append(PoolAccount.machine_id == identity.machine_id)

        stmt = (
            select(PoolAccount.account_id)
            .where(PoolAccount.provider == provider.value, or_(*clauses))
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def insert(self, account: AccountData) -> AccountData:
        """
        Insert a new account.

        Raises:
            DuplicateAccountError: account id or provider identity already taken
        """
        async with self._session_factory() as session:
            row = account_to_row(account)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.warning(
                    "account_insert_integrity_error",
                    account_id=account.account_id,
                    provider=account.provider.value,
                    constraint=getattr(getattr(e.orig, "diag", None), "constraint_name", None),
                )
                existing_id = await self.find_by_identity(account.provider, account.identity)
                if existing_id is None and await self.get(account.account_id) is not None:
                    existing_id = account.account_id
                if existing_id is None:
                    raise
                raise DuplicateAccountError(existing_id) from e
            return row_to_account(row)

    async def update_fields(
        self, account_id: str, fields: Mapping[str, Any]
    ) -> AccountData | None:
        """
        Atomically update columns of one account.

        Returns the updated account, or None when the row no longer exists
        (a deleted account is never recreated by a late write).
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        stmt = (
            update(PoolAccount)
            .where(PoolAccount.account_id == account_id)
            .values(**fields, updated_at=utc_now())
            .returning(PoolAccount)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            await session.commit()
            return row_to_account(row) if row else None

    async def delete(self, account_id: str) -> bool:
        stmt = delete(PoolAccount).where(PoolAccount.account_id == account_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)  # type: ignore[attr-defined]

    async def list(self, account_filter: AccountFilter) -> list[AccountData]:
        stmt = select(PoolAccount)
        if account_filter.provider is not None:
            stmt = stmt.where(PoolAccount.provider == account_filter.provider.value)
        if account_filter.owner_user_id is not None:
            stmt = stmt.where(PoolAccount.owner_user_id == account_filter.owner_user_id)
        if account_filter.shared_only:
            stmt = stmt.where(PoolAccount.is_shared.is_(True))
        if account_filter.visible_to_user is not None:
            stmt = stmt.where(
                or_(
                    PoolAccount.is_shared.is_(True),
                    PoolAccount.owner_user_id == account_filter.visible_to_user,
                )
            )
        if account_filter.status is not None:
            stmt = stmt.where(PoolAccount.status == account_filter.status.value)
        if account_filter.exclude_need_refresh:
            stmt = stmt.where(PoolAccount.need_refresh.is_(False))
        stmt = stmt.order_by(PoolAccount.created_at)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [row_to_account(row) for row in result.scalars().all()]
