"""
Credential Pool Manager - refresh scheduling, failure classification,
status transitions and account selection.

Concurrency model:
- At most one refresh exchange per account is in flight. The exchange
  runs as an asyncio.Task stored in an arena keyed by account id; every
  concurrent caller awaits the same task through asyncio.shield, so a
  cancelled caller never cancels the exchange for the others.
- The task re-reads the account before exchanging, so a caller that saw
  a stale row just before another refresh landed is served the fresh
  row instead of triggering a second exchange.
- Refresh results are written with a single UPDATE. A row deleted while
  its refresh was in flight is never recreated.
- Accounts are independent; there is no cross-account lock.

The manager never retries a failed refresh. Callers retry
TemporarilyUnavailableError with backoff; CredentialExpiredError needs
the owner to re-authorize the account.
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from typing import Any
from uuid import uuid4

from structlog import get_logger

from credpool.config import Settings
from credpool.db.models import utc_now
from credpool.exceptions import (
    AccountNotFoundError,
    CredentialExpiredError,
    DuplicateAccountError,
    ForbiddenError,
    InvalidInputError,
    NoAccountAvailableError,
    TemporarilyUnavailableError,
)
from credpool.models.api import AccountStatus, Provider
from credpool.models.domain import Actor, AccountData, AccountRegistration, UsageSnapshot
from credpool.observability.metrics import metrics
from credpool.services.account_store import AccountFilter, AccountStore, usage_fields
from credpool.services.token_refresh import (
    EmptyCredentialError,
    InvalidGrantError,
    MalformedResponseError,
    TokenRefresher,
    TransientRefreshError,
)
from credpool.services.usage import extract_usage, normalize_resource_url

logger = get_logger(__name__)


def _epoch_millis() -> int:
    return int(time.time() * 1000)


def default_account_name(provider: Provider, email: str | None) -> str:
    """Display name used when the registration supplies none."""
    if provider is Provider.QWEN:
        return email or "Qwen Account"
    return f"Kiro {email or 'Unknown'}"


def choose_account(candidates: list[AccountData]) -> AccountData:
    """
    Pick one account from a non-empty eligible list.

    Accounts known to be at or over their quota are skipped while any
    other candidate remains. Among candidates with usage below a known
    limit and a known expiry, the furthest expires_at wins (ties go to
    the least recently used). Without usable usage/expiry data the least
    recently used account wins, never-used first.
    """

    def lru_key(account: AccountData) -> tuple[bool, float]:
        used = account.last_used_at
        return (used is not None, used.timestamp() if used else 0.0)

    pool = [a for a in candidates if not (a.usage.has_limit and not a.usage.below_limit)]
    if not pool:
        pool = candidates

    with_data = [a for a in pool if a.usage.below_limit and a.expires_at is not None]
    if with_data:
        furthest = max(a.expires_at for a in with_data if a.expires_at is not None)
        return min((a for a in with_data if a.expires_at == furthest), key=lru_key)

    return min(pool, key=lru_key)


class CredentialPoolManager:
    """
    Stateful core of the credential pool.

    Usage:
        manager = CredentialPoolManager(store, build_refreshers(settings))
        await manager.start()
        account = await manager.select(Provider.QWEN, requesting_user="u-1")
        account = await manager.ensure_fresh(account.account_id)
        ...
        await manager.close()
    """

    def __init__(
        self,
        store: AccountStore,
        refreshers: Mapping[Provider, TokenRefresher],
        safety_margin_ms: int = 300_000,
        refresh_timeout: float = 30.0,
        default_expires_in: int = 3600,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.store = store
        self.refreshers = dict(refreshers)
        self.safety_margin_ms = safety_margin_ms
        self.refresh_timeout = refresh_timeout
        self.default_expires_in = default_expires_in
        self._now_ms = clock or _epoch_millis
        self._inflight: dict[str, asyncio.Task[AccountData]] = {}
        self._started = False

    @classmethod
    def from_settings(
        cls,
        store: AccountStore,
        refreshers: Mapping[Provider, TokenRefresher],
        settings: Settings,
    ) -> "CredentialPoolManager":
        """Build a manager with timing configured from Settings."""
        return cls(
            store=store,
            refreshers=refreshers,
            safety_margin_ms=settings.refresh_safety_margin_ms,
            refresh_timeout=settings.refresh_timeout_seconds,
            default_expires_in=settings.default_expires_in_seconds,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Mark the manager ready; refreshers create HTTP clients lazily."""
        self._started = True
        logger.info("pool_manager_started", providers=[p.value for p in self.refreshers])

    async def close(self) -> None:
        """Drain in-flight refreshes, then close refresher HTTP clients."""
        pending = list(self._inflight.values())
        if pending:
            logger.info("pool_manager_draining", in_flight=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

        closed: set[int] = set()
        for refresher in self.refreshers.values():
            if id(refresher) not in closed:
                closed.add(id(refresher))
                await refresher.close()

        self._started = False
        logger.info("pool_manager_closed")

    # ========================================================================
    # Registration
    # ========================================================================

    async def register(
        self, registration: AccountRegistration, owner_user_id: str | None
    ) -> AccountData:
        """
        Create an account from explicit registration or import.

        Raises:
            InvalidInputError: Refresh token (or IdC client credentials) missing
            DuplicateAccountError: Id or provider identity already registered
        """
        refresh_token = (registration.refresh_token or "").strip()
        if not refresh_token:
            raise InvalidInputError("refresh_token is required")

        if registration.provider.requires_client_credentials and not (
            registration.client_id and registration.client_secret
        ):
            raise InvalidInputError("client_id and client_secret are required for Kiro IdC")

        existing_id = await self.store.find_by_identity(
            registration.provider, registration.identity
        )
        if existing_id is not None:
            logger.info(
                "account_registration_duplicate",
                provider=registration.provider.value,
                existing_account_id=existing_id,
            )
            raise DuplicateAccountError(existing_id)

        account_id = registration.account_id or str(uuid4())
        if registration.account_id and await self.store.get(account_id) is not None:
            raise DuplicateAccountError(account_id)

        now = utc_now()
        account = AccountData(
            account_id=account_id,
            owner_user_id=owner_user_id,
            provider=registration.provider,
            account_name=(registration.account_name or "").strip()
            or default_account_name(registration.provider, registration.identity.email),
            is_shared=registration.is_shared,
            status=registration.status,
            need_refresh=False,
            access_token=(registration.access_token or "").strip(),
            refresh_token=refresh_token,
            expires_at=registration.expires_at,
            client_id=registration.client_id,
            client_secret=registration.client_secret,
            region=registration.region,
            profile_arn=registration.profile_arn,
            resource_url=registration.resource_url,
            identity=registration.identity,
            usage=registration.usage,
            last_refresh=registration.last_refresh,
            last_used_at=None,
            created_at=now,
            updated_at=now,
        )

        created = await self.store.insert(account)
        logger.info(
            "account_registered",
            account_id=created.account_id,
            provider=created.provider.value,
            owner_user_id=owner_user_id,
            is_shared=created.is_shared,
        )
        return created

    async def reauthorize(self, account_id: str, refresh_token: str, actor: Actor) -> AccountData:
        """
        Replace the refresh token after the owner re-authenticated.

        Clears need_refresh and forgets the old expiry so the next use
        renews with the new token.
        """
        token = (refresh_token or "").strip()
        if not token:
            raise InvalidInputError("refresh_token is required")

        account = await self._authorized_account(account_id, actor)
        await self._wait_for_inflight(account.account_id)

        updated = await self.store.update_fields(
            account.account_id,
            {"refresh_token": token, "need_refresh": False, "expires_at": None},
        )
        if updated is None:
            raise AccountNotFoundError(account_id)

        logger.info("account_reauthorized", account_id=account_id, actor=actor.user_id)
        return updated

    # ========================================================================
    # Refresh
    # ========================================================================

    async def ensure_fresh(
        self,
        account_id: str,
        safety_margin_ms: int | None = None,
        force: bool = False,
    ) -> AccountData:
        """
        Return the account with a usable access token, refreshing if stale.

        Raises:
            AccountNotFoundError: Account does not exist (or was deleted mid-refresh)
            CredentialExpiredError: Refresh token rejected, now or on an earlier attempt
            TemporarilyUnavailableError: Retryable failure; nothing was written
        """
        margin = self.safety_margin_ms if safety_margin_ms is None else safety_margin_ms

        account = await self.store.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        if not force and not account.is_stale(self._now_ms(), margin):
            return account

        inflight = self._inflight.get(account_id)
        if inflight is None:
            inflight = asyncio.ensure_future(self._refresh(account_id, margin, force))
            self._inflight[account_id] = inflight
            metrics.refreshes_in_flight.inc()
            inflight.add_done_callback(lambda task: self._release(account_id, task))
        else:
            metrics.record_refresh_joined(account.provider.value)
            logger.debug("token_refresh_joined", account_id=account_id)

        return await asyncio.shield(inflight)

    def _release(self, account_id: str, task: "asyncio.Task[AccountData]") -> None:
        metrics.refreshes_in_flight.dec()
        if self._inflight.get(account_id) is task:
            del self._inflight[account_id]
        if not task.cancelled():
            # Retrieve so an exception nobody awaited is not reported as lost
            task.exception()

    async def _wait_for_inflight(self, account_id: str) -> None:
        inflight = self._inflight.get(account_id)
        if inflight is not None:
            await asyncio.wait([inflight])

    async def _refresh(self, account_id: str, margin: int, force: bool) -> AccountData:
        current = await self.store.get(account_id)
        if current is None:
            raise AccountNotFoundError(account_id)
        if not force and not current.is_stale(self._now_ms(), margin):
            return current
        if current.need_refresh and not force:
            # The stored refresh token was already rejected; only reauthorize or
            # an explicit forced refresh may send it again
            logger.info("token_refresh_skipped_needs_reauthorization", account_id=account_id)
            raise CredentialExpiredError(account_id)

        provider = current.provider.value
        if not current.can_auto_renew:
            await self.store.update_fields(account_id, {"need_refresh": True})
            logger.warning("token_refresh_skipped_empty_credential", account_id=account_id)
            raise CredentialExpiredError(account_id)

        refresher = self.refreshers.get(current.provider)
        if refresher is None:
            raise TemporarilyUnavailableError(account_id, f"no refresher for {provider}")

        started = time.monotonic()
        try:
            grant = await asyncio.wait_for(
                refresher.refresh(current.to_refresh_credential()),
                timeout=self.refresh_timeout,
            )
        except (InvalidGrantError, EmptyCredentialError) as e:
            metrics.record_refresh(provider, "invalid_grant", time.monotonic() - started)
            await self.store.update_fields(account_id, {"need_refresh": True})
            logger.warning(
                "token_refresh_credential_expired",
                account_id=account_id,
                provider=provider,
                error_type=type(e).__name__,
            )
            raise CredentialExpiredError(account_id) from e
        except asyncio.TimeoutError as e:
            metrics.record_refresh(provider, "timeout", time.monotonic() - started)
            logger.warning(
                "token_refresh_timeout",
                account_id=account_id,
                provider=provider,
                timeout_seconds=self.refresh_timeout,
            )
            raise TemporarilyUnavailableError(account_id, "refresh timed out") from e
        except MalformedResponseError as e:
            metrics.record_refresh(provider, "malformed", time.monotonic() - started)
            logger.error("token_refresh_malformed", account_id=account_id, provider=provider)
            raise TemporarilyUnavailableError(account_id, "malformed provider response") from e
        except TransientRefreshError as e:
            metrics.record_refresh(provider, "transient", time.monotonic() - started)
            logger.warning(
                "token_refresh_transient_failure",
                account_id=account_id,
                provider=provider,
                status=e.status_code,
            )
            raise TemporarilyUnavailableError(account_id, "provider unavailable") from e

        metrics.record_refresh(provider, "success", time.monotonic() - started)

        expires_in = grant.expires_in if grant.expires_in else self.default_expires_in
        fields: dict[str, Any] = {
            "access_token": grant.access_token,
            "expires_at": self._now_ms() + expires_in * 1000,
            "last_refresh": utc_now(),
            "need_refresh": False,
        }
        rotated = bool(grant.refresh_token) and grant.refresh_token != current.refresh_token
        if rotated:
            fields["refresh_token"] = grant.refresh_token
        if grant.resource_url:
            fields["resource_url"] = normalize_resource_url(grant.resource_url)
        if grant.profile_arn:
            fields["profile_arn"] = grant.profile_arn

        updated = await self.store.update_fields(account_id, fields)
        if updated is None:
            logger.warning("token_refresh_discarded_account_deleted", account_id=account_id)
            raise AccountNotFoundError(account_id)

        logger.info(
            "token_refresh_succeeded",
            account_id=account_id,
            provider=provider,
            expires_in=expires_in,
            refresh_token_rotated=rotated,
        )
        return updated

    # ========================================================================
    # Selection
    # ========================================================================

    async def select(
        self,
        provider: Provider,
        requesting_user: str | None,
        shared_only: bool = False,
        exclude: frozenset[str] = frozenset(),
    ) -> AccountData:
        """
        Pick one eligible account and record its use.

        Eligible: active, not need_refresh, renewable, and shared or owned
        by the requesting user (shared only when shared_only is set).

        Raises:
            NoAccountAvailableError: Eligible set is empty
        """
        account_filter = AccountFilter(
            provider=provider,
            status=AccountStatus.ACTIVE,
            exclude_need_refresh=True,
            shared_only=shared_only,
            visible_to_user=None if shared_only else requesting_user,
        )
        candidates = [
            account
            for account in await self.store.list(account_filter)
            if account.account_id not in exclude
            and account.is_selectable_by(requesting_user, shared_only)
        ]

        while candidates:
            chosen = choose_account(candidates)
            marked = await self.store.update_fields(
                chosen.account_id, {"last_used_at": utc_now()}
            )
            if marked is None:
                # Deleted between list and mark
                candidates = [a for a in candidates if a.account_id != chosen.account_id]
                continue
            if not marked.is_selectable_by(requesting_user, shared_only):
                # Disabled or flagged between list and mark
                candidates = [a for a in candidates if a.account_id != chosen.account_id]
                continue

            metrics.record_selection(provider.value, "selected")
            logger.debug(
                "account_selected",
                account_id=marked.account_id,
                provider=provider.value,
                requesting_user=requesting_user,
            )
            return marked

        metrics.record_selection(provider.value, "exhausted")
        logger.warning(
            "account_pool_exhausted",
            provider=provider.value,
            requesting_user=requesting_user,
            shared_only=shared_only,
        )
        raise NoAccountAvailableError(provider)

    async def select_fresh(
        self,
        provider: Provider,
        requesting_user: str | None,
        shared_only: bool = False,
    ) -> AccountData:
        """
        Select an account and make sure its access token is usable.

        Accounts whose refresh fails are skipped in favour of the next
        candidate; NoAccountAvailableError once every candidate failed.
        """
        tried: set[str] = set()
        while True:
            account = await self.select(
                provider, requesting_user, shared_only, exclude=frozenset(tried)
            )
            try:
                fresh = await self.ensure_fresh(account.account_id)
            except (CredentialExpiredError, TemporarilyUnavailableError, AccountNotFoundError) as e:
                logger.info(
                    "selected_account_unusable",
                    account_id=account.account_id,
                    provider=provider.value,
                    error_type=type(e).__name__,
                )
                tried.add(account.account_id)
                continue

            if fresh.is_selectable_by(requesting_user, shared_only):
                return fresh
            # Disabled or flagged while the refresh was running
            logger.info(
                "selected_account_unusable",
                account_id=account.account_id,
                provider=provider.value,
                error_type="not_selectable",
            )
            tried.add(account.account_id)

    # ========================================================================
    # Administrative Mutations
    # ========================================================================

    async def update_status(
        self, account_id: str, status: AccountStatus, actor: Actor
    ) -> AccountData:
        """Enable or disable an account. Re-enabled accounts must renew before use."""
        account = await self._authorized_account(account_id, actor)

        fields: dict[str, Any] = {"status": status.value}
        if status == AccountStatus.ACTIVE and account.status == AccountStatus.DISABLED:
            fields["expires_at"] = None

        updated = await self.store.update_fields(account_id, fields)
        if updated is None:
            raise AccountNotFoundError(account_id)

        logger.info(
            "account_status_updated",
            account_id=account_id,
            status=status.value,
            actor=actor.user_id,
        )
        return updated

    async def rename(self, account_id: str, account_name: str, actor: Actor) -> AccountData:
        """Change the display name."""
        name = (account_name or "").strip()
        if not name:
            raise InvalidInputError("account_name cannot be empty")

        await self._authorized_account(account_id, actor)
        updated = await self.store.update_fields(account_id, {"account_name": name})
        if updated is None:
            raise AccountNotFoundError(account_id)

        logger.info("account_renamed", account_id=account_id, actor=actor.user_id)
        return updated

    async def delete(self, account_id: str, actor: Actor) -> None:
        """Hard-delete an account once any in-flight refresh has settled."""
        await self._authorized_account(account_id, actor)
        await self._wait_for_inflight(account_id)

        if not await self.store.delete(account_id):
            raise AccountNotFoundError(account_id)

        logger.info("account_deleted", account_id=account_id, actor=actor.user_id)

    async def update_usage(self, account_id: str, payload: Any) -> AccountData:
        """Store a usage snapshot parsed from a provider payload."""
        snapshot: UsageSnapshot = extract_usage(payload)
        updated = await self.store.update_fields(account_id, usage_fields(snapshot))
        if updated is None:
            raise AccountNotFoundError(account_id)

        logger.debug(
            "account_usage_updated",
            account_id=account_id,
            subscription=snapshot.subscription,
            below_limit=snapshot.below_limit,
        )
        return updated

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_for_user(self, account_id: str, actor: Actor) -> AccountData:
        """Fetch one account the actor may manage."""
        return await self._authorized_account(account_id, actor)

    async def list_for_user(
        self,
        actor: Actor,
        provider: Provider | None = None,
        include_all: bool = False,
    ) -> list[AccountData]:
        """List the actor's accounts, or every account for an admin view."""
        if include_all and not actor.is_admin:
            raise ForbiddenError(None, actor.user_id)

        owner = None if include_all else actor.user_id
        return await self.store.list(AccountFilter(provider=provider, owner_user_id=owner))

    async def _authorized_account(self, account_id: str, actor: Actor) -> AccountData:
        account = await self.store.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        if not actor.can_manage(account.owner_user_id):
            logger.warning("account_access_denied", account_id=account_id, actor=actor.user_id)
            raise ForbiddenError(account_id, actor.user_id)
        return account

