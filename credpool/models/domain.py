"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime

from credpool.models.api import AccountStatus, Provider


@dataclass(frozen=True)
class ProviderIdentity:
    """Provider-assigned identity used for de-duplication."""

    remote_user_id: str | None = None
    machine_id: str | None = None
    email: str | None = None

    @property
    def is_empty(self) -> bool:
        """True when neither unique identity field is known."""
        return not self.remote_user_id and not self.machine_id


@dataclass(frozen=True)
class UsageSnapshot:
    """Normalized quota telemetry. Advisory only."""

    subscription: str = "unknown"
    current_usage: float = 0
    usage_limit: float = 0
    reset_date: datetime | None = None
    free_trial_status: bool | None = None
    free_trial_usage: float | None = None
    free_trial_limit: float | None = None
    free_trial_expiry: datetime | None = None
    bonus_usage: float = 0
    bonus_limit: float = 0
    bonus_available: float = 0
    bonus_details: tuple[str, ...] = ()

    @property
    def has_limit(self) -> bool:
        """Whether the provider reported a usable quota limit."""
        return self.usage_limit > 0

    @property
    def below_limit(self) -> bool:
        """Usage is known and still under the limit."""
        return self.has_limit and self.current_usage < self.usage_limit


@dataclass(frozen=True)
class RefreshCredential:
    """Everything a TokenRefresher needs for one exchange."""

    provider: Provider
    refresh_token: str
    client_id: str | None = None
    client_secret: str | None = None
    region: str | None = None

    def __repr__(self) -> str:
        """Keep secrets out of reprs and tracebacks."""
        return f"<RefreshCredential(provider={self.provider.value}, region={self.region})>"


@dataclass(frozen=True)
class TokenGrant:
    """Normalized result of a successful refresh exchange."""

    access_token: str
    refresh_token: str | None = None
    token_type: str | None = None
    resource_url: str | None = None
    expires_in: int | None = None
    profile_arn: str | None = None

    def __repr__(self) -> str:
        """Keep secrets out of reprs and tracebacks."""
        return (
            f"<TokenGrant(expires_in={self.expires_in}, "
            f"rotated={self.refresh_token is not None})>"
        )


@dataclass(frozen=True)
class Actor:
    """Authenticated caller of a pool operation."""

    user_id: str
    is_admin: bool = False

    def can_manage(self, owner_user_id: str | None) -> bool:
        """Owner or admin."""
        return self.is_admin or (owner_user_id is not None and owner_user_id == self.user_id)


@dataclass(frozen=True)
class AccountRegistration:
    """Fields supplied when registering or importing an account."""

    provider: Provider
    refresh_token: str | None
    access_token: str = ""
    expires_at: int | None = None
    account_id: str | None = None
    account_name: str | None = None
    is_shared: bool = False
    status: AccountStatus = AccountStatus.ACTIVE
    client_id: str | None = None
    client_secret: str | None = None
    region: str | None = None
    profile_arn: str | None = None
    resource_url: str | None = None
    identity: ProviderIdentity = field(default_factory=ProviderIdentity)
    usage: UsageSnapshot = field(default_factory=UsageSnapshot)
    last_refresh: datetime | None = None

    def __repr__(self) -> str:
        """Keep secrets out of reprs and tracebacks."""
        return (
            f"<AccountRegistration(provider={self.provider.value}, "
            f"account_id={self.account_id}, is_shared={self.is_shared})>"
        )


@dataclass(frozen=True)
class AccountData:
    """Immutable account snapshot, including secrets. Never rendered directly."""

    account_id: str
    owner_user_id: str | None
    provider: Provider
    account_name: str
    is_shared: bool
    status: AccountStatus
    need_refresh: bool
    access_token: str
    refresh_token: str
    expires_at: int | None
    client_id: str | None
    client_secret: str | None
    region: str | None
    profile_arn: str | None
    resource_url: str | None
    identity: ProviderIdentity
    usage: UsageSnapshot
    last_refresh: datetime | None
    last_used_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def is_stale(self, now_ms: int, margin_ms: int) -> bool:
        """Access token unknown or expiring within the margin."""
        return self.expires_at is None or self.expires_at <= now_ms + margin_ms

    @property
    def can_auto_renew(self) -> bool:
        """An empty refresh token is never renewed automatically."""
        return bool(self.refresh_token and self.refresh_token.strip())

    def is_selectable_by(self, user_id: str | None, shared_only: bool) -> bool:
        """Eligibility for pool selection."""
        if self.status != AccountStatus.ACTIVE or self.need_refresh:
            return False
        if not self.can_auto_renew:
            return False
        if self.is_shared:
            return True
        if shared_only:
            return False
        return user_id is not None and self.owner_user_id == user_id

    def to_refresh_credential(self) -> RefreshCredential:
        """Build the input for a TokenRefresher."""
        return RefreshCredential(
            provider=self.provider,
            refresh_token=self.refresh_token,
            client_id=self.client_id,
            client_secret=self.client_secret,
            region=self.region,
        )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AccountData(account_id={self.account_id}, provider={self.provider.value}, "
            f"status={self.status.value}, need_refresh={self.need_refresh})>"
        )
