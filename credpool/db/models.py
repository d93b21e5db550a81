"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class PoolAccount(Base):
    """
    ORM model for pool_accounts table.

    One OAuth-backed credential slot for one provider.
    expires_at is epoch milliseconds so it compares directly with
    provider expiry arithmetic.
    """

    __tablename__ = "pool_accounts"

    # Primary Key (text so imported ids survive unchanged)
    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Ownership
    owner_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_shared: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Credentials
    access_token: Mapped[str] = mapped_column(Text, nullable=False, default="")
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    region: Mapped[str | None] = mapped_column(String(32), nullable=True)
    profile_arn: Mapped[str | None] = mapped_column(String(512), nullable=True)
    resource_url: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # State
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    need_refresh: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Provider identity (de-duplication)
    remote_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    machine_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Usage snapshot (advisory)
    subscription: Mapped[str] = mapped_column(String(100), nullable=False, default="unknown")
    current_usage: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    usage_limit: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    reset_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    free_trial_status: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    free_trial_usage: Mapped[float | None] = mapped_column(Float, nullable=True)
    free_trial_limit: Mapped[float | None] = mapped_column(Float, nullable=True)
    free_trial_expiry: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    bonus_usage: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    bonus_limit: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    bonus_available: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    bonus_details: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)

    # Audit timestamps
    last_refresh: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "provider IN ('kiro_idc', 'kiro_social', 'qwen')", name="ck_pool_accounts_provider"
        ),
        CheckConstraint("status IN ('active', 'disabled')", name="ck_pool_accounts_status"),
        Index(
            "uq_pool_accounts_provider_remote_user",
            "provider",
            "remote_user_id",
            unique=True,
            postgresql_where=(remote_user_id.isnot(None)),
        ),
        Index(
            "uq_pool_accounts_provider_machine",
            "provider",
            "machine_id",
            unique=True,
            postgresql_where=(machine_id.isnot(None)),
        ),
        Index("idx_pool_accounts_owner", "owner_user_id"),
        Index("idx_pool_accounts_selection", "provider", "is_shared", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging (no secrets)."""
        return (
            f"<PoolAccount(account_id={self.account_id}, provider={self.provider}, "
            f"status={self.status}, need_refresh={self.need_refresh})>"
        )


class APIKey(Base):
    """
    ORM model for api_keys table.

    Stores hashed API keys that identify internal users.
    """

    __tablename__ = "api_keys"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Key storage (hashed with Argon2id)
    key_hash: Mapped[str] = mapped_column(Text, nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)

    # Owner
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Status
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    __table_args__ = (
        CheckConstraint("status IN ('active', 'revoked')", name="ck_api_keys_status"),
        Index("idx_api_keys_prefix_active", "key_prefix", postgresql_where=(status == "active")),
        Index("idx_api_keys_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<APIKey(id={self.id}, user_id={self.user_id}, prefix={self.key_prefix})>"
