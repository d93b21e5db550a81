"""
API Key Service - issuance and validation of caller API keys.

Each key identifies one internal user. Keys are shown once at creation;
only an Argon2id hash and a lookup prefix are stored.

NO DICTIONARIES - All data uses typed dataclasses.
"""

import base64
import secrets
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from credpool.db.models import APIKey, utc_now
from credpool.exceptions import APIKeyNotFoundError, AuthenticationError

logger = get_logger(__name__)

KEY_PREFIX = "cpk_"
# Characters of the plaintext key stored for indexed lookup
LOOKUP_PREFIX_LENGTH = 16


@dataclass(frozen=True)
class APIKeyData:
    """Stored key metadata (never the key itself)."""

    key_id: UUID
    user_id: str
    name: str
    key_prefix: str
    status: str
    created_at: datetime
    last_used_at: datetime | None


@dataclass(frozen=True)
class GeneratedAPIKey:
    """Newly issued key. plaintext_key is shown once."""

    key_id: UUID
    user_id: str
    name: str
    plaintext_key: str
    key_prefix: str
    created_at: datetime

    def __repr__(self) -> str:
        return f"<GeneratedAPIKey(key_id={self.key_id}, prefix={self.key_prefix})>"


def _to_data(api_key: APIKey) -> APIKeyData:
    return APIKeyData(
        key_id=api_key.id,
        user_id=api_key.user_id,
        name=api_key.name,
        key_prefix=api_key.key_prefix,
        status=api_key.status,
        created_at=api_key.created_at,
        last_used_at=api_key.last_used_at,
    )


class APIKeyService:
    """Service for caller API key management."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.password_hasher = PasswordHasher()

    def generate_api_key(self) -> tuple[str, str, str]:
        """
        Generate a new API key.

        Returns:
            tuple: (plaintext_key, key_hash, key_prefix)
        """
        key_suffix = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("utf-8").rstrip("=")
        plaintext_key = f"{KEY_PREFIX}{key_suffix}"
        key_prefix = plaintext_key[:LOOKUP_PREFIX_LENGTH]
        key_hash = self.password_hasher.hash(plaintext_key)
        return plaintext_key, key_hash, key_prefix

    async def create_api_key(self, user_id: str, name: str) -> GeneratedAPIKey:
        """Issue a key for user_id and store its hash."""
        plaintext_key, key_hash, key_prefix = self.generate_api_key()

        api_key = APIKey(
            key_hash=key_hash,
            key_prefix=key_prefix,
            user_id=user_id,
            name=name,
            status="active",
        )
        self.db.add(api_key)
        await self.db.commit()
        await self.db.refresh(api_key)

        logger.info("api_key_created", key_id=str(api_key.id), user_id=user_id, name=name)

        return GeneratedAPIKey(
            key_id=api_key.id,
            user_id=user_id,
            name=name,
            plaintext_key=plaintext_key,
            key_prefix=key_prefix,
            created_at=api_key.created_at,
        )

    async def validate_api_key(
        self, provided_key: str, update_last_used: bool = True
    ) -> APIKeyData:
        """
        Validate a bearer key and return its metadata.

        Raises:
            AuthenticationError: Unknown, revoked or malformed key
        """
        if not provided_key.startswith(KEY_PREFIX):
            logger.warning("api_key_invalid_format")
            raise AuthenticationError("Invalid API key format")

        key_prefix = provided_key[:LOOKUP_PREFIX_LENGTH]
        stmt = select(APIKey).where(APIKey.key_prefix == key_prefix, APIKey.status == "active")
        result = await self.db.execute(stmt)
        api_key = result.scalar_one_or_none()

        if not api_key:
            logger.warning("api_key_not_found", prefix=key_prefix)
            raise AuthenticationError("Invalid API key")

        try:
            self.password_hasher.verify(api_key.key_hash, provided_key)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            logger.warning("api_key_hash_mismatch", key_id=str(api_key.id))
            raise AuthenticationError("Invalid API key")

        if update_last_used:
            api_key.last_used_at = utc_now()
            await self.db.commit()

        logger.debug("api_key_validated", key_id=str(api_key.id), user_id=api_key.user_id)
        return _to_data(api_key)

    async def revoke_api_key(self, key_id: UUID) -> None:
        """
        Revoke an API key. Revoked keys stop authenticating immediately.

        Raises:
            APIKeyNotFoundError: No key with this id
        """
        api_key = await self.db.get(APIKey, key_id)
        if not api_key:
            raise APIKeyNotFoundError(str(key_id))

        api_key.status = "revoked"
        await self.db.commit()

        logger.info("api_key_revoked", key_id=str(key_id), user_id=api_key.user_id)

    async def list_api_keys(self, user_id: str | None = None) -> list[APIKeyData]:
        """List active keys, optionally for one user."""
        stmt = select(APIKey).where(APIKey.status == "active")
        if user_id is not None:
            stmt = stmt.where(APIKey.user_id == user_id)
        result = await self.db.execute(stmt.order_by(APIKey.created_at))
        return [_to_data(key) for key in result.scalars().all()]
