"""
Tests for API Key Service.

Tests key generation, validation, and management.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from argon2 import PasswordHasher

from credpool.db.models import APIKey
from credpool.exceptions import APIKeyNotFoundError, AuthenticationError
from credpool.services.api_key import (
    KEY_PREFIX,
    LOOKUP_PREFIX_LENGTH,
    APIKeyData,
    APIKeyService,
    GeneratedAPIKey,
)


def stored_key(plaintext: str, user_id: str = "user-1") -> MagicMock:
    """A mock APIKey row whose hash matches plaintext."""
    mock_key = MagicMock(spec=APIKey)
    mock_key.id = uuid4()
    mock_key.key_hash = PasswordHasher().hash(plaintext)
    mock_key.key_prefix = plaintext[:LOOKUP_PREFIX_LENGTH]
    mock_key.user_id = user_id
    mock_key.name = "Test Key"
    mock_key.status = "active"
    mock_key.created_at = datetime.now(UTC)
    mock_key.last_used_at = None
    return mock_key


def session_returning(row) -> AsyncMock:
    session = AsyncMock()
    mock_result = MagicMock()
    mock_result.scalar_one_or_none = MagicMock(return_value=row)
    session.execute = AsyncMock(return_value=mock_result)
    session.commit = AsyncMock()
    return session


class TestGeneratedAPIKey:
    """Tests for GeneratedAPIKey data class."""

    def test_repr_hides_plaintext(self):
        """The plaintext key never appears in repr."""
        key = GeneratedAPIKey(
            key_id=uuid4(),
            user_id="user-1",
            name="CI",
            plaintext_key="cpk_supersecretvalue",
            key_prefix="cpk_supersecretv",
            created_at=datetime.now(UTC),
        )

        assert "supersecretvalue" not in repr(key)


class TestAPIKeyServiceGenerate:
    """Tests for API key generation."""

    def test_generate_format(self):
        """Generated keys carry the cpk_ prefix and a matching lookup prefix."""
        service = APIKeyService(AsyncMock())

        plaintext, key_hash, prefix = service.generate_api_key()

        assert plaintext.startswith(KEY_PREFIX)
        assert prefix == plaintext[:LOOKUP_PREFIX_LENGTH]
        assert PasswordHasher().verify(key_hash, plaintext)

    def test_generated_keys_are_unique(self):
        service = APIKeyService(AsyncMock())
        keys = {service.generate_api_key()[0] for _ in range(5)}
        assert len(keys) == 5


class TestAPIKeyServiceValidation:
    """Tests for API key validation."""

    @pytest.mark.asyncio
    async def test_wrong_prefix_rejected_without_query(self):
        """Keys without cpk_ prefix are rejected before any lookup."""
        session = AsyncMock()
        service = APIKeyService(session)

        with pytest.raises(AuthenticationError) as exc:
            await service.validate_api_key("cbk_live_something")

        assert "Invalid API key format" in str(exc.value)
        session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_key_not_found(self):
        """Non-existent keys are rejected."""
        service = APIKeyService(session_returning(None))

        with pytest.raises(AuthenticationError) as exc:
            await service.validate_api_key("cpk_nonexistent12345")

        assert "Invalid API key" in str(exc.value)

    @pytest.mark.asyncio
    async def test_hash_mismatch(self):
        """A prefix collision with a different key is rejected."""
        row = stored_key("cpk_aaaaaaaaaaaaaaaa-original")
        service = APIKeyService(session_returning(row))

        with pytest.raises(AuthenticationError):
            await service.validate_api_key("cpk_aaaaaaaaaaaaaaaa-forged")

    @pytest.mark.asyncio
    async def test_valid_key_returns_user(self):
        """Valid keys map to their user."""
        test_key = "cpk_validkey1234567890abcdef"
        row = stored_key(test_key, user_id="user-42")
        session = session_returning(row)

        result = await APIKeyService(session).validate_api_key(test_key)

        assert isinstance(result, APIKeyData)
        assert result.user_id == "user-42"
        assert result.key_id == row.id
        assert row.last_used_at is not None
        session.commit.assert_called()

    @pytest.mark.asyncio
    async def test_skip_last_used_update(self):
        test_key = "cpk_skipupdate1234567890"
        row = stored_key(test_key)
        session = session_returning(row)

        await APIKeyService(session).validate_api_key(test_key, update_last_used=False)

        assert row.last_used_at is None
        session.commit.assert_not_called()


class TestAPIKeyServiceCreate:
    """Tests for API key creation."""

    @pytest.mark.asyncio
    async def test_create_stores_hash_only(self):
        """The stored row carries a hash; the plaintext is returned once."""
        session = AsyncMock()
        session.add = MagicMock()
        key_id = uuid4()

        async def fake_refresh(row):
            row.id = key_id
            row.created_at = datetime.now(UTC)

        session.refresh = AsyncMock(side_effect=fake_refresh)

        generated = await APIKeyService(session).create_api_key("user-1", "CI")

        stored = session.add.call_args[0][0]
        assert isinstance(stored, APIKey)
        assert stored.user_id == "user-1"
        assert stored.key_hash != generated.plaintext_key
        assert stored.key_prefix == generated.plaintext_key[:LOOKUP_PREFIX_LENGTH]
        assert generated.key_id == key_id
        session.commit.assert_called_once()


class TestAPIKeyServiceRevoke:
    """Tests for API key revocation."""

    @pytest.mark.asyncio
    async def test_revoke_existing_key(self):
        session = AsyncMock()
        row = stored_key("cpk_revokeme12345678")
        session.get = AsyncMock(return_value=row)

        await APIKeyService(session).revoke_api_key(row.id)

        assert row.status == "revoked"
        session.commit.assert_called()

    @pytest.mark.asyncio
    async def test_revoke_nonexistent_key(self):
        session = AsyncMock()
        session.get = AsyncMock(return_value=None)

        with pytest.raises(APIKeyNotFoundError, match="API key not found"):
            await APIKeyService(session).revoke_api_key(uuid4())


class TestAPIKeyServiceList:
    @pytest.mark.asyncio
    async def test_list_maps_rows(self):
        rows = [stored_key("cpk_first1234567890"), stored_key("cpk_second123456789")]
        session = AsyncMock()
        mock_result = MagicMock()
        mock_result.scalars = MagicMock(return_value=MagicMock(all=MagicMock(return_value=rows)))
        session.execute = AsyncMock(return_value=mock_result)

        keys = await APIKeyService(session).list_api_keys(user_id="user-1")

        assert [k.key_id for k in keys] == [r.id for r in rows]


class TestAPIKeyScript:
    """Tests for the key management CLI's command dispatch."""

    @pytest.mark.asyncio
    async def test_revoke_flag_revokes_key(self, capsys):
        from scripts.create_api_key import build_parser, run_command

        key_id = uuid4()
        service = AsyncMock(spec=APIKeyService)
        args = build_parser().parse_args(["--revoke", str(key_id)])

        await run_command(args, service)

        service.revoke_api_key.assert_awaited_once_with(key_id)
        assert str(key_id) in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_list_flag_filters_by_user(self, capsys):
        from scripts.create_api_key import build_parser, run_command

        key = APIKeyData(
            key_id=uuid4(),
            user_id="user-1",
            name="CI",
            key_prefix="cpk_abcdefghijkl",
            status="active",
            created_at=datetime(2026, 1, 1, tzinfo=UTC),
            last_used_at=None,
        )
        service = AsyncMock(spec=APIKeyService)
        service.list_api_keys.return_value = [key]
        args = build_parser().parse_args(["--list", "--user-id", "user-1"])

        await run_command(args, service)

        service.list_api_keys.assert_awaited_once_with(user_id="user-1")
        out = capsys.readouterr().out
        assert str(key.key_id) in out
        assert "1 active key(s)" in out

    def test_list_and_revoke_are_exclusive(self):
        from scripts.create_api_key import build_parser

        with pytest.raises(SystemExit):
            build_parser().parse_args(["--list", "--revoke", str(uuid4())])
