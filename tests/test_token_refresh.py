"""
Tests for the Token Refresh Client.

Provider endpoints are simulated with httpx.MockTransport.
"""

import json
from collections.abc import Callable
from urllib.parse import parse_qs

import httpx
import pytest

from credpool.config import settings
from credpool.models.api import Provider
from credpool.models.domain import RefreshCredential
from credpool.services.token_refresh import (
    EmptyCredentialError,
    InvalidGrantError,
    KiroIdcTokenRefresher,
    KiroSocialTokenRefresher,
    MalformedResponseError,
    QwenTokenRefresher,
    TransientRefreshError,
    build_refreshers,
)

QWEN_URL = "https://chat.qwen.ai/api/v1/oauth2/token"
SOCIAL_URL = "https://prod.{region}.auth.desktop.kiro.dev/refreshToken"
IDC_URL = "https://oidc.{region}.amazonaws.com/token"


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def qwen_refresher(handler: Callable[[httpx.Request], httpx.Response]) -> QwenTokenRefresher:
    return QwenTokenRefresher(QWEN_URL, "client-123", http_client=mock_client(handler))


class TestQwenTokenRefresher:
    """Tests for the Qwen form-encoded exchange."""

    @pytest.mark.asyncio
    async def test_success_parses_grant(self):
        """A 200 with access_token yields a TokenGrant."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "access_token": "A",
                    "refresh_token": "R2",
                    "token_type": "Bearer",
                    "resource_url": "portal.qwen.ai",
                    "expires_in": 7200,
                },
            )

        grant = await qwen_refresher(handler).refresh(RefreshCredential(Provider.QWEN, " R1 "))

        assert grant.access_token == "A"
        assert grant.refresh_token == "R2"
        assert grant.expires_in == 7200
        assert grant.resource_url == "portal.qwen.ai"

        request = seen[0]
        assert str(request.url) == QWEN_URL
        form = parse_qs(request.content.decode())
        assert form == {
            "grant_type": ["refresh_token"],
            "client_id": ["client-123"],
            "refresh_token": ["R1"],
        }

    @pytest.mark.asyncio
    async def test_success_without_optional_fields(self):
        """Only access_token is required."""
        refresher = qwen_refresher(lambda r: httpx.Response(200, json={"access_token": "A"}))

        grant = await refresher.refresh(RefreshCredential(Provider.QWEN, "R"))

        assert grant.refresh_token is None
        assert grant.expires_in is None

    @pytest.mark.asyncio
    async def test_invalid_grant(self):
        """error=invalid_grant is terminal."""
        refresher = qwen_refresher(
            lambda r: httpx.Response(400, json={"error": "invalid_grant", "error_description": "expired"})
        )

        with pytest.raises(InvalidGrantError) as exc_info:
            await refresher.refresh(RefreshCredential(Provider.QWEN, "R"))

        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "invalid_grant"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 429, 500, 502])
    async def test_other_errors_are_transient(self, status_code):
        """Non-2xx without invalid_grant is retryable."""
        refresher = qwen_refresher(lambda r: httpx.Response(status_code, json={"error": "server_error"}))

        with pytest.raises(TransientRefreshError) as exc_info:
            await refresher.refresh(RefreshCredential(Provider.QWEN, "R"))

        assert exc_info.value.status_code == status_code

    @pytest.mark.asyncio
    async def test_missing_access_token_is_malformed(self):
        """2xx without access_token is a distinct malformed failure."""
        refresher = qwen_refresher(lambda r: httpx.Response(200, json={"token_type": "Bearer"}))

        with pytest.raises(MalformedResponseError):
            await refresher.refresh(RefreshCredential(Provider.QWEN, "R"))

    @pytest.mark.asyncio
    async def test_non_json_body_is_transient(self):
        refresher = qwen_refresher(lambda r: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(TransientRefreshError):
            await refresher.refresh(RefreshCredential(Provider.QWEN, "R"))

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientRefreshError):
            await qwen_refresher(handler).refresh(RefreshCredential(Provider.QWEN, "R"))

    @pytest.mark.asyncio
    async def test_blank_token_sends_nothing(self):
        """EmptyCredential is raised before any request."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"access_token": "A"})

        with pytest.raises(EmptyCredentialError):
            await qwen_refresher(handler).refresh(RefreshCredential(Provider.QWEN, "   "))

        assert calls == []

    @pytest.mark.asyncio
    async def test_error_message_never_contains_token(self):
        """Failures do not echo the refresh token."""
        refresher = qwen_refresher(lambda r: httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(InvalidGrantError) as exc_info:
            await refresher.refresh(RefreshCredential(Provider.QWEN, "super-secret-token"))

        assert "super-secret-token" not in str(exc_info.value)


class TestKiroSocialTokenRefresher:
    """Tests for the Kiro desktop (social) exchange."""

    @pytest.mark.asyncio
    async def test_success_uses_region_and_camel_case(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"accessToken": "A", "refreshToken": "R2", "expiresIn": 3600, "profileArn": "arn:x"},
            )

        refresher = KiroSocialTokenRefresher(SOCIAL_URL, "us-east-1", http_client=mock_client(handler))
        grant = await refresher.refresh(
            RefreshCredential(Provider.KIRO_SOCIAL, "R1", region="eu-west-1")
        )

        assert grant.access_token == "A"
        assert grant.refresh_token == "R2"
        assert grant.profile_arn == "arn:x"
        assert str(seen[0].url) == "https://prod.eu-west-1.auth.desktop.kiro.dev/refreshToken"
        assert json.loads(seen[0].content) == {"refreshToken": "R1"}

    @pytest.mark.asyncio
    async def test_default_region(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"accessToken": "A"})

        refresher = KiroSocialTokenRefresher(SOCIAL_URL, "us-east-1", http_client=mock_client(handler))
        await refresher.refresh(RefreshCredential(Provider.KIRO_SOCIAL, "R"))

        assert seen[0].url.host == "prod.us-east-1.auth.desktop.kiro.dev"

    @pytest.mark.asyncio
    async def test_unauthorized_is_invalid_grant(self):
        """The desktop endpoint rejects a dead refresh token with 401."""
        refresher = KiroSocialTokenRefresher(
            SOCIAL_URL, "us-east-1", http_client=mock_client(lambda r: httpx.Response(401))
        )

        with pytest.raises(InvalidGrantError):
            await refresher.refresh(RefreshCredential(Provider.KIRO_SOCIAL, "R"))

    @pytest.mark.asyncio
    async def test_snake_case_body_is_malformed(self):
        refresher = KiroSocialTokenRefresher(
            SOCIAL_URL,
            "us-east-1",
            http_client=mock_client(lambda r: httpx.Response(200, json={"access_token": "A"})),
        )

        with pytest.raises(MalformedResponseError):
            await refresher.refresh(RefreshCredential(Provider.KIRO_SOCIAL, "R"))


class TestKiroIdcTokenRefresher:
    """Tests for the AWS SSO OIDC exchange."""

    @pytest.mark.asyncio
    async def test_request_carries_client_credentials(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"accessToken": "A", "expiresIn": 28800})

        refresher = KiroIdcTokenRefresher(IDC_URL, "us-east-1", http_client=mock_client(handler))
        grant = await refresher.refresh(
            RefreshCredential(Provider.KIRO_IDC, "R", client_id="cid", client_secret="cs")
        )

        assert grant.expires_in == 28800
        assert str(seen[0].url) == "https://oidc.us-east-1.amazonaws.com/token"
        assert json.loads(seen[0].content) == {
            "grantType": "refresh_token",
            "clientId": "cid",
            "clientSecret": "cs",
            "refreshToken": "R",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "client_id,client_secret", [(None, "cs"), ("cid", None), ("", ""), ("  ", "cs")]
    )
    async def test_missing_client_credentials(self, client_id, client_secret):
        refresher = KiroIdcTokenRefresher(
            IDC_URL, "us-east-1", http_client=mock_client(lambda r: httpx.Response(200))
        )

        with pytest.raises(EmptyCredentialError):
            await refresher.refresh(
                RefreshCredential(
                    Provider.KIRO_IDC, "R", client_id=client_id, client_secret=client_secret
                )
            )

    @pytest.mark.asyncio
    async def test_aws_invalid_grant_exception(self):
        """AWS reports a dead token as InvalidGrantException."""
        refresher = KiroIdcTokenRefresher(
            IDC_URL,
            "us-east-1",
            http_client=mock_client(
                lambda r: httpx.Response(400, json={"error": "InvalidGrantException"})
            ),
        )

        with pytest.raises(InvalidGrantError):
            await refresher.refresh(
                RefreshCredential(Provider.KIRO_IDC, "R", client_id="cid", client_secret="cs")
            )

    @pytest.mark.asyncio
    async def test_idc_401_is_transient(self):
        """Only the social endpoint treats a bare 401 as a dead token."""
        refresher = KiroIdcTokenRefresher(
            IDC_URL, "us-east-1", http_client=mock_client(lambda r: httpx.Response(401))
        )

        with pytest.raises(TransientRefreshError):
            await refresher.refresh(
                RefreshCredential(Provider.KIRO_IDC, "R", client_id="cid", client_secret="cs")
            )


class TestBuildRefreshers:
    @pytest.mark.asyncio
    async def test_one_refresher_per_provider(self):
        client = mock_client(lambda r: httpx.Response(200, json={"access_token": "A"}))
        refreshers = build_refreshers(settings, http_client=client)

        assert set(refreshers) == set(Provider)
        assert isinstance(refreshers[Provider.QWEN], QwenTokenRefresher)
        assert isinstance(refreshers[Provider.KIRO_SOCIAL], KiroSocialTokenRefresher)
        assert isinstance(refreshers[Provider.KIRO_IDC], KiroIdcTokenRefresher)
        assert all(r.http_client is client for r in refreshers.values())

        await client.aclose()
