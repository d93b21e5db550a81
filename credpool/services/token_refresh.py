"""
Token Refresh Client - provider-specific OAuth refresh-token exchanges.

Each TokenRefresher performs one exchange and classifies the outcome.
Refreshers are pure: persistence is the pool manager's job.

SECURITY: Refresh tokens, access tokens and client secrets are never
logged or placed in exception messages. Only the provider, the HTTP
status and the provider's error code are reported.
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar

import httpx
from structlog import get_logger

from credpool.config import Settings
from credpool.models.api import Provider
from credpool.models.domain import RefreshCredential, TokenGrant
from credpool.observability.tracing import trace_operation

logger = get_logger(__name__)


# ============================================================================
# Refresh Errors
# ============================================================================


class RefreshError(Exception):
    """Base class for refresh exchange failures."""

    def __init__(self, provider: Provider, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider.value} refresh failed: {message}")


class EmptyCredentialError(RefreshError):
    """Refresh token (or required client credential) is blank. No request was sent."""

    def __init__(self, provider: Provider, field_name: str = "refresh_token") -> None:
        self.field_name = field_name
        super().__init__(provider, f"{field_name} is empty")


class InvalidGrantError(RefreshError):
    """Provider rejected the refresh token itself. Terminal for this token."""

    def __init__(self, provider: Provider, status_code: int, error_code: str | None) -> None:
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(provider, f"invalid grant (HTTP {status_code}, {error_code})")


class TransientRefreshError(RefreshError):
    """Network error, unexpected status or unreadable body. Retryable."""

    def __init__(self, provider: Provider, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(provider, message)


class MalformedResponseError(TransientRefreshError):
    """Successful status but no usable access token in the body."""

    def __init__(self, provider: Provider, status_code: int) -> None:
        super().__init__(provider, "response has no access token", status_code=status_code)


# ============================================================================
# Helpers
# ============================================================================


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    # bool is an int subclass; a boolean expires_in is garbage
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _error_code(data: Any) -> str | None:
    """Extract an OAuth / AWS error code from an error body."""
    if not isinstance(data, dict):
        return None
    for key in ("error", "__type"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


# ============================================================================
# Refreshers
# ============================================================================


class TokenRefresher(ABC):
    """
    Capability: exchange a refresh token for a new access token.

    Subclasses provide the request shape and the response field names;
    error classification is shared.
    """

    provider: ClassVar[Provider]
    INVALID_GRANT_CODES: ClassVar[frozenset[str]] = frozenset({"invalid_grant"})

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def validate(self, credential: RefreshCredential) -> str:
        """Return the normalized refresh token or raise EmptyCredentialError."""
        refresh_token = (credential.refresh_token or "").strip()
        if not refresh_token:
            raise EmptyCredentialError(self.provider)
        return refresh_token

    @abstractmethod
    def build_request(self, credential: RefreshCredential, refresh_token: str) -> tuple[str, dict[str, Any]]:
        """Return (url, httpx request kwargs) for the exchange."""

    @abstractmethod
    def parse_grant(self, data: dict[str, Any]) -> TokenGrant | None:
        """Map a 2xx JSON body to a TokenGrant, or None when no access token is present."""

    def is_invalid_grant(self, status_code: int, error_code: str | None) -> bool:
        """Whether a non-2xx response means the refresh token itself is dead."""
        return error_code in self.INVALID_GRANT_CODES

    async def refresh(self, credential: RefreshCredential) -> TokenGrant:
        """
        Perform one refresh exchange.

        Raises:
            EmptyCredentialError: Blank credential, nothing sent
            InvalidGrantError: Refresh token rejected by the provider
            MalformedResponseError: 2xx without an access token
            TransientRefreshError: Network failure, other status, unreadable body
        """
        refresh_token = self.validate(credential)
        url, request_kwargs = self.build_request(credential, refresh_token)

        with trace_operation("token_refresh_exchange", provider=self.provider.value) as span:
            try:
                response = await self.http_client.post(url, **request_kwargs)
            except httpx.HTTPError as e:
                logger.warning(
                    "token_refresh_network_error",
                    provider=self.provider.value,
                    error_type=type(e).__name__,
                )
                raise TransientRefreshError(self.provider, type(e).__name__) from e

            span.set_attribute("http.status_code", response.status_code)

            try:
                data = response.json()
            except ValueError:
                data = None

            if not response.is_success:
                error_code = _error_code(data)
                if self.is_invalid_grant(response.status_code, error_code):
                    logger.warning(
                        "token_refresh_invalid_grant",
                        provider=self.provider.value,
                        status=response.status_code,
                        error_code=error_code,
                    )
                    raise InvalidGrantError(self.provider, response.status_code, error_code)

                logger.warning(
                    "token_refresh_rejected",
                    provider=self.provider.value,
                    status=response.status_code,
                    error_code=error_code,
                )
                raise TransientRefreshError(
                    self.provider,
                    f"HTTP {response.status_code}",
                    status_code=response.status_code,
                )

            if not isinstance(data, dict):
                logger.warning(
                    "token_refresh_unreadable_body",
                    provider=self.provider.value,
                    status=response.status_code,
                )
                raise TransientRefreshError(
                    self.provider, "response body is not a JSON object", response.status_code
                )

            grant = self.parse_grant(data)
            if grant is None:
                logger.error(
                    "token_refresh_malformed_response",
                    provider=self.provider.value,
                    status=response.status_code,
                    fields=sorted(data.keys()),
                )
                raise MalformedResponseError(self.provider, response.status_code)

            span.set_attribute("credpool.refresh_token_rotated", grant.refresh_token is not None)
            return grant

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


class QwenTokenRefresher(TokenRefresher):
    """Qwen OAuth2 refresh: form-encoded POST with the fixed Qwen Code client id."""

    provider = Provider.QWEN

    def __init__(
        self,
        token_url: str,
        client_id: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self.token_url = token_url
        self.client_id = client_id

    def build_request(self, credential: RefreshCredential, refresh_token: str) -> tuple[str, dict[str, Any]]:
        return self.token_url, {
            "data": {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "refresh_token": refresh_token,
            },
            "headers": {"Accept": "application/json"},
        }

    def parse_grant(self, data: dict[str, Any]) -> TokenGrant | None:
        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            return None
        return TokenGrant(
            access_token=access_token,
            refresh_token=_optional_str(data, "refresh_token"),
            token_type=_optional_str(data, "token_type"),
            resource_url=_optional_str(data, "resource_url"),
            expires_in=_optional_int(data, "expires_in"),
        )


class _KiroTokenRefresher(TokenRefresher):
    """Shared camelCase response handling for both Kiro auth methods."""

    INVALID_GRANT_CODES = frozenset({"invalid_grant", "InvalidGrantException"})

    def __init__(
        self,
        url_template: str,
        default_region: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self.url_template = url_template
        self.default_region = default_region

    def url_for(self, credential: RefreshCredential) -> str:
        return self.url_template.format(region=credential.region or self.default_region)

    def parse_grant(self, data: dict[str, Any]) -> TokenGrant | None:
        access_token = data.get("accessToken")
        if not isinstance(access_token, str) or not access_token.strip():
            return None
        return TokenGrant(
            access_token=access_token,
            refresh_token=_optional_str(data, "refreshToken"),
            token_type=_optional_str(data, "tokenType"),
            expires_in=_optional_int(data, "expiresIn"),
            profile_arn=_optional_str(data, "profileArn"),
        )


class KiroSocialTokenRefresher(_KiroTokenRefresher):
    """Kiro desktop auth (social login) refresh."""

    provider = Provider.KIRO_SOCIAL

    def build_request(self, credential: RefreshCredential, refresh_token: str) -> tuple[str, dict[str, Any]]:
        return self.url_for(credential), {
            "json": {"refreshToken": refresh_token},
            "headers": {"Accept": "application/json"},
        }

    def is_invalid_grant(self, status_code: int, error_code: str | None) -> bool:
        # The desktop endpoint answers a dead refresh token with a bare 401
        return status_code == 401 or super().is_invalid_grant(status_code, error_code)


class KiroIdcTokenRefresher(_KiroTokenRefresher):
    """Kiro IAM Identity Center (BuilderId) refresh via AWS SSO OIDC CreateToken."""

    provider = Provider.KIRO_IDC

    def validate(self, credential: RefreshCredential) -> str:
        refresh_token = super().validate(credential)
        if not (credential.client_id or "").strip():
            raise EmptyCredentialError(self.provider, "client_id")
        if not (credential.client_secret or "").strip():
            raise EmptyCredentialError(self.provider, "client_secret")
        return refresh_token

    def build_request(self, credential: RefreshCredential, refresh_token: str) -> tuple[str, dict[str, Any]]:
        return self.url_for(credential), {
            "json": {
                "grantType": "refresh_token",
                "clientId": credential.client_id,
                "clientSecret": credential.client_secret,
                "refreshToken": refresh_token,
            },
            "headers": {"Accept": "application/json"},
        }


def build_refreshers(
    settings: Settings, http_client: httpx.AsyncClient | None = None
) -> dict[Provider, TokenRefresher]:
    """Create one refresher per provider, optionally sharing an HTTP client."""
    timeout = settings.refresh_timeout_seconds
    return {
        Provider.QWEN: QwenTokenRefresher(
            token_url=settings.qwen_token_url,
            client_id=settings.qwen_client_id,
            http_client=http_client,
            timeout=timeout,
        ),
        Provider.KIRO_SOCIAL: KiroSocialTokenRefresher(
            url_template=settings.kiro_social_refresh_url,
            default_region=settings.kiro_region,
            http_client=http_client,
            timeout=timeout,
        ),
        Provider.KIRO_IDC: KiroIdcTokenRefresher(
            url_template=settings.kiro_idc_token_url,
            default_region=settings.kiro_region,
            http_client=http_client,
            timeout=timeout,
        ),
    }
