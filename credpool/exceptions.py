"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
NO SECRETS - Messages carry ids and providers, never tokens.
"""

from credpool.models.api import Provider


class PoolError(Exception):
    """Base exception for all credential pool errors."""

    pass


class InvalidInputError(PoolError):
    """Raised when the caller supplies unusable account fields."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid input: {message}")


class DuplicateAccountError(PoolError):
    """Raised when an account with the same identity already exists."""

    def __init__(self, existing_id: str) -> None:
        self.existing_id = existing_id
        super().__init__(f"Duplicate account: existing ID {existing_id}")


class AccountNotFoundError(PoolError):
    """Raised when account doesn't exist."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class ForbiddenError(PoolError):
    """Raised when the caller is neither the owner nor an admin."""

    def __init__(self, account_id: str | None, actor: str) -> None:
        self.account_id = account_id
        self.actor = actor
        target = account_id or "admin resource"
        super().__init__(f"User {actor} may not manage {target}")


class CredentialExpiredError(PoolError):
    """Raised when the refresh token was rejected and the owner must re-authenticate."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Refresh token for account {account_id} is no longer valid")


class TemporarilyUnavailableError(PoolError):
    """Raised when a refresh failed for a retryable reason."""

    def __init__(self, account_id: str, reason: str) -> None:
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Account {account_id} temporarily unavailable: {reason}")


class NoAccountAvailableError(PoolError):
    """Raised when no eligible account exists for a selection."""

    def __init__(self, provider: Provider) -> None:
        self.provider = provider
        super().__init__(f"No available {provider.value} account")


class AuthenticationError(PoolError):
    """Raised when authentication fails (missing or unknown API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class APIKeyNotFoundError(PoolError):
    """Raised when an API key id doesn't exist."""

    def __init__(self, key_id: str) -> None:
        self.key_id = key_id
        super().__init__(f"API key not found: {key_id}")
