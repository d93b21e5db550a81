"""
Error Mapping - pool exceptions to HTTP responses.

Every PoolError raised by a route is rendered as an ErrorResponse body.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from structlog import get_logger

from credpool.exceptions import (
    AccountNotFoundError,
    APIKeyNotFoundError,
    AuthenticationError,
    CredentialExpiredError,
    DuplicateAccountError,
    ForbiddenError,
    InvalidInputError,
    NoAccountAvailableError,
    PoolError,
    TemporarilyUnavailableError,
)
from credpool.models.api import ErrorResponse
from credpool.observability.metrics import metrics

logger = get_logger(__name__)

STATUS_BY_ERROR: tuple[tuple[type[PoolError], int], ...] = (
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (AccountNotFoundError, status.HTTP_404_NOT_FOUND),
    (APIKeyNotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateAccountError, status.HTTP_409_CONFLICT),
    (CredentialExpiredError, status.HTTP_409_CONFLICT),
    (TemporarilyUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (NoAccountAvailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: PoolError) -> int:
    """HTTP status for a pool error; unmapped errors are server errors."""
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def pool_error_handler(request: Request, exc: PoolError) -> JSONResponse:
    """FastAPI exception handler for PoolError."""
    status_code = status_for(exc)
    body = ErrorResponse(
        error=str(exc),
        existing_account_id=exc.existing_id if isinstance(exc, DuplicateAccountError) else None,
    )

    metrics.record_error(type(exc).__name__, "api")
    log = logger.error if status_code >= 500 and status_code != 503 else logger.info
    log(
        "pool_error_response",
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        error_type=type(exc).__name__,
    )

    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    if isinstance(exc, TemporarilyUnavailableError):
        headers = {"Retry-After": "5"}
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )
