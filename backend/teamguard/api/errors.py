"""Mapping of domain exceptions to HTTP responses.

Authentication failures all look the same to the caller, and so do
authorization failures; the concrete error type only appears in logs.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from teamguard.core.errors import (
    AuthenticationError,
    AuthorizationError,
    CredentialDeactivatedError,
    CredentialNotFoundError,
    EvaluationError,
    SyncRecordNotFoundError,
)
from teamguard.core.logging import get_logger

logger = get_logger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers for the TeamGuard exception hierarchy."""

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Not authorized"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(AuthorizationError)
    async def authorization_error_handler(request: Request, exc: AuthorizationError):
        logger.info(
            "Request forbidden",
            failure=type(exc).__name__,
            capabilities=exc.capabilities,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"detail": "Forbidden"},
        )

    @app.exception_handler(EvaluationError)
    async def evaluation_error_handler(request: Request, exc: EvaluationError):
        logger.error("Authorization unavailable, request denied", path=request.url.path)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Authorization service unavailable"},
        )

    @app.exception_handler(CredentialNotFoundError)
    async def credential_not_found_handler(request: Request, exc: CredentialNotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": "Integration not found"},
        )

    @app.exception_handler(CredentialDeactivatedError)
    async def credential_deactivated_handler(request: Request, exc: CredentialDeactivatedError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "Integration is deactivated; re-authentication required"},
        )

    @app.exception_handler(SyncRecordNotFoundError)
    async def sync_record_not_found_handler(request: Request, exc: SyncRecordNotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": "Sync record not found"},
        )
