"""Shared FastAPI dependencies for the Carteira API."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status

from carteira.config import get_settings
from carteira.core.errors import (
    BacktestConfigError,
    BacktestDataError,
    BacktestTimeoutError,
    InvalidTransactionState,
    LedgerError,
    MarketDataError,
    NotFoundError,
    TransactionValidationError,
)


def verify_internal_token(x_internal_token: str | None = Header(default=None)) -> None:
    settings = get_settings()
    if settings.internal_auth_token is None:
        return
    if x_internal_token != settings.internal_auth_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")


InternalAuth = Depends(verify_internal_token)


@dataclass
class RequestContext:
    user_id: str


def get_request_context(x_user_id: str | None = Header(default=None)) -> RequestContext:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user context")
    return RequestContext(user_id=x_user_id)


DOMAIN_ERRORS = (
    LedgerError,
    BacktestConfigError,
    BacktestDataError,
    BacktestTimeoutError,
    MarketDataError,
)


def to_http_exception(exc: Exception) -> HTTPException:
    """Translate a domain exception into the HTTP status the API documents."""

    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidTransactionState):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, TransactionValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "errors": exc.errors},
        )
    if isinstance(exc, BacktestDataError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "tickers": exc.tickers},
        )
    if isinstance(exc, BacktestConfigError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, BacktestTimeoutError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc))
    if isinstance(exc, MarketDataError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


__all__ = [
    "DOMAIN_ERRORS",
    "InternalAuth",
    "RequestContext",
    "get_request_context",
    "to_http_exception",
    "verify_internal_token",
]
