"""Shared API dependencies and error mapping."""

import logging

from fastapi import HTTPException, Request

from chainrail.errors import (
    AllEndpointsUnhealthy,
    BroadcastRejected,
    ChainError,
    EndpointError,
    InsufficientFunds,
    InvalidAddress,
    InvalidAmount,
    InvalidOptions,
    KeyDecryptionFailed,
    NoFundsAvailable,
    UnsupportedChain,
)
from chainrail.services import TransactionService

logger = logging.getLogger(__name__)

# First match wins, so subclasses must precede their bases
ERROR_STATUS: list[tuple[type, int]] = [
    (UnsupportedChain, 400),
    (InvalidAddress, 400),
    (InvalidAmount, 400),
    (InvalidOptions, 400),
    (KeyDecryptionFailed, 401),
    (NoFundsAvailable, 422),
    (InsufficientFunds, 422),
    (BroadcastRejected, 409),
    (AllEndpointsUnhealthy, 503),
    (EndpointError, 503),
]


def get_service(request: Request) -> TransactionService:
    """Get the transaction service attached to the application."""
    return request.app.state.service


def to_http_error(error: ChainError) -> HTTPException:
    """Map a typed chain error to an HTTP error."""
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            break
    else:
        status_code = 502

    if status_code >= 500:
        logger.warning(f"{type(error).__name__}: {error}")
    return HTTPException(
        status_code=status_code,
        detail={"error": type(error).__name__, "message": str(error)},
    )
