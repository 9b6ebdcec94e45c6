"""Dispatch and status services."""

from chainrail.services.results import TransactionResult
from chainrail.services.status_poller import StatusPoller
from chainrail.services.transaction_service import TransactionService, create_service

__all__ = [
    "StatusPoller",
    "TransactionResult",
    "TransactionService",
    "create_service",
]
