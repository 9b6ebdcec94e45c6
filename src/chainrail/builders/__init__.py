"""Per-family transaction builders."""

from chainrail.builders.base import (
    BroadcastResult,
    ChainBuilder,
    SendOptions,
    SignedTransaction,
    TxStatus,
)
from chainrail.builders.factory import create_builder, create_builders

__all__ = [
    "BroadcastResult",
    "ChainBuilder",
    "SendOptions",
    "SignedTransaction",
    "TxStatus",
    "create_builder",
    "create_builders",
]
