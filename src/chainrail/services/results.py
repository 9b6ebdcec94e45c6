"""Normalized transaction result returned by the dispatch service."""

from dataclasses import dataclass
from typing import Optional

from chainrail.builders.base import TxStatus


@dataclass
class TransactionResult:
    """Chain-agnostic view of a transaction.

    ``block_number`` is set for UTXO and EVM chains, ``slot`` for Solana.
    """
    chain: str
    tx_reference: str
    status: TxStatus = TxStatus.PENDING
    block_number: Optional[int] = None
    slot: Optional[int] = None
    confirmations: Optional[int] = None

    @property
    def block_height_or_slot(self) -> Optional[int]:
        return self.slot if self.slot is not None else self.block_number

    def to_dict(self) -> dict:
        """Render as the public result envelope."""
        return {
            "chain": self.chain,
            "txReference": self.tx_reference,
            "status": self.status.value,
            "blockHeightOrSlot": self.block_height_or_slot,
            "confirmations": self.confirmations,
        }
