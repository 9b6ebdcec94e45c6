"""Transaction status lookup by reference.

Reads chain state directly over JSON-RPC (bypassing the builders) and
normalizes it to pending / confirmed / failed. A transaction the chain does
not know about is reported as pending, never as an error; only endpoint
exhaustion propagates.
"""

import logging
from typing import Any, Optional

from chainrail.builders.base import TxStatus
from chainrail.chains import ChainFamily, get_chain
from chainrail.errors import RpcError, UnsupportedChain
from chainrail.rpc.client import JsonRpcClient
from chainrail.rpc.health import EndpointRegistry
from chainrail.services.results import TransactionResult

logger = logging.getLogger(__name__)


def _hex_int(value) -> int:
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


class StatusPoller:
    """Looks up transaction status for every supported chain family."""

    def __init__(self, registry: EndpointRegistry, rpc: JsonRpcClient):
        self.registry = registry
        self.rpc = rpc

    async def _call(self, chain: str, method: str, params: Optional[list] = None) -> Any:
        return await self.registry.call_with_failover(
            chain,
            lambda endpoint: self.rpc.call(endpoint, method, params),
        )

    async def get_status(self, chain: str, tx_reference: str) -> TransactionResult:
        """Get the normalized status of a transaction.

        Raises:
            UnsupportedChain: If the chain is not catalogued
            AllEndpointsUnhealthy: If no endpoint could answer
        """
        config = get_chain(chain)
        if config is None:
            raise UnsupportedChain(chain)
        chain = chain.strip().lower()

        if config.family == ChainFamily.UTXO:
            return await self._utxo_status(chain, tx_reference)
        if config.family == ChainFamily.ACCOUNT:
            return await self._evm_status(chain, tx_reference)
        return await self._solana_status(chain, tx_reference)

    async def _utxo_status(self, chain: str, txid: str) -> TransactionResult:
        result = TransactionResult(chain=chain, tx_reference=txid)
        try:
            tx = await self._call(chain, "getrawtransaction", [txid, True])
        except RpcError as e:
            # -5: No such mempool or blockchain transaction
            logger.debug(f"{chain} transaction {txid} not found: {e.message}")
            return result

        if not tx:
            return result

        confirmations = int(tx.get("confirmations") or 0)
        result.confirmations = confirmations
        if confirmations > 0:
            result.status = TxStatus.CONFIRMED
            if tx.get("blockheight") is not None:
                result.block_number = int(tx["blockheight"])
            else:
                tip = int(await self._call(chain, "getblockcount"))
                result.block_number = tip - confirmations + 1
        return result

    async def _evm_status(self, chain: str, tx_hash: str) -> TransactionResult:
        result = TransactionResult(chain=chain, tx_reference=tx_hash)
        receipt = await self._call(chain, "eth_getTransactionReceipt", [tx_hash])
        if not receipt or receipt.get("blockNumber") is None:
            return result

        block_number = _hex_int(receipt["blockNumber"])
        head = _hex_int(await self._call(chain, "eth_blockNumber"))

        result.status = TxStatus.CONFIRMED if _hex_int(receipt.get("status", 0)) == 1 else TxStatus.FAILED
        result.block_number = block_number
        result.confirmations = max(0, head - block_number + 1)
        return result

    async def _solana_status(self, chain: str, signature: str) -> TransactionResult:
        result = TransactionResult(chain=chain, tx_reference=signature)
        tx = await self._call(
            chain,
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not tx:
            return result

        slot = tx.get("slot")
        meta = tx.get("meta") or {}
        result.status = TxStatus.FAILED if meta.get("err") is not None else TxStatus.CONFIRMED
        result.slot = slot
        if slot is not None:
            current = int(await self._call(chain, "getSlot", [{"commitment": "confirmed"}]))
            result.confirmations = max(0, current - int(slot))
        return result
