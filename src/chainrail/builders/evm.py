"""EVM (account/nonce) transaction builder.

Serves Ethereum and every EVM-compatible chain; instances differ only by
chain ID and endpoint set. Every RPC call (nonce, fee data, gas estimate,
broadcast, receipt) selects a healthy endpoint independently, so a degraded
endpoint found mid-flow only affects the next call.

Known limitation: the pending-nonce fetch is not serialized. Concurrent sends
from the same sender can collide on a nonce; callers must serialize them.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from eth_account import Account
from web3 import Web3

from chainrail.builders.base import (
    AccountUnsignedTransaction,
    BroadcastResult,
    ChainBuilder,
    SendOptions,
    SignedTransaction,
    TxStatus,
    from_base_units,
)
from chainrail.chains import ChainFamily
from chainrail.errors import (
    AllEndpointsUnhealthy,
    BroadcastRejected,
    ChainError,
    EndpointError,
    InvalidAddress,
    InvalidAmount,
    RpcError,
)
from chainrail.rpc.client import JsonRpcClient
from chainrail.rpc.health import EndpointRegistry

logger = logging.getLogger(__name__)

ETH_DECIMALS = 18
DEFAULT_PRIORITY_FEE = 10**9  # 1 gwei when eth_maxPriorityFeePerGas is unsupported


def _hex_int(value) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


@dataclass
class FeeData:
    """Network fee suggestion. Either field group may be missing."""
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def supports_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None and self.max_priority_fee_per_gas is not None


class EvmBuilder(ChainBuilder):
    """Ethereum-style transaction builder.

    Signing binds ``chain_id`` into the signature, so a transaction signed
    for one chain cannot be replayed on another.
    """

    family = ChainFamily.ACCOUNT

    def __init__(
        self,
        chain: str,
        registry: EndpointRegistry,
        rpc: JsonRpcClient,
        chain_id: int,
        receipt_timeout: float = 120.0,
        poll_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(chain, registry, rpc)
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep

    def validate_address(self, address: str) -> bool:
        """Validate Ethereum address format (checksum enforced if mixed case)."""
        return bool(address) and Web3.is_address(address)

    # ======================
    # Reads
    # ======================

    async def get_balance(self, address: str) -> str:
        """Get native balance in ether units."""
        wei = _hex_int(await self._rpc("eth_getBalance", [address, "latest"]))
        return from_base_units(wei, ETH_DECIMALS)

    async def get_nonce(self, address: str) -> int:
        """Get pending transaction count, counting unconfirmed outbound txs."""
        return _hex_int(await self._rpc("eth_getTransactionCount", [address, "pending"]))

    async def get_fee_data(self) -> FeeData:
        """Get network fee suggestion.

        EIP-1559 fields are derived from the latest block's base fee
        (``maxFee = 2 * baseFee + priorityFee``); legacy gas price is fetched
        only when the chain reports no base fee.
        """
        block = await self._rpc("eth_getBlockByNumber", ["latest", False]) or {}
        base_fee = block.get("baseFeePerGas")

        if base_fee is not None:
            try:
                priority = _hex_int(await self._rpc("eth_maxPriorityFeePerGas"))
            except RpcError:
                priority = DEFAULT_PRIORITY_FEE
            return FeeData(
                max_fee_per_gas=2 * _hex_int(base_fee) + priority,
                max_priority_fee_per_gas=priority,
            )

        return FeeData(gas_price=_hex_int(await self._rpc("eth_gasPrice")))

    async def estimate_gas(self, tx: dict) -> int:
        """Estimate gas by simulating the pending transaction shape."""
        call = {key: hex(value) if isinstance(value, int) else value for key, value in tx.items()}
        return _hex_int(await self._rpc("eth_estimateGas", [call]))

    # ======================
    # Build / sign / broadcast
    # ======================

    async def resolve_fees(self, options: SendOptions) -> dict:
        """Pick exactly one fee mode.

        Precedence, first match wins:
        1. Caller gas price
        2. Caller EIP-1559 pair
        3. Network EIP-1559 pair
        4. Network legacy gas price
        """
        if options.gas_price is not None:
            return {"gas_price": options.gas_price}
        if options.max_fee_per_gas is not None and options.max_priority_fee_per_gas is not None:
            return {
                "max_fee_per_gas": options.max_fee_per_gas,
                "max_priority_fee_per_gas": options.max_priority_fee_per_gas,
            }

        fee_data = await self.get_fee_data()
        if fee_data.supports_eip1559:
            return {
                "max_fee_per_gas": fee_data.max_fee_per_gas,
                "max_priority_fee_per_gas": fee_data.max_priority_fee_per_gas,
            }
        if fee_data.gas_price:
            return {"gas_price": fee_data.gas_price}
        raise ChainError(f"No fee data available for {self.chain}")

    async def build(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        options: SendOptions,
    ) -> AccountUnsignedTransaction:
        """Build an unsigned transfer with nonce, fee mode and gas limit."""
        sender = Web3.to_checksum_address(from_address)
        recipient = Web3.to_checksum_address(to_address)
        value_wei = int(Web3.to_wei(amount, "ether"))
        if value_wei <= 0:
            raise InvalidAmount(f"Amount {amount} is below one wei")

        nonce = await self.get_nonce(sender)
        fees = await self.resolve_fees(options)

        if options.gas_limit:
            gas_limit = options.gas_limit
        else:
            shape = {"from": sender, "to": recipient, "value": value_wei}
            if "gas_price" in fees:
                shape["gasPrice"] = fees["gas_price"]
            else:
                shape["maxFeePerGas"] = fees["max_fee_per_gas"]
                shape["maxPriorityFeePerGas"] = fees["max_priority_fee_per_gas"]
            gas_limit = await self.estimate_gas(shape)

        return AccountUnsignedTransaction(
            from_address=sender,
            to=recipient,
            value_wei=value_wei,
            nonce=nonce,
            chain_id=self.chain_id,
            gas_limit=gas_limit,
            **fees,
        )

    def sign(self, unsigned: AccountUnsignedTransaction, key: bytearray) -> SignedTransaction:
        """Sign with chain ID bound into the signature domain."""
        account = Account.from_key(bytes(key))
        if account.address.lower() != unsigned.from_address.lower():
            raise InvalidAddress("Signing key does not control the sender address")

        signed = account.sign_transaction(unsigned.to_tx_dict())
        raw = "0x" + bytes(signed.raw_transaction).hex()
        tx_hash = "0x" + bytes(signed.hash).hex()
        return SignedTransaction(chain=self.chain, raw=raw, tx_reference=tx_hash)

    async def broadcast(self, signed: SignedTransaction, options: Optional[SendOptions] = None) -> BroadcastResult:
        """Broadcast and, unless disabled, wait for one confirmation.

        Cancelling the returned coroutine only stops the wait; a transaction
        that was accepted by a node stays broadcast.

        Raises:
            BroadcastRejected: If the node rejects the transaction
        """
        options = options or SendOptions()

        async def send(endpoint: str) -> str:
            try:
                return await self.rpc.call(endpoint, "eth_sendRawTransaction", [signed.raw])
            except RpcError as e:
                if "already known" in e.message.lower():
                    return signed.tx_reference
                raise

        try:
            tx_hash = await self.registry.call_with_failover(self.chain, send)
        except RpcError as e:
            raise BroadcastRejected(e.message) from e

        if tx_hash and tx_hash.lower() != signed.tx_reference.lower():
            logger.warning(f"Node returned hash {tx_hash}, expected {signed.tx_reference}")
        logger.info(f"{self.chain} transaction sent: {signed.tx_reference}")

        if not options.wait_for_receipt:
            return BroadcastResult(tx_reference=signed.tx_reference)
        return await self.wait_for_receipt(signed.tx_reference)

    async def wait_for_receipt(self, tx_hash: str) -> BroadcastResult:
        """Poll for the receipt until one confirmation or timeout.

        Returns a pending result on timeout; the transaction may still confirm.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout

        while True:
            try:
                receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
            except (EndpointError, AllEndpointsUnhealthy, RpcError) as e:
                logger.warning(f"Receipt lookup for {tx_hash} failed, will retry: {e}")
                receipt = None

            if receipt and receipt.get("blockNumber"):
                status = TxStatus.CONFIRMED if _hex_int(receipt.get("status")) == 1 else TxStatus.FAILED
                block_number = _hex_int(receipt["blockNumber"])
                logger.info(f"{self.chain} transaction {tx_hash} mined in block {block_number} ({status.value})")
                return BroadcastResult(tx_reference=tx_hash, status=status, block_number=block_number)

            if loop.time() >= deadline:
                logger.warning(f"{self.chain} transaction {tx_hash} not mined after {self.receipt_timeout}s")
                return BroadcastResult(tx_reference=tx_hash)

            await self._sleep(self.poll_interval)

    def __repr__(self) -> str:
        return f"EvmBuilder(chain={self.chain}, chain_id={self.chain_id})"
