"""Solana (recent-blockhash) transaction builder.

Uses solders for transaction construction and signing, and raw JSON-RPC for
everything that touches the network.

A Solana transaction is valid only while its recent blockhash is; the
blockhash is fetched during build, immediately before signing, and is never
cached across sends.
"""

import asyncio
import base64
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from chainrail.builders.base import (
    BlockhashUnsignedTransaction,
    BroadcastResult,
    ChainBuilder,
    SendOptions,
    SignedTransaction,
    TxStatus,
    from_base_units,
    to_base_units,
)
from chainrail.chains import ChainFamily
from chainrail.errors import (
    AllEndpointsUnhealthy,
    BroadcastRejected,
    ChainError,
    EndpointError,
    InvalidAddress,
    KeyDecryptionFailed,
    RpcError,
)
from chainrail.rpc.client import JsonRpcClient
from chainrail.rpc.health import EndpointRegistry

logger = logging.getLogger(__name__)

SOL_DECIMALS = 9
COMMITMENT = "confirmed"
CONFIRMED_STATES = ("confirmed", "finalized")

# Re-send the same signed bytes after this many polls without any status
RESEND_AFTER_POLLS = 5


def _keypair_from_bytes(key: bytearray) -> Keypair:
    """Build a keypair from a 64-byte secret key or a 32-byte seed."""
    if len(key) == 64:
        return Keypair.from_bytes(bytes(key))
    if len(key) == 32:
        return Keypair.from_seed(bytes(key))
    raise KeyDecryptionFailed("Solana key must be a 64-byte secret key or 32-byte seed")


class SolanaBuilder(ChainBuilder):
    """Solana native SOL transfer builder."""

    family = ChainFamily.BLOCKHASH

    def __init__(
        self,
        chain: str,
        registry: EndpointRegistry,
        rpc: JsonRpcClient,
        max_retries: int = 3,
        confirm_timeout: float = 60.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(chain, registry, rpc)
        self.max_retries = max_retries
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep

    def validate_address(self, address: str) -> bool:
        """Validate a base58 encoded 32-byte public key."""
        if not address:
            return False
        try:
            return len(base58.b58decode(address)) == 32
        except ValueError:
            return False

    async def get_balance(self, address: str) -> str:
        """Get balance in SOL."""
        result = await self._rpc("getBalance", [address, {"commitment": COMMITMENT}])
        lamports = result["value"] if isinstance(result, dict) else int(result)
        return from_base_units(int(lamports), SOL_DECIMALS)

    async def get_latest_blockhash(self) -> tuple[str, Optional[int]]:
        """Get (blockhash, last valid block height) at confirmed commitment."""
        result = await self._rpc("getLatestBlockhash", [{"commitment": COMMITMENT}])
        value = result["value"]
        return value["blockhash"], value.get("lastValidBlockHeight")

    async def build(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        options: SendOptions,
    ) -> BlockhashUnsignedTransaction:
        """Build a single system-program transfer with a fresh blockhash."""
        lamports = to_base_units(amount, SOL_DECIMALS)
        instruction = transfer(
            TransferParams(
                from_pubkey=Pubkey.from_string(from_address),
                to_pubkey=Pubkey.from_string(to_address),
                lamports=lamports,
            )
        )
        blockhash, last_valid = await self.get_latest_blockhash()

        return BlockhashUnsignedTransaction(
            fee_payer=from_address,
            to_address=to_address,
            lamports=lamports,
            recent_blockhash=blockhash,
            instructions=[instruction],
            last_valid_block_height=last_valid,
        )

    def sign(self, unsigned: BlockhashUnsignedTransaction, key: bytearray) -> SignedTransaction:
        """Sign as fee payer. The key must belong to the sender."""
        keypair = _keypair_from_bytes(key)
        if str(keypair.pubkey()) != unsigned.fee_payer:
            raise InvalidAddress("Signing key does not control the sender address")

        blockhash = Hash.from_string(unsigned.recent_blockhash)
        message = Message.new_with_blockhash(unsigned.instructions, keypair.pubkey(), blockhash)
        tx = Transaction([keypair], message, blockhash)

        return SignedTransaction(
            chain=self.chain,
            raw=base64.b64encode(bytes(tx)).decode("ascii"),
            tx_reference=str(tx.signatures[0]),
            encoding="base64",
        )

    async def broadcast(self, signed: SignedTransaction, options: Optional[SendOptions] = None) -> BroadcastResult:
        """Send and wait for confirmed commitment.

        Raises:
            BroadcastRejected: If preflight fails or the transaction lands with an error
        """
        try:
            await self._send_raw(signed, skip_preflight=False)
        except RpcError as e:
            raise BroadcastRejected(e.message) from e

        logger.info(f"Solana transaction sent: {signed.tx_reference}")
        return await self.confirm(signed)

    async def _send_raw(self, signed: SignedTransaction, skip_preflight: bool) -> str:
        params = [
            signed.raw,
            {
                "encoding": "base64",
                "skipPreflight": skip_preflight,
                "preflightCommitment": COMMITMENT,
                "maxRetries": self.max_retries,
            },
        ]
        try:
            return await self._rpc("sendTransaction", params)
        except RpcError as e:
            if "already been processed" in e.message.lower():
                return signed.tx_reference
            raise

    async def confirm(self, signed: SignedTransaction) -> BroadcastResult:
        """Poll signature status until confirmed, re-sending the same bytes.

        Returns a pending result (with slot when known) once confirmed or
        when the wait times out.
        """
        signature = signed.tx_reference
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout
        polls = 0
        resends = 0

        while True:
            status = await self._signature_status(signature)

            if status is not None:
                if status.get("err") is not None:
                    raise BroadcastRejected(str(status["err"]))
                if status.get("confirmationStatus") in CONFIRMED_STATES:
                    logger.info(f"Solana transaction {signature} confirmed in slot {status.get('slot')}")
                    return BroadcastResult(tx_reference=signature, status=TxStatus.PENDING, slot=status.get("slot"))
            elif polls and polls % RESEND_AFTER_POLLS == 0 and resends < self.max_retries:
                resends += 1
                logger.info(f"Re-sending Solana transaction {signature} ({resends}/{self.max_retries})")
                try:
                    await self._send_raw(signed, skip_preflight=True)
                except ChainError as e:
                    logger.warning(f"Re-send of {signature} failed: {e}")

            if loop.time() >= deadline:
                logger.warning(f"Solana transaction {signature} not confirmed after {self.confirm_timeout}s")
                slot = status.get("slot") if status else None
                return BroadcastResult(tx_reference=signature, slot=slot)

            polls += 1
            await self._sleep(self.poll_interval)

    async def _signature_status(self, signature: str) -> Optional[dict]:
        try:
            result = await self._rpc("getSignatureStatuses", [[signature]])
        except (EndpointError, AllEndpointsUnhealthy, RpcError) as e:
            logger.warning(f"Status lookup for {signature} failed, will retry: {e}")
            return None
        values = (result or {}).get("value") or [None]
        return values[0]

    def __repr__(self) -> str:
        return f"SolanaBuilder(chain={self.chain}, max_retries={self.max_retries})"
