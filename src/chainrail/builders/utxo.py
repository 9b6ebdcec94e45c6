"""Bitcoin (UTXO) transaction builder.

Uses:
- Esplora-style REST index (Blockstream) for unspent outputs
- bitcoinlib for transaction serialization and signing
- JSON-RPC ``sendrawtransaction`` against the healthy node endpoint

Coin selection is naive: every available UTXO is spent.
"""

import logging
import math
from decimal import Decimal
from typing import Optional

from bitcoinlib.keys import Key
from bitcoinlib.transactions import Transaction

from chainrail.builders.base import (
    BroadcastResult,
    ChainBuilder,
    SendOptions,
    SignedTransaction,
    TxOutput,
    TxStatus,
    UtxoInput,
    UtxoUnsignedTransaction,
    from_base_units,
    to_base_units,
)
from chainrail.chains import ChainFamily
from chainrail.errors import (
    BroadcastRejected,
    ChainError,
    InsufficientFunds,
    NoFundsAvailable,
    RpcError,
)
from chainrail.logutil import mask_address
from chainrail.rpc.client import JsonRpcClient
from chainrail.rpc.health import EndpointRegistry

logger = logging.getLogger(__name__)

BTC_DECIMALS = 8

# Legacy (non-segwit) size heuristic, in bytes
INPUT_SIZE = 148
OUTPUT_SIZE = 34
OVERHEAD_SIZE = 10

DEFAULT_FEE_SATOSHIS = 10000
DUST_THRESHOLD = 546
DEFAULT_FEE_RATE = 10  # sat/vB when estimatesmartfee is unavailable

# bitcoind error code for "transaction already in block chain"
RPC_VERIFY_ALREADY_IN_CHAIN = -27


def estimate_fee(num_inputs: int, fee_rate: Optional[float], default_fee: int = DEFAULT_FEE_SATOSHIS) -> int:
    """Estimate fee in satoshis for a transaction spending ``num_inputs``."""
    if not fee_rate:
        return default_fee
    return math.ceil((num_inputs * INPUT_SIZE + OUTPUT_SIZE + OVERHEAD_SIZE) * fee_rate)


class UtxoBuilder(ChainBuilder):
    """Bitcoin transaction builder.

    Single-signer wallet model: every input is signed with the same key.
    """

    family = ChainFamily.UTXO

    def __init__(
        self,
        chain: str,
        registry: EndpointRegistry,
        rpc: JsonRpcClient,
        utxo_api_url: str = "https://blockstream.info/api",
        testnet: bool = False,
        default_fee: int = DEFAULT_FEE_SATOSHIS,
        dust_threshold: int = DUST_THRESHOLD,
    ):
        super().__init__(chain, registry, rpc)
        self.utxo_api_url = utxo_api_url.rstrip("/")
        self.testnet = testnet
        self.network = "testnet" if testnet else "bitcoin"
        self.default_fee = default_fee
        self.dust_threshold = dust_threshold

    def validate_address(self, address: str) -> bool:
        """Validate Bitcoin address format."""
        if not address:
            return False

        # Mainnet prefixes: 1, 3, bc1
        # Testnet prefixes: m, n, 2, tb1
        if self.testnet:
            valid_prefixes = ("m", "n", "2", "tb1")
        else:
            valid_prefixes = ("1", "3", "bc1")

        if not address.startswith(valid_prefixes):
            return False

        if address.startswith(("bc1", "tb1")):
            # Bech32 addresses
            return 42 <= len(address) <= 62
        # Legacy addresses
        return 25 <= len(address) <= 35

    async def get_utxos(self, address: str) -> list[UtxoInput]:
        """Get unspent outputs for an address from the UTXO index."""
        data = await self.rpc.get_json(f"{self.utxo_api_url}/address/{address}/utxo")
        if not data:
            return []
        return [
            UtxoInput(
                txid=utxo["txid"],
                output_index=int(utxo["vout"]),
                value_satoshis=int(utxo["value"]),
            )
            for utxo in data
        ]

    async def get_balance(self, address: str) -> str:
        """Get BTC balance as the sum of unspent outputs."""
        utxos = await self.get_utxos(address)
        total = sum(u.value_satoshis for u in utxos)
        return from_base_units(total, BTC_DECIMALS)

    async def estimate_fee_rate(self, blocks: int = 6) -> float:
        """Get a fee rate in sat/vB from ``estimatesmartfee``."""
        try:
            result = await self._rpc("estimatesmartfee", [blocks])
            btc_per_kvb = (result or {}).get("feerate")
            if btc_per_kvb:
                return float(Decimal(str(btc_per_kvb)) * Decimal(100_000_000) / Decimal(1000))
        except ChainError as e:
            logger.warning(f"Failed to estimate Bitcoin fee: {e}")
        return float(DEFAULT_FEE_RATE)

    async def build(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        options: SendOptions,
    ) -> UtxoUnsignedTransaction:
        """Build an unsigned transaction spending all UTXOs of the sender.

        Raises:
            NoFundsAvailable: If the sender has no UTXOs
            InsufficientFunds: If inputs do not cover amount plus fee
        """
        utxos = await self.get_utxos(from_address)
        if not utxos:
            raise NoFundsAvailable(f"No unspent outputs found for {mask_address(from_address)}")

        total_input = sum(u.value_satoshis for u in utxos)
        amount_satoshis = to_base_units(amount, BTC_DECIMALS)
        fee = estimate_fee(len(utxos), options.fee_rate, self.default_fee)

        if total_input < amount_satoshis + fee:
            raise InsufficientFunds(available=total_input, required=amount_satoshis + fee)

        outputs = [TxOutput(address=to_address, value_satoshis=amount_satoshis)]

        change = total_input - amount_satoshis - fee
        if change > self.dust_threshold:
            outputs.append(TxOutput(address=from_address, value_satoshis=change))
        elif change > 0:
            logger.debug(f"Change of {change} sats is dust, adding it to the fee")

        return UtxoUnsignedTransaction(
            from_address=from_address,
            inputs=utxos,
            outputs=outputs,
            fee_satoshis=fee,
            fee_rate=options.fee_rate,
        )

    def sign(self, unsigned: UtxoUnsignedTransaction, key: bytearray) -> SignedTransaction:
        """Sign every input with the same private key."""
        witness_type = "segwit" if unsigned.from_address.startswith(("bc1", "tb1")) else "legacy"
        signing_key = Key(bytes(key), network=self.network)

        tx = Transaction(network=self.network, witness_type=witness_type)
        for utxo in unsigned.inputs:
            tx.add_input(
                prev_txid=utxo.txid,
                output_n=utxo.output_index,
                keys=signing_key.public(),
                value=utxo.value_satoshis,
                witness_type=witness_type,
            )
        for output in unsigned.outputs:
            tx.add_output(output.value_satoshis, address=output.address)

        tx.sign(signing_key)
        if not tx.verify():
            raise ChainError("Bitcoin transaction failed signature verification")

        logger.info(
            f"Bitcoin transaction created: {tx.txid} "
            f"({len(unsigned.inputs)} inputs, {len(unsigned.outputs)} outputs)"
        )
        return SignedTransaction(chain=self.chain, raw=tx.raw_hex(), tx_reference=tx.txid)

    async def broadcast(self, signed: SignedTransaction, options: Optional[SendOptions] = None) -> BroadcastResult:
        """Broadcast via ``sendrawtransaction`` with endpoint failover.

        The signed bytes are identical on every attempt, so re-broadcast is
        idempotent; a node that already knows the transaction counts as success.

        Raises:
            BroadcastRejected: If every endpoint rejected the transaction
        """

        async def send(endpoint: str) -> str:
            try:
                return await self.rpc.call(endpoint, "sendrawtransaction", [signed.raw])
            except RpcError as e:
                if _already_known(e):
                    logger.info(f"Bitcoin transaction {signed.tx_reference} already known to {endpoint}")
                    return signed.tx_reference
                raise

        try:
            txid = await self.registry.call_with_failover(self.chain, send, retry_rpc_errors=True)
        except RpcError as e:
            raise BroadcastRejected(e.message) from e

        if txid and txid != signed.tx_reference:
            logger.warning(f"Node returned txid {txid}, expected {signed.tx_reference}")

        logger.info(f"Bitcoin transaction broadcast: {signed.tx_reference}")
        return BroadcastResult(tx_reference=signed.tx_reference, status=TxStatus.PENDING)


def _already_known(error: RpcError) -> bool:
    message = error.message.lower()
    return error.code == RPC_VERIFY_ALREADY_IN_CHAIN or "already" in message
