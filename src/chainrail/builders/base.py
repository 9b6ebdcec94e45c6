"""Base interfaces for chain transaction builders.

Send flow:
1. Validate addresses and amount
2. Build the unsigned transaction (fetches UTXOs / nonce / blockhash)
3. Sign with key material from the key gate
4. Broadcast against a healthy endpoint
5. Status is tracked separately by the status poller

Each chain family has its own builder; the three share no code beyond this
interface.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from chainrail.chains import ChainFamily
from chainrail.errors import ChainError, InvalidAmount
from chainrail.rpc.client import JsonRpcClient
from chainrail.rpc.health import EndpointRegistry

logger = logging.getLogger(__name__)


class TxStatus(str, Enum):
    """Normalized transaction status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SendOptions(BaseModel):
    """Caller-supplied overrides for a send.

    Accepts snake_case names or their camelCase aliases. Unknown keys are
    ignored; malformed values raise pydantic's ValidationError.

    Attributes:
        fee_rate: UTXO fee rate in sat/vbyte
        gas_price: EVM legacy gas price in wei
        max_fee_per_gas: EVM EIP-1559 max fee in wei
        max_priority_fee_per_gas: EVM EIP-1559 tip in wei
        gas_limit: EVM gas limit (estimated when absent)
        wait_for_receipt: EVM only; block until one confirmation
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fee_rate: Optional[float] = Field(default=None, alias="feeRate", gt=0)
    gas_price: Optional[int] = Field(default=None, alias="gasPrice", gt=0)
    max_fee_per_gas: Optional[int] = Field(default=None, alias="maxFeePerGas", gt=0)
    max_priority_fee_per_gas: Optional[int] = Field(default=None, alias="maxPriorityFeePerGas", ge=0)
    gas_limit: Optional[int] = Field(default=None, alias="gasLimit", gt=0)
    wait_for_receipt: bool = Field(default=True, alias="waitForReceipt")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SendOptions":
        """Validate options from a request dict; null values mean default."""
        if not data:
            return cls()
        return cls.model_validate({key: value for key, value in data.items() if value is not None})


# ======================
# Unsigned transactions
# ======================

@dataclass(frozen=True)
class UtxoInput:
    """Spendable output used as an input."""
    txid: str
    output_index: int
    value_satoshis: int


@dataclass(frozen=True)
class TxOutput:
    """Payment output."""
    address: str
    value_satoshis: int


@dataclass
class UtxoUnsignedTransaction:
    """Bitcoin-style transaction before signing."""
    from_address: str
    inputs: list[UtxoInput]
    outputs: list[TxOutput]
    fee_satoshis: int
    fee_rate: Optional[float] = None

    @property
    def total_input(self) -> int:
        return sum(i.value_satoshis for i in self.inputs)

    @property
    def total_output(self) -> int:
        return sum(o.value_satoshis for o in self.outputs)

    @property
    def effective_fee(self) -> int:
        """Fee actually paid, including forfeited dust change."""
        return self.total_input - self.total_output


@dataclass
class AccountUnsignedTransaction:
    """EVM transaction before signing. Exactly one fee mode is populated."""
    from_address: str
    to: str
    value_wei: int
    nonce: int
    chain_id: int
    gas_limit: int
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    def __post_init__(self):
        legacy = self.gas_price is not None
        eip1559 = self.max_fee_per_gas is not None and self.max_priority_fee_per_gas is not None
        partial = (self.max_fee_per_gas is None) != (self.max_priority_fee_per_gas is None)
        if partial or legacy == eip1559:
            raise ChainError(
                "Exactly one fee mode (gasPrice or maxFeePerGas/maxPriorityFeePerGas) must be set"
            )

    @property
    def is_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None

    def to_tx_dict(self) -> dict:
        """Render as an eth-account transaction dict."""
        tx = {
            "to": self.to,
            "value": self.value_wei,
            "nonce": self.nonce,
            "chainId": self.chain_id,
            "gas": self.gas_limit,
        }
        if self.is_eip1559:
            tx["type"] = 2
            tx["maxFeePerGas"] = self.max_fee_per_gas
            tx["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas
        else:
            tx["gasPrice"] = self.gas_price
        return tx


@dataclass
class BlockhashUnsignedTransaction:
    """Solana transaction before signing."""
    fee_payer: str
    to_address: str
    lamports: int
    recent_blockhash: str
    instructions: list[Any] = field(default_factory=list)
    last_valid_block_height: Optional[int] = None


UnsignedTransaction = Union[
    UtxoUnsignedTransaction,
    AccountUnsignedTransaction,
    BlockhashUnsignedTransaction,
]


@dataclass(frozen=True)
class SignedTransaction:
    """Chain-native encoded transaction and its canonical reference."""
    chain: str
    raw: str                 # hex (UTXO, EVM) or base64 (Solana)
    tx_reference: str        # txid / tx hash / first signature
    encoding: str = "hex"


@dataclass
class BroadcastResult:
    """Outcome of a broadcast as seen by the builder."""
    tx_reference: str
    status: TxStatus = TxStatus.PENDING
    block_number: Optional[int] = None
    slot: Optional[int] = None


# ======================
# Builder interface
# ======================

def parse_amount(amount: Union[str, Decimal, int, float]) -> Decimal:
    """Parse a positive decimal amount.

    Raises:
        InvalidAmount: If not a finite positive number
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise InvalidAmount(f"Invalid amount format: {amount}") from None
    if not value.is_finite() or value <= 0:
        raise InvalidAmount(f"Amount must be positive: {amount}")
    return value


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a decimal amount to the smallest unit, truncating."""
    units = int(amount.scaleb(decimals))
    if units <= 0:
        raise InvalidAmount(f"Amount {amount} is below the smallest unit")
    return units


def from_base_units(units: int, decimals: int) -> str:
    """Render smallest units as a plain decimal string."""
    value = Decimal(units).scaleb(-decimals).normalize()
    return format(value, "f")


class ChainBuilder(ABC):
    """Abstract base class for chain transaction builders.

    Each chain family has its own implementation. Builders never select
    endpoints themselves; every network call goes through the registry.
    """

    family: ChainFamily

    def __init__(self, chain: str, registry: EndpointRegistry, rpc: JsonRpcClient):
        """Initialize builder.

        Args:
            chain: Chain identifier (bitcoin, ethereum, solana, ...)
            registry: Endpoint health registry holding this chain's endpoints
            rpc: Shared JSON-RPC transport
        """
        self.chain = chain
        self.registry = registry
        self.rpc = rpc

    async def _rpc(self, method: str, params: Optional[list] = None, **kwargs) -> Any:
        """Call a JSON-RPC method with endpoint failover."""
        return await self.registry.call_with_failover(
            self.chain,
            lambda endpoint: self.rpc.call(endpoint, method, params),
            **kwargs,
        )

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        """Validate address format for this chain."""
        pass

    @abstractmethod
    async def get_balance(self, address: str) -> str:
        """Get balance in whole units as a decimal string."""
        pass

    @abstractmethod
    async def build(
        self,
        from_address: str,
        to_address: str,
        amount: Decimal,
        options: SendOptions,
    ) -> UnsignedTransaction:
        """Build an unsigned transaction. Needs no key material."""
        pass

    @abstractmethod
    def sign(self, unsigned: UnsignedTransaction, key: bytearray) -> SignedTransaction:
        """Sign with raw private key bytes. Must not retain the key."""
        pass

    @abstractmethod
    async def broadcast(self, signed: SignedTransaction, options: Optional[SendOptions] = None) -> BroadcastResult:
        """Submit a signed transaction."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(chain={self.chain})"
