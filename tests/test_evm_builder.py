"""Tests for the EVM (account/nonce) builder."""

from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest
from eth_account import Account

from chainrail.builders.base import AccountUnsignedTransaction, SendOptions, TxStatus
from chainrail.builders.evm import DEFAULT_PRIORITY_FEE, EvmBuilder
from chainrail.chains import ChainFamily
from chainrail.errors import BroadcastRejected, ChainError, InvalidAddress, InvalidAmount

PRIMARY = "http://eth-primary.test/rpc"
FALLBACK = "http://eth-fallback.test/rpc"

KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
OTHER_KEY = "b25c7db31feed9122727bf0939dc769a96564b2de4c4726d035b36ecf1e5b364"
SENDER = Account.from_key(bytes.fromhex(KEY)).address
RECIPIENT = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"

GWEI = 10**9


@pytest.fixture
def builder(registry, rpc, add_chain, fake_chain):
    fake_chain.result("eth_blockNumber", "0x10")
    fake_chain.result("eth_getTransactionCount", "0x7")
    fake_chain.result("eth_estimateGas", "0x5208")
    add_chain("ethereum", ChainFamily.ACCOUNT, PRIMARY, (FALLBACK,))
    return EvmBuilder("ethereum", registry, rpc, chain_id=1, receipt_timeout=5.0, poll_interval=0)


@pytest.fixture
def signer():
    """Builder with no network access, for offline checks."""
    return EvmBuilder("ethereum", MagicMock(), MagicMock(), chain_id=1)


def _key(hex_key: str = KEY) -> bytearray:
    return bytearray.fromhex(hex_key)


def _unsigned(**fees) -> AccountUnsignedTransaction:
    fees = fees or {"gas_price": 20 * GWEI}
    return AccountUnsignedTransaction(
        from_address=SENDER,
        to=RECIPIENT,
        value_wei=10**17,
        nonce=7,
        chain_id=1,
        gas_limit=21000,
        **fees,
    )


class TestFeeSelection:
    """Tests for fee mode precedence."""

    @pytest.mark.asyncio
    async def test_explicit_gas_price_wins(self, builder, fake_chain):
        unsigned = await builder.build(
            SENDER,
            RECIPIENT,
            Decimal("0.1"),
            SendOptions(gas_price=20 * GWEI, max_fee_per_gas=50 * GWEI, max_priority_fee_per_gas=GWEI),
        )

        assert unsigned.gas_price == 20 * GWEI
        assert unsigned.max_fee_per_gas is None
        assert not fake_chain.calls_to("eth_getBlockByNumber")

    @pytest.mark.asyncio
    async def test_explicit_eip1559_pair(self, builder, fake_chain):
        unsigned = await builder.build(
            SENDER,
            RECIPIENT,
            Decimal("0.1"),
            SendOptions(max_fee_per_gas=50 * GWEI, max_priority_fee_per_gas=2 * GWEI),
        )

        assert unsigned.is_eip1559
        assert (unsigned.max_fee_per_gas, unsigned.max_priority_fee_per_gas) == (50 * GWEI, 2 * GWEI)
        assert unsigned.gas_price is None
        assert not fake_chain.calls_to("eth_getBlockByNumber")

    @pytest.mark.asyncio
    async def test_network_eip1559(self, builder, fake_chain):
        """Test that network EIP-1559 data populates only the EIP-1559 fields."""
        fake_chain.result("eth_getBlockByNumber", {"number": "0x10", "baseFeePerGas": hex(30 * GWEI)})
        fake_chain.result("eth_maxPriorityFeePerGas", hex(2 * GWEI))

        unsigned = await builder.build(SENDER, RECIPIENT, Decimal("0.1"), SendOptions())

        assert unsigned.max_fee_per_gas == 62 * GWEI
        assert unsigned.max_priority_fee_per_gas == 2 * GWEI
        assert unsigned.gas_price is None
        assert "gasPrice" not in unsigned.to_tx_dict()
        assert not fake_chain.calls_to("eth_gasPrice")

    @pytest.mark.asyncio
    async def test_default_priority_fee(self, builder, fake_chain):
        fake_chain.result("eth_getBlockByNumber", {"number": "0x10", "baseFeePerGas": hex(10 * GWEI)})

        unsigned = await builder.build(SENDER, RECIPIENT, Decimal("0.1"), SendOptions())

        assert unsigned.max_priority_fee_per_gas == DEFAULT_PRIORITY_FEE
        assert unsigned.max_fee_per_gas == 20 * GWEI + DEFAULT_PRIORITY_FEE

    @pytest.mark.asyncio
    async def test_legacy_network_fallback(self, builder, fake_chain):
        """Test that a chain without base fee gets a legacy gas price."""
        fake_chain.result("eth_getBlockByNumber", {"number": "0x10"})
        fake_chain.result("eth_gasPrice", hex(25 * GWEI))

        unsigned = await builder.build(SENDER, RECIPIENT, Decimal("0.1"), SendOptions())

        assert unsigned.gas_price == 25 * GWEI
        assert not unsigned.is_eip1559
        assert unsigned.to_tx_dict()["gasPrice"] == 25 * GWEI

    def test_both_fee_modes_rejected(self):
        with pytest.raises(ChainError):
            _unsigned(gas_price=GWEI, max_fee_per_gas=2 * GWEI, max_priority_fee_per_gas=GWEI)

    def test_no_fee_mode_rejected(self):
        with pytest.raises(ChainError):
            AccountUnsignedTransaction(
                from_address=SENDER, to=RECIPIENT, value_wei=1, nonce=0, chain_id=1, gas_limit=21000
            )

    def test_partial_eip1559_rejected(self):
        with pytest.raises(ChainError):
            _unsigned(max_fee_per_gas=2 * GWEI)


class TestBuild:
    """Tests for nonce, value and gas."""

    @pytest.mark.asyncio
    async def test_nonce_from_pending_count(self, builder, fake_chain):
        unsigned = await builder.build(SENDER, RECIPIENT, Decimal("0.1"), SendOptions(gas_price=GWEI))

        assert unsigned.nonce == 7
        _, _, params = fake_chain.calls_to("eth_getTransactionCount")[0]
        assert params == [SENDER, "pending"]

    @pytest.mark.asyncio
    async def test_value_and_estimated_gas(self, builder, fake_chain):
        unsigned = await builder.build(SENDER, RECIPIENT, Decimal("0.1"), SendOptions(gas_price=GWEI))

        assert unsigned.value_wei == 10**17
        assert unsigned.gas_limit == 21000
        assert unsigned.chain_id == 1
        _, _, params = fake_chain.calls_to("eth_estimateGas")[0]
        assert params[0]["value"] == hex(10**17)
        assert params[0]["gasPrice"] == hex(GWEI)

    @pytest.mark.asyncio
    async def test_gas_limit_option_skips_estimate(self, builder, fake_chain):
        unsigned = await builder.build(
            SENDER, RECIPIENT, Decimal("0.1"), SendOptions(gas_price=GWEI, gas_limit=50000)
        )

        assert unsigned.gas_limit == 50000
        assert not fake_chain.calls_to("eth_estimateGas")

    @pytest.mark.asyncio
    async def test_sub_wei_amount_rejected(self, builder):
        with pytest.raises(InvalidAmount):
            await builder.build(SENDER, RECIPIENT, Decimal("1e-19"), SendOptions(gas_price=GWEI))


class TestSign:
    """Tests for signing."""

    def test_signature_recovers_sender(self, signer):
        signed = signer.sign(_unsigned(max_fee_per_gas=50 * GWEI, max_priority_fee_per_gas=GWEI), _key())

        assert Account.recover_transaction(signed.raw) == SENDER
        assert signed.tx_reference.startswith("0x")
        assert len(signed.tx_reference) == 66

    def test_legacy_signature_recovers_sender(self, signer):
        signed = signer.sign(_unsigned(), _key())

        assert Account.recover_transaction(signed.raw) == SENDER

    def test_chain_id_bound_into_signature(self, signer):
        """Test that the same transfer signed for another chain differs."""
        mainnet = signer.sign(_unsigned(), _key())
        other = _unsigned()
        other.chain_id = 137
        polygon = signer.sign(other, _key())

        assert mainnet.tx_reference != polygon.tx_reference

    def test_key_must_match_sender(self, signer):
        with pytest.raises(InvalidAddress):
            signer.sign(_unsigned(), _key(OTHER_KEY))


class TestBroadcast:
    """Tests for broadcast and receipt waiting."""

    @pytest.mark.asyncio
    async def test_confirmed_receipt(self, builder, fake_chain):
        signed = builder.sign(_unsigned(), _key())
        fake_chain.result("eth_sendRawTransaction", signed.tx_reference)
        fake_chain.result("eth_getTransactionReceipt", {"status": "0x1", "blockNumber": "0x1234"})

        result = await builder.broadcast(signed, SendOptions())

        assert result.status == TxStatus.CONFIRMED
        assert result.block_number == 0x1234
        assert result.tx_reference == signed.tx_reference

    @pytest.mark.asyncio
    async def test_reverted_receipt(self, builder, fake_chain):
        signed = builder.sign(_unsigned(), _key())
        fake_chain.result("eth_sendRawTransaction", signed.tx_reference)
        fake_chain.result("eth_getTransactionReceipt", {"status": "0x0", "blockNumber": "0x1234"})

        result = await builder.broadcast(signed, SendOptions())

        assert result.status == TxStatus.FAILED

    @pytest.mark.asyncio
    async def test_polls_until_mined(self, builder, fake_chain):
        signed = builder.sign(_unsigned(), _key())
        fake_chain.result("eth_sendRawTransaction", signed.tx_reference)
        polls = []

        def receipt(params):
            polls.append(params)
            if len(polls) < 3:
                return None
            return {"status": "0x1", "blockNumber": "0x20"}

        fake_chain.result("eth_getTransactionReceipt", receipt)

        result = await builder.broadcast(signed, SendOptions())

        assert len(polls) == 3
        assert result.block_number == 0x20

    @pytest.mark.asyncio
    async def test_no_wait(self, builder, fake_chain):
        signed = builder.sign(_unsigned(), _key())
        fake_chain.result("eth_sendRawTransaction", signed.tx_reference)

        result = await builder.broadcast(signed, SendOptions(wait_for_receipt=False))

        assert result.status == TxStatus.PENDING
        assert not fake_chain.calls_to("eth_getTransactionReceipt")

    @pytest.mark.asyncio
    async def test_receipt_timeout_is_pending(self, builder, fake_chain):
        builder.receipt_timeout = 0
        signed = builder.sign(_unsigned(), _key())
        fake_chain.result("eth_sendRawTransaction", signed.tx_reference)
        fake_chain.result("eth_getTransactionReceipt", None)

        result = await builder.broadcast(signed, SendOptions())

        assert result.status == TxStatus.PENDING
        assert result.block_number is None

    @pytest.mark.asyncio
    async def test_receipt_rpc_error_keeps_polling(self, builder, fake_chain):
        """Test that a node error after broadcast counts as no receipt yet."""
        signed = builder.sign(_unsigned(), _key())
        fake_chain.result("eth_sendRawTransaction", signed.tx_reference)
        polls = []

        def receipt(params):
            polls.append(params)
            if len(polls) == 1:
                raise fake_chain.fault(-32000, "header not found")
            return {"status": "0x1", "blockNumber": "0x20"}

        fake_chain.result("eth_getTransactionReceipt", receipt)

        result = await builder.broadcast(signed, SendOptions())

        assert len(polls) == 2
        assert result.status == TxStatus.CONFIRMED
        assert result.block_number == 0x20

    @pytest.mark.asyncio
    async def test_receipt_rpc_error_until_timeout_is_pending(self, builder, fake_chain):
        builder.receipt_timeout = 0
        signed = builder.sign(_unsigned(), _key())
        fake_chain.result("eth_sendRawTransaction", signed.tx_reference)
        fake_chain.error("eth_getTransactionReceipt", -32000, "header not found")

        result = await builder.broadcast(signed, SendOptions())

        assert result.status == TxStatus.PENDING
        assert result.tx_reference == signed.tx_reference

    @pytest.mark.asyncio
    async def test_rejection_is_not_retried(self, builder, fake_chain):
        signed = builder.sign(_unsigned(), _key())
        fake_chain.error("eth_sendRawTransaction", -32000, "nonce too low")

        with pytest.raises(BroadcastRejected) as exc_info:
            await builder.broadcast(signed, SendOptions())

        assert exc_info.value.reason == "nonce too low"
        assert len(fake_chain.calls_to("eth_sendRawTransaction")) == 1

    @pytest.mark.asyncio
    async def test_already_known_is_success(self, builder, fake_chain):
        signed = builder.sign(_unsigned(), _key())
        fake_chain.error("eth_sendRawTransaction", -32000, "already known")

        result = await builder.broadcast(signed, SendOptions(wait_for_receipt=False))

        assert result.tx_reference == signed.tx_reference

    @pytest.mark.asyncio
    async def test_broadcast_fails_over_on_transport_error(self, builder, fake_chain):
        """Test that the same raw transaction is re-sent to the fallback."""
        signed = builder.sign(_unsigned(), _key())
        sent = []

        def send(params):
            sent.append(params[0])
            if len(sent) == 1:
                raise httpx.ConnectError("Connection reset by peer")
            return signed.tx_reference

        fake_chain.result("eth_sendRawTransaction", send)

        result = await builder.broadcast(signed, SendOptions(wait_for_receipt=False))

        urls = [url for url, _, _ in fake_chain.calls_to("eth_sendRawTransaction")]
        assert urls == [PRIMARY, FALLBACK]
        assert sent == [signed.raw, signed.raw]
        assert result.tx_reference == signed.tx_reference


class TestReads:
    """Tests for balance and address validation."""

    @pytest.mark.asyncio
    async def test_balance_in_ether(self, builder, fake_chain):
        fake_chain.result("eth_getBalance", hex(15 * 10**17))

        assert await builder.get_balance(SENDER) == "1.5"

    def test_validate_address(self, signer):
        assert signer.validate_address(RECIPIENT)
        assert signer.validate_address(RECIPIENT.lower())
        assert not signer.validate_address("0x5aaeb6053F3E94C9b9A09f33669435E7Ef1BeAed")
        assert not signer.validate_address("1BoatSLRHtKNngkdXEeobR76b53LETtpyT")
        assert not signer.validate_address("")
