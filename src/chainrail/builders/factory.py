"""Factory for creating chain builders.

One builder instance per chain identifier. EVM chains share the same builder
class and differ only by chain ID and endpoint set.
"""

from chainrail.builders.base import ChainBuilder
from chainrail.chains import CHAINS, ChainFamily
from chainrail.config import Settings
from chainrail.errors import UnsupportedChain
from chainrail.rpc.client import JsonRpcClient
from chainrail.rpc.health import EndpointRegistry


def create_builder(
    chain: str,
    settings: Settings,
    registry: EndpointRegistry,
    rpc: JsonRpcClient,
) -> ChainBuilder:
    """Create the builder for a chain.

    Raises:
        UnsupportedChain: If the chain is not catalogued
    """
    config = CHAINS.get(chain)
    if config is None:
        raise UnsupportedChain(chain)

    if config.family == ChainFamily.UTXO:
        from chainrail.builders.utxo import UtxoBuilder
        return UtxoBuilder(
            chain,
            registry,
            rpc,
            utxo_api_url=settings.bitcoin_utxo_api_url,
            testnet=settings.bitcoin_testnet,
            default_fee=settings.bitcoin_default_fee,
            dust_threshold=settings.bitcoin_dust_threshold,
        )

    if config.family == ChainFamily.ACCOUNT:
        from chainrail.builders.evm import EvmBuilder
        return EvmBuilder(
            chain,
            registry,
            rpc,
            chain_id=config.chain_id,
            receipt_timeout=settings.evm_receipt_timeout,
            poll_interval=settings.evm_receipt_poll_interval,
        )

    from chainrail.builders.solana import SolanaBuilder
    return SolanaBuilder(
        chain,
        registry,
        rpc,
        max_retries=settings.solana_max_retries,
        confirm_timeout=settings.solana_confirm_timeout,
        poll_interval=settings.solana_confirm_poll_interval,
    )


def create_builders(
    settings: Settings,
    registry: EndpointRegistry,
    rpc: JsonRpcClient,
) -> dict[str, ChainBuilder]:
    """Create builders for every catalogued chain."""
    return {chain: create_builder(chain, settings, registry, rpc) for chain in CHAINS}
