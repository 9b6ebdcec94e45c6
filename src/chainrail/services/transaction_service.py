"""Transaction dispatch service.

Single entry point for balance, send and status calls on any supported chain.

Send flow:
1. Resolve the builder for the chain (static mapping)
2. Validate amount and both addresses
3. Build the unsigned transaction (no key material involved)
4. Open the key gate only around signing; the key buffer is zeroed on exit
5. Broadcast against a healthy endpoint
6. Normalize the outcome to a TransactionResult
"""

import logging
from typing import Optional, Union

from pydantic import ValidationError

from chainrail.builders import ChainBuilder, SendOptions, create_builders
from chainrail.builders.base import BroadcastResult, parse_amount
from chainrail.chains import build_endpoint_sets
from chainrail.config import Settings, get_settings
from chainrail.crypto import KeyMode, decrypted_key, warm_key_cache
from chainrail.errors import ChainError, InvalidAddress, InvalidOptions, UnsupportedChain
from chainrail.logutil import mask_address
from chainrail.rpc import EndpointRegistry, JsonRpcClient, make_probe
from chainrail.services.results import TransactionResult
from chainrail.services.status_poller import StatusPoller

logger = logging.getLogger(__name__)


class TransactionService:
    """Routes calls to the builder of the requested chain.

    Every public method either returns a normalized result or raises a
    ChainError subclass; provider exceptions never cross this boundary.
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        rpc: JsonRpcClient,
        builders: dict[str, ChainBuilder],
        poller: StatusPoller,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.rpc = rpc
        self.builders = builders
        self.poller = poller
        self.settings = settings

    def get_builder(self, chain: str) -> ChainBuilder:
        """Get the builder for a chain.

        Raises:
            UnsupportedChain: If the chain is not supported
        """
        builder = self.builders.get(chain.strip().lower())
        if builder is None:
            raise UnsupportedChain(chain)
        return builder

    async def get_balance(self, chain: str, address: str) -> str:
        """Get native balance as a decimal string in whole units."""
        builder = self.get_builder(chain)
        if not builder.validate_address(address):
            raise InvalidAddress(f"Invalid {builder.chain} address: {address}")
        try:
            return await builder.get_balance(address)
        except ChainError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error fetching {builder.chain} balance: {e}")
            raise ChainError(f"Failed to fetch {builder.chain} balance: {e}") from e

    async def send(
        self,
        chain: str,
        from_address: str,
        to_address: str,
        amount: Union[str, int, float],
        key_material: str,
        options: Optional[Union[SendOptions, dict]] = None,
        key_mode: KeyMode = KeyMode.AUTO,
    ) -> TransactionResult:
        """Build, sign and broadcast a native transfer.

        Args:
            chain: Chain identifier
            from_address: Sender address; must match the signing key
            to_address: Recipient address
            amount: Positive decimal amount in whole units
            key_material: Encrypted envelope or hex private key
            options: Fee and confirmation overrides
            key_mode: How to interpret key_material

        Returns:
            TransactionResult

        Raises:
            ChainError: Or one of its subclasses on any failure
        """
        builder = self.get_builder(chain)
        value = parse_amount(amount)
        for address in (from_address, to_address):
            if not builder.validate_address(address):
                raise InvalidAddress(f"Invalid {builder.chain} address: {address}")
        if not isinstance(options, SendOptions):
            try:
                options = SendOptions.from_dict(options)
            except ValidationError as e:
                fields = ", ".join(str(error["loc"][0]) for error in e.errors() if error["loc"])
                raise InvalidOptions(f"Invalid send options: {fields}") from e

        logger.info(
            f"Sending {value} on {builder.chain}: "
            f"{mask_address(from_address)} -> {mask_address(to_address)}"
        )

        try:
            unsigned = await builder.build(from_address, to_address, value, options)
        except ChainError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error building {builder.chain} transaction: {e}")
            raise ChainError(f"Failed to build {builder.chain} transaction: {e}") from e

        with decrypted_key(key_material, key_mode) as key:
            try:
                signed = builder.sign(unsigned, key)
            except ChainError:
                raise
            except Exception as e:
                # Signing library messages are not logged; they may echo key input
                raise ChainError(
                    f"Failed to sign {builder.chain} transaction ({type(e).__name__})"
                ) from None

        try:
            outcome = await builder.broadcast(signed, options)
        except ChainError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error broadcasting {builder.chain} transaction: {e}")
            raise ChainError(f"Failed to broadcast {builder.chain} transaction: {e}") from e

        return self._to_result(builder.chain, outcome)

    @staticmethod
    def _to_result(chain: str, outcome: BroadcastResult) -> TransactionResult:
        return TransactionResult(
            chain=chain,
            tx_reference=outcome.tx_reference,
            status=outcome.status,
            block_number=outcome.block_number,
            slot=outcome.slot,
        )

    async def get_status(self, chain: str, tx_reference: str) -> TransactionResult:
        """Get normalized status; unknown references are pending."""
        self.get_builder(chain)
        return await self.poller.get_status(chain, tx_reference)

    def get_health(self) -> dict[str, dict]:
        """Get current endpoint health of every chain."""
        return self.registry.health_status()

    def start(self) -> None:
        """Start background health probing and warm the key cache."""
        if self.settings is not None and self.settings.encryption_key:
            warm_key_cache()
        self.registry.start()

    async def shutdown(self) -> None:
        """Stop background probing and release HTTP connections."""
        await self.registry.shutdown()
        await self.rpc.close()
        logger.info("Transaction service stopped")


def create_service(settings: Optional[Settings] = None, rpc: Optional[JsonRpcClient] = None) -> TransactionService:
    """Wire registry, builders and poller from settings."""
    settings = settings or get_settings()
    rpc = rpc or JsonRpcClient(timeout=settings.rpc_timeout)

    registry = EndpointRegistry(
        health_ttl=settings.health_ttl,
        check_interval=settings.health_check_interval,
    )
    for endpoint_set in build_endpoint_sets(settings).values():
        registry.register(endpoint_set, make_probe(endpoint_set.family, rpc))

    builders = create_builders(settings, registry, rpc)
    poller = StatusPoller(registry, rpc)
    return TransactionService(registry, rpc, builders, poller, settings=settings)
