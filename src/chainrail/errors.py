"""Typed failures of the transaction execution layer.

Every public call either returns a normalized result or raises one of these.
Messages never carry key material.
"""

from typing import Optional


class ChainError(Exception):
    """Base class for all execution layer failures."""
    pass


class UnsupportedChain(ChainError):
    """Chain identifier is not in the static registry."""

    def __init__(self, chain: str):
        self.chain = chain
        super().__init__(f"Unsupported blockchain: {chain}")


class AllEndpointsUnhealthy(ChainError):
    """Every endpoint of a chain failed its liveness probe."""

    def __init__(self, chain: str):
        self.chain = chain
        super().__init__(f"All {chain} RPC endpoints are unhealthy")


class NoFundsAvailable(ChainError):
    """Sender has no spendable outputs."""
    pass


class InsufficientFunds(ChainError):
    """Spendable value does not cover amount plus fee."""

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(f"Insufficient funds: available {available}, required {required}")


class InvalidAddress(ChainError):
    """Address fails chain-specific validation."""
    pass


class InvalidAmount(ChainError):
    """Amount is not a positive decimal."""
    pass


class InvalidOptions(ChainError):
    """Send options are malformed."""
    pass


class KeyDecryptionFailed(ChainError):
    """Encrypted key material could not be decrypted."""
    pass


class BroadcastRejected(ChainError):
    """Chain rejected the transaction. The reason is passed through as-is."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Broadcast rejected: {reason}")


class EndpointError(ChainError):
    """Transport-level failure talking to one endpoint."""

    def __init__(self, message: str, endpoint: Optional[str] = None):
        self.endpoint = endpoint
        super().__init__(message)


class RpcTimeout(EndpointError):
    """Per-call timeout expired."""
    pass


class RpcError(ChainError):
    """JSON-RPC error object returned by an endpoint."""

    def __init__(self, code: Optional[int], message: str, endpoint: Optional[str] = None):
        self.code = code
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"RPC error {code}: {message}")
