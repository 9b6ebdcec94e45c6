"""Chain-family liveness probes.

Each probe is a cheap read returning the endpoint's block height or slot.
The registry treats a non-positive value or any exception as unhealthy.
"""

from chainrail.chains import ChainFamily
from chainrail.rpc.client import JsonRpcClient
from chainrail.rpc.health import ProbeFn


def _to_int(value) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def make_probe(family: ChainFamily, client: JsonRpcClient) -> ProbeFn:
    """Build the liveness probe for a chain family."""
    method = {
        ChainFamily.UTXO: "getblockcount",
        ChainFamily.ACCOUNT: "eth_blockNumber",
        ChainFamily.BLOCKHASH: "getSlot",
    }[family]

    async def probe(endpoint: str) -> int:
        return _to_int(await client.call(endpoint, method))

    return probe
