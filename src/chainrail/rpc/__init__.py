"""RPC transport and endpoint health tracking."""

from chainrail.rpc.client import JsonRpcClient
from chainrail.rpc.health import EndpointHealth, EndpointRegistry, EndpointSet
from chainrail.rpc.probes import make_probe

__all__ = [
    "EndpointHealth",
    "EndpointRegistry",
    "EndpointSet",
    "JsonRpcClient",
    "make_probe",
]
