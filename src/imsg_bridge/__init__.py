"""iMessage channel bridge over the `imsg` JSON-RPC backend."""

from imsg_bridge.pairing import PairingFailure, PairingOutcome, PairingRegistry
from imsg_bridge.pipeline import MessagePipeline
from imsg_bridge.transport import ImsgRpcClient

__all__ = [
    "ImsgRpcClient",
    "MessagePipeline",
    "PairingFailure",
    "PairingOutcome",
    "PairingRegistry",
]
