"""Relay configuration adapter: GSN v2 request model, transports and provider."""
from .provider import RelayedSigner, RelayProvider, RelayProviderConfig, decode_revert_reason
from .request import ForwardRequest, RelayData, RelayRequest
from .transport import (
    HttpRelayTransport,
    RelayedTransaction,
    RelayInfo,
    RelayMetadata,
    RelayTransport,
)

__all__ = [
    "ForwardRequest",
    "HttpRelayTransport",
    "RelayData",
    "RelayedSigner",
    "RelayedTransaction",
    "RelayInfo",
    "RelayMetadata",
    "RelayProvider",
    "RelayProviderConfig",
    "RelayRequest",
    "RelayTransport",
    "decode_revert_reason",
]
