"""In-process simulated chain and relay network (``chain_mode = "simulated"``)."""
from .chain import SimulatedChain, derive_address
from .contracts import required_relayed_call_overhead
from .relay import SimulatedRelayNetwork, SimulatedRelayTransport, bootstrap_relay_network

__all__ = [
    "SimulatedChain",
    "SimulatedRelayNetwork",
    "SimulatedRelayTransport",
    "bootstrap_relay_network",
    "derive_address",
    "required_relayed_call_overhead",
]
