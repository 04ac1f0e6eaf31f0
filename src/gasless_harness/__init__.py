"""
Gasless transaction harness.

Deploys a paymaster-sponsored GSN setup (recipient, role-based token,
paymaster), wires it into a relay hub, and verifies sponsored calls from a
zero-balance account under snapshot isolation.
"""
from .config import HarnessSettings, get_settings
from .connection import ChainConnection, DeployedContract, EventLog, TxReceipt, Web3ChainConnection
from .deployers import (
    TwoPhaseDeployment,
    deploy_gasless_erc20_token,
    deploy_my_paymaster,
    deploy_my_recipient,
)
from .exceptions import (
    ChainConnectionError,
    DeploymentFailure,
    HarnessException,
    RelayNotInitialized,
    SnapshotMisuse,
    SponsorshipRejection,
    TransactionReverted,
    WiringFailure,
)
from .network import RelayNetworkAddresses
from .orchestrator import Environment, EnvironmentParams, Orchestrator
from .relay import RelayProvider, RelayProviderConfig
from .session import GaslessSession
from .snapshot import SnapshotHarness, SnapshotToken
from .types import ZERO_ADDRESS, Address, PaymasterLimits, Uint8, Uint16, Uint256

__version__ = "0.1.0"

__all__ = [
    "Address",
    "ChainConnection",
    "ChainConnectionError",
    "DeployedContract",
    "DeploymentFailure",
    "Environment",
    "EnvironmentParams",
    "EventLog",
    "GaslessSession",
    "HarnessException",
    "HarnessSettings",
    "Orchestrator",
    "PaymasterLimits",
    "RelayNetworkAddresses",
    "RelayNotInitialized",
    "RelayProvider",
    "RelayProviderConfig",
    "SnapshotHarness",
    "SnapshotMisuse",
    "SnapshotToken",
    "SponsorshipRejection",
    "TransactionReverted",
    "TwoPhaseDeployment",
    "TxReceipt",
    "Uint8",
    "Uint16",
    "Uint256",
    "Web3ChainConnection",
    "WiringFailure",
    "ZERO_ADDRESS",
    "deploy_gasless_erc20_token",
    "deploy_my_paymaster",
    "deploy_my_recipient",
    "get_settings",
]
