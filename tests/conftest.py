"""
Pytest configuration for gasless_harness tests.
"""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pytest
from eth_account import Account
from eth_account.signers.local import LocalAccount

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("GASLESS_CHAIN_MODE", "simulated")

from gasless_harness.orchestrator import Environment, EnvironmentParams, Orchestrator  # noqa: E402
from gasless_harness.relay import RelayProvider, RelayProviderConfig, RelayTransport  # noqa: E402
from gasless_harness.simulated import (  # noqa: E402
    SimulatedChain,
    SimulatedRelayNetwork,
    bootstrap_relay_network,
)
from gasless_harness.snapshot import SnapshotHarness  # noqa: E402
from gasless_harness.types import Address  # noqa: E402

# Overhead the simulated hub needs around a heavyFunc call (36 bytes of calldata)
SUFFICIENT_OVERHEAD = 105_000


@dataclass
class Stack:
    """Everything one end-to-end test needs."""
    chain: SimulatedChain
    relay_network: SimulatedRelayNetwork
    admin: Address
    user: LocalAccount
    environment: Environment
    provider: RelayProvider
    snapshots: SnapshotHarness


async def build_stack(
    params: Optional[EnvironmentParams] = None,
    config: Optional[RelayProviderConfig] = None,
    transport: Optional[RelayTransport] = None,
    concurrent_wiring: bool = False,
) -> Stack:
    chain = SimulatedChain()
    admin = (await chain.accounts())[0]
    relay_network = await bootstrap_relay_network(chain, admin)
    user = Account.create()
    environment = await Orchestrator(chain, concurrent_wiring).build(
        admin, relay_network.addresses, Address(user.address), params
    )
    config = config or RelayProviderConfig(paymaster_address=environment.paymaster.address)
    provider = await RelayProvider(chain, config, transport or relay_network.transport()).init()
    provider.add_account(user.key)
    return Stack(
        chain=chain,
        relay_network=relay_network,
        admin=admin,
        user=user,
        environment=environment,
        provider=provider,
        snapshots=SnapshotHarness(chain),
    )


@pytest.fixture
def stack_factory():
    """Coroutine function that builds a fresh chain, relay network and environment."""
    return build_stack


@pytest.fixture
def sufficient_overhead():
    return SUFFICIENT_OVERHEAD


@pytest.fixture
def sample_address():
    """Valid Ethereum address for testing."""
    return "0x1234567890123456789012345678901234567890"
