"""
One-call setup of a complete gasless test session.

    async with GaslessSession(get_settings()) as session:
        async with session.snapshots.isolated():
            await session.environment.set_relayed_call_overhead(105_000)
            await session.signer.transact(session.environment.recipient, "heavyFunc", 2000)
"""
from __future__ import annotations

import logging
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .artifacts import ArtifactStore
from .config import HarnessSettings, get_settings
from .connection import ChainConnection, Web3ChainConnection
from .network import RelayNetworkAddresses
from .orchestrator import Environment, EnvironmentParams, Orchestrator
from .relay import HttpRelayTransport, RelayedSigner, RelayProvider, RelayProviderConfig, RelayTransport
from .simulated import SimulatedChain, bootstrap_relay_network
from .snapshot import SnapshotHarness
from .types import Address

logger = logging.getLogger(__name__)


class GaslessSession:
    """
    Connects, bootstraps (simulated) or loads (live) the relay network,
    builds the Environment for a fresh zero-balance user and initializes
    the relay provider for that user.
    """

    def __init__(
        self,
        settings: Optional[HarnessSettings] = None,
        connection: Optional[ChainConnection] = None,
        transport: Optional[RelayTransport] = None,
    ):
        self._settings = settings or get_settings()
        self._connection = connection
        self._owns_connection = connection is None
        self._transport = transport
        self.admin: Optional[Address] = None
        self.network: Optional[RelayNetworkAddresses] = None
        self.environment: Optional[Environment] = None
        self.provider: Optional[RelayProvider] = None
        self.user: Optional[LocalAccount] = None
        self.snapshots: Optional[SnapshotHarness] = None

    @property
    def connection(self) -> ChainConnection:
        return self._connection

    @property
    def signer(self) -> RelayedSigner:
        return self.provider.signer(self.user.address)

    def _connect(self) -> ChainConnection:
        settings = self._settings
        if settings.chain_mode == "simulated":
            return SimulatedChain()
        artifacts = ArtifactStore(settings.artifacts_dir, settings.compiler)
        return Web3ChainConnection(settings.rpc_url, artifacts)

    async def start(self) -> "GaslessSession":
        settings = self._settings
        if self._connection is None:
            self._connection = self._connect()
        connection = self._connection

        self.admin = (await connection.accounts())[0]

        transport = self._transport
        if isinstance(connection, SimulatedChain):
            relay_network = await bootstrap_relay_network(connection, self.admin)
            self.network = relay_network.addresses
            transport = transport or relay_network.transport()
        else:
            self.network = RelayNetworkAddresses.from_settings(settings.network)
            transport = transport or HttpRelayTransport(
                settings.relay.preferred_relays, settings.relay.request_timeout_seconds
            )

        self._transport = transport

        self.user = Account.create()
        logger.info(f"Sponsored account: {self.user.address}")

        self.environment = await Orchestrator(connection, settings.concurrent_wiring).build(
            self.admin,
            self.network,
            Address(self.user.address),
            EnvironmentParams.from_settings(settings),
        )

        config = RelayProviderConfig.from_settings(settings.relay, self.environment.paymaster.address)
        self.provider = await RelayProvider(connection, config, transport).init()
        self.provider.add_account(self.user.key)
        self.snapshots = SnapshotHarness(connection)
        return self

    async def close(self) -> None:
        if self._transport is not None:
            await self._transport.close()
        if self._owns_connection and self._connection is not None:
            await self._connection.close()

    async def __aenter__(self) -> "GaslessSession":
        try:
            return await self.start()
        except BaseException:
            await self.close()
            raise

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
