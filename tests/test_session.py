"""
Tests for GaslessSession and relay network address loading.
"""
from __future__ import annotations

import pytest

from gasless_harness.config import HarnessSettings, NetworkSettings
from gasless_harness.exceptions import HarnessConfigurationError
from gasless_harness.network import RelayNetworkAddresses
from gasless_harness.session import GaslessSession
from gasless_harness.simulated import SimulatedChain, derive_address


def simulated_settings(**overrides) -> HarnessSettings:
    return HarnessSettings(_env_file=None, chain_mode="simulated", **overrides)


class TestGaslessSession:
    """End-to-end session on the simulated chain."""

    @pytest.mark.asyncio
    async def test_session_sponsors_user(self, sufficient_overhead):
        async with GaslessSession(simulated_settings()) as session:
            env = session.environment
            assert isinstance(session.connection, SimulatedChain)
            assert session.provider.initialized is True
            assert env.sponsored_account == session.user.address

            async with session.snapshots.isolated():
                await env.set_relayed_call_overhead(sufficient_overhead)
                receipt = await session.signer.transact(env.recipient, "heavyFunc", 2000)
                assert receipt.succeeded
                assert await session.signer.get_balance() == 0

    @pytest.mark.asyncio
    async def test_session_uses_settings(self):
        settings = simulated_settings(deposit_wei=10**17)
        async with GaslessSession(settings) as session:
            env = session.environment
            assert await env.hub_balance(env.paymaster.address) == 10**17

    @pytest.mark.asyncio
    async def test_session_with_given_connection(self):
        chain = SimulatedChain()
        session = GaslessSession(simulated_settings(), connection=chain)
        await session.start()
        try:
            assert session.connection is chain
            assert session.admin == (await chain.accounts())[0]
        finally:
            await session.close()


class TestRelayNetworkAddresses:
    """Tests for RelayNetworkAddresses."""

    def test_from_camel_case_mapping(self):
        data = {
            "forwarderAddress": derive_address("forwarder"),
            "penalizerAddress": derive_address("penalizer"),
            "relayHubAddress": derive_address("hub"),
            "stakeManagerAddress": derive_address("stake-manager"),
            "versionRegistryAddress": derive_address("version-registry"),
        }
        addresses = RelayNetworkAddresses.from_mapping(data)
        assert addresses.relay_hub == derive_address("hub")
        assert addresses.forwarder == derive_address("forwarder")

    def test_missing_address(self):
        settings = NetworkSettings(forwarder=derive_address("forwarder"))
        with pytest.raises(HarnessConfigurationError) as exc_info:
            RelayNetworkAddresses.from_settings(settings)
        assert exc_info.value.details == {"missing": "penalizer"}
