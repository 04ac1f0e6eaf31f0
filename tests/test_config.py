"""
Tests for gasless_harness.config.
"""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from gasless_harness.config import HarnessSettings, LimitsSettings, NetworkSettings, RelaySettings
from gasless_harness.types import PaymasterLimits


class TestHarnessSettings:
    """Tests for HarnessSettings defaults and env loading."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("GASLESS_CHAIN_MODE", raising=False)
        settings = HarnessSettings(_env_file=None)
        assert settings.chain_mode == "simulated"
        assert settings.deposit_wei == 2 * 10**18
        assert settings.concurrent_wiring is False
        assert settings.compiler.version == "0.8.9"
        assert settings.compiler.optimizer_enabled is True
        assert settings.compiler.optimizer_runs == 200
        assert settings.token.decimals == 18

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("GASLESS_CHAIN_MODE", "live")
        monkeypatch.setenv("GASLESS_RPC_URL", "http://node:8545")
        monkeypatch.setenv("GASLESS_DEPOSIT_WEI", "1000")
        settings = HarnessSettings(_env_file=None)
        assert settings.chain_mode == "live"
        assert settings.rpc_url == "http://node:8545"
        assert settings.deposit_wei == 1000

    def test_nested_env(self, monkeypatch):
        monkeypatch.setenv("GASLESS_RELAY__AUDITORS_COUNT", "2")
        monkeypatch.setenv("GASLESS_LIMITS__RELAYED_CALL_OVERHEAD", "105000")
        settings = HarnessSettings(_env_file=None)
        assert settings.relay.auditors_count == 2
        assert settings.limits.relayed_call_overhead == 105_000

    def test_invalid_chain_mode(self):
        with pytest.raises(ValidationError):
            HarnessSettings(_env_file=None, chain_mode="mainnet")

    def test_deposit_must_be_positive(self):
        with pytest.raises(ValidationError):
            HarnessSettings(_env_file=None, deposit_wei=0)


class TestSections:
    """Tests for nested configuration sections."""

    def test_relays_from_comma_separated_string(self):
        relay = RelaySettings(preferred_relays="http://a:8090, http://b:8090,")
        assert relay.preferred_relays == ["http://a:8090", "http://b:8090"]

    def test_network_addresses_checksummed(self):
        network = NetworkSettings(relay_hub="0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed")
        assert network.relay_hub == "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
        assert network.forwarder is None

    def test_network_rejects_bad_address(self):
        with pytest.raises(ValidationError):
            NetworkSettings(forwarder="0xnope")

    def test_limits_to_paymaster_limits(self):
        limits = LimitsSettings(relayed_call_overhead=105_000).to_limits()
        assert isinstance(limits, PaymasterLimits)
        assert limits.relayed_call_overhead == 105_000
        assert limits.as_tuple() == (0, 0, 50_000, 105_000, 70_000, 12_000, 10_500, 0)
