"""Relay network infrastructure addresses supplied by the network bootstrap."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping

from .config import NetworkSettings
from .exceptions import HarnessConfigurationError
from .types import Address

_CAMEL_KEYS = {
    "forwarder": "forwarderAddress",
    "penalizer": "penalizerAddress",
    "relay_hub": "relayHubAddress",
    "stake_manager": "stakeManagerAddress",
    "version_registry": "versionRegistryAddress",
}


@dataclass(frozen=True)
class RelayNetworkAddresses:
    """The five mutually wired relay network contracts. Opaque inputs."""
    forwarder: Address
    penalizer: Address
    relay_hub: Address
    stake_manager: Address
    version_registry: Address

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RelayNetworkAddresses":
        """Accept snake_case keys or a GSN ``contractsDeployment`` camelCase dict."""
        values: Dict[str, Address] = {}
        for key, camel in _CAMEL_KEYS.items():
            raw = data.get(key) or data.get(camel)
            if not raw:
                raise HarnessConfigurationError(
                    f"Relay network address '{key}' is missing",
                    details={"missing": key},
                )
            values[key] = Address(raw)
        return cls(**values)

    @classmethod
    def from_settings(cls, settings: NetworkSettings) -> "RelayNetworkAddresses":
        return cls.from_mapping(settings.model_dump())
