"""Relay server transports.

``HttpRelayTransport`` speaks the GSN v2 relay server HTTP API:

    GET  /getaddr   relay "pong": worker, manager, hub, readiness, limits
    POST /relay     signed relay request -> signed worker transaction
    POST /audit     hand a signed transaction to another relay for auditing
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
from eth_utils import keccak, to_bytes, to_hex

from ..exceptions import SponsorshipRejection
from ..types import Address
from .request import RelayRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_ACCEPTANCE_BUDGET = 285_252


@dataclass(frozen=True)
class RelayInfo:
    """A relay server and the on-chain identities it relays through."""
    url: str
    relay_worker: Address
    relay_manager: Address
    relay_hub: Address
    min_gas_price: int = 0
    max_acceptance_budget: int = DEFAULT_MAX_ACCEPTANCE_BUDGET
    ready: bool = True
    version: str = ""
    pct_relay_fee: int = 0
    base_relay_fee: int = 0

    @classmethod
    def from_pong(cls, url: str, pong: Dict[str, Any]) -> "RelayInfo":
        return cls(
            url=url,
            relay_worker=Address(pong["relayWorkerAddress"]),
            relay_manager=Address(pong["relayManagerAddress"]),
            relay_hub=Address(pong["relayHubAddress"]),
            min_gas_price=int(pong.get("minGasPrice") or 0),
            max_acceptance_budget=int(
                pong.get("maxAcceptanceBudget") or DEFAULT_MAX_ACCEPTANCE_BUDGET
            ),
            ready=bool(pong.get("ready")),
            version=str(pong.get("version", "")),
        )


@dataclass(frozen=True)
class RelayMetadata:
    """Everything the relay needs next to the request itself."""
    signature: bytes
    relay_hub: Address
    relay_max_nonce: int
    approval_data: bytes = b""

    def to_json(self) -> Dict[str, Any]:
        return {
            "approvalData": to_hex(self.approval_data),
            "relayHubAddress": self.relay_hub,
            "relayMaxNonce": self.relay_max_nonce,
            "signature": to_hex(self.signature),
        }


@dataclass(frozen=True)
class RelayedTransaction:
    """What a relay handed back: the worker transaction hash, and the raw
    signed transaction when the relay exposes it (needed for auditing)."""
    tx_hash: str
    signed_tx: Optional[str] = None


class RelayTransport(ABC):
    """How the provider reaches relay servers."""

    @abstractmethod
    async def discover(self) -> List[RelayInfo]:
        """Ping known relays; unreachable relays are left out."""

    @abstractmethod
    async def relay(
        self,
        relay: RelayInfo,
        request: RelayRequest,
        metadata: RelayMetadata,
    ) -> RelayedTransaction:
        """Submit a signed request. Raises SponsorshipRejection on refusal."""

    @abstractmethod
    async def audit(self, signed_tx: str, exclude: Sequence[str], count: int) -> int:
        """Send ``signed_tx`` to up to ``count`` other relays; returns how many took it."""

    async def close(self) -> None:
        """Release transport resources."""


class HttpRelayTransport(RelayTransport):
    def __init__(
        self,
        relay_urls: Sequence[str],
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._relay_urls = [u.rstrip("/") for u in relay_urls]
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def _get_pong(self, url: str) -> Dict[str, Any]:
        response = await self._client.get(f"{url}/getaddr")
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("relay returned invalid /getaddr payload")
        return data

    async def discover(self) -> List[RelayInfo]:
        relays: List[RelayInfo] = []
        for url in self._relay_urls:
            try:
                pong = await self._get_pong(url)
                relays.append(RelayInfo.from_pong(url, pong))
            except (httpx.HTTPError, ValueError, KeyError) as e:
                logger.warning(f"Relay {url} unavailable: {e}")
        return relays

    async def relay(
        self,
        relay: RelayInfo,
        request: RelayRequest,
        metadata: RelayMetadata,
    ) -> RelayedTransaction:
        payload = {"relayRequest": request.to_json(), "metadata": metadata.to_json()}
        try:
            response = await self._client.post(f"{relay.url}/relay", json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SponsorshipRejection(
                f"relay request failed: {e}",
                paymaster=request.relay_data.paymaster,
                relay_url=relay.url,
            ) from e

        if data.get("error"):
            raise SponsorshipRejection(
                str(data["error"]),
                paymaster=request.relay_data.paymaster,
                relay_url=relay.url,
            )
        signed_tx = data.get("signedTx")
        if not isinstance(signed_tx, str):
            raise SponsorshipRejection(
                "relay returned no signed transaction",
                paymaster=request.relay_data.paymaster,
                relay_url=relay.url,
            )
        tx_hash = to_hex(keccak(to_bytes(hexstr=signed_tx)))
        logger.info(f"Relay {relay.url} accepted request, tx {tx_hash}")
        return RelayedTransaction(tx_hash=tx_hash, signed_tx=signed_tx)

    async def audit(self, signed_tx: str, exclude: Sequence[str], count: int) -> int:
        auditors = [u for u in self._relay_urls if u not in exclude][:count]
        audited = 0
        for url in auditors:
            try:
                response = await self._client.post(f"{url}/audit", json={"signedTx": signed_tx})
                response.raise_for_status()
                audited += 1
            except httpx.HTTPError as e:
                logger.warning(f"Auditor {url} did not accept transaction: {e}")
        return audited

    async def close(self) -> None:
        await self._client.aclose()
