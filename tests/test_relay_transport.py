"""
Tests for the relay server HTTP transport.

Relay servers are replaced by ``httpx.MockTransport`` handlers.
"""
from __future__ import annotations

import json

import httpx
import pytest
from eth_account import Account
from eth_utils import keccak, to_hex

from gasless_harness.exceptions import SponsorshipRejection
from gasless_harness.relay.request import ForwardRequest, RelayData, RelayRequest
from gasless_harness.relay.transport import (
    DEFAULT_MAX_ACCEPTANCE_BUDGET,
    HttpRelayTransport,
    RelayInfo,
    RelayMetadata,
)
from gasless_harness.simulated import derive_address
from gasless_harness.types import Address

RELAY_A = "http://relay-a:8090"
RELAY_B = "http://relay-b:8090"
WORKER = derive_address("worker")
MANAGER = derive_address("manager")
HUB = derive_address("hub")
SIGNED_TX = "0x02f86b827a6980843b9aca00"


def pong(ready=True):
    return {
        "relayWorkerAddress": WORKER,
        "relayManagerAddress": MANAGER,
        "relayHubAddress": HUB,
        "minGasPrice": "1000000000",
        "maxAcceptanceBudget": "300000",
        "ready": ready,
        "version": "2.2.0",
    }


def make_transport(handler, urls=(RELAY_A,)):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpRelayTransport(list(urls), client=client)


def make_request() -> RelayRequest:
    return RelayRequest(
        request=ForwardRequest(
            from_address=Address(Account.create().address),
            to=derive_address("recipient"),
            value=0,
            gas=100_000,
            nonce=0,
            data=b"\x01\x02",
            valid_until=100,
        ),
        relay_data=RelayData(
            gas_price=10**9,
            pct_relay_fee=0,
            base_relay_fee=0,
            relay_worker=WORKER,
            paymaster=derive_address("paymaster"),
            forwarder=derive_address("forwarder"),
        ),
    )


METADATA = RelayMetadata(signature=b"\x11" * 65, relay_hub=HUB, relay_max_nonce=3)
RELAY = RelayInfo(url=RELAY_A, relay_worker=WORKER, relay_manager=MANAGER, relay_hub=HUB)


class TestRelayInfo:
    """Tests for parsing the /getaddr pong."""

    def test_from_pong(self):
        info = RelayInfo.from_pong(RELAY_A, pong())
        assert info.relay_worker == WORKER
        assert info.relay_hub == HUB
        assert info.min_gas_price == 10**9
        assert info.max_acceptance_budget == 300_000
        assert info.ready is True

    def test_default_acceptance_budget(self):
        data = pong()
        del data["maxAcceptanceBudget"]
        assert RelayInfo.from_pong(RELAY_A, data).max_acceptance_budget == DEFAULT_MAX_ACCEPTANCE_BUDGET


class TestDiscover:
    """Tests for relay discovery."""

    @pytest.mark.asyncio
    async def test_discover(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/getaddr"
            return httpx.Response(200, json=pong())

        transport = make_transport(handler)
        relays = await transport.discover()
        assert [r.url for r in relays] == [RELAY_A]
        await transport.close()

    @pytest.mark.asyncio
    async def test_unreachable_relay_skipped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "relay-a":
                return httpx.Response(503)
            return httpx.Response(200, json=pong())

        transport = make_transport(handler, urls=(RELAY_A, RELAY_B))
        relays = await transport.discover()
        assert [r.url for r in relays] == [RELAY_B]

    @pytest.mark.asyncio
    async def test_malformed_pong_skipped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"ready": True})

        assert await make_transport(handler).discover() == []


class TestRelay:
    """Tests for POST /relay."""

    @pytest.mark.asyncio
    async def test_relay_accepted(self):
        received = {}

        def handler(request: httpx.Request) -> httpx.Response:
            received.update(json.loads(request.content))
            return httpx.Response(200, json={"signedTx": SIGNED_TX})

        relayed = await make_transport(handler).relay(RELAY, make_request(), METADATA)

        assert relayed.signed_tx == SIGNED_TX
        assert relayed.tx_hash == to_hex(keccak(hexstr=SIGNED_TX))
        assert received["metadata"]["relayMaxNonce"] == 3
        assert received["metadata"]["relayHubAddress"] == HUB
        assert received["relayRequest"]["relayData"]["relayWorker"] == WORKER

    @pytest.mark.asyncio
    async def test_relay_error_field(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"error": "Paymaster rejected in local view call"})

        with pytest.raises(SponsorshipRejection) as exc_info:
            await make_transport(handler).relay(RELAY, make_request(), METADATA)
        assert exc_info.value.reason == "Paymaster rejected in local view call"
        assert exc_info.value.details["relay_url"] == RELAY_A

    @pytest.mark.asyncio
    async def test_relay_http_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="internal error")

        with pytest.raises(SponsorshipRejection):
            await make_transport(handler).relay(RELAY, make_request(), METADATA)

    @pytest.mark.asyncio
    async def test_relay_without_signed_tx(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={})

        with pytest.raises(SponsorshipRejection):
            await make_transport(handler).relay(RELAY, make_request(), METADATA)


class TestAudit:
    """Tests for POST /audit."""

    @pytest.mark.asyncio
    async def test_audit_excludes_submitting_relay(self):
        audited_hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/audit"
            audited_hosts.append(request.url.host)
            return httpx.Response(200, json={"commitTxHash": []})

        transport = make_transport(handler, urls=(RELAY_A, RELAY_B))
        assert await transport.audit(SIGNED_TX, [RELAY_A], 1) == 1
        assert audited_hosts == ["relay-b"]

    @pytest.mark.asyncio
    async def test_audit_failure_not_counted(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        transport = make_transport(handler, urls=(RELAY_A, RELAY_B))
        assert await transport.audit(SIGNED_TX, [], 2) == 0
