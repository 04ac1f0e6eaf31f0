"""Simulated GSN network: infrastructure bootstrap plus an in-process relay."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from eth_utils import keccak

from ..exceptions import SponsorshipRejection, TransactionReverted
from ..network import RelayNetworkAddresses
from ..relay.provider import decode_revert_reason
from ..relay.request import RelayRequest
from ..relay.transport import RelayedTransaction, RelayInfo, RelayMetadata, RelayTransport
from ..types import Address
from .chain import SimulatedChain, derive_address

logger = logging.getLogger(__name__)

SIMULATED_RELAY_URL = "simulated://relay"
RELAY_FUNDING_WEI = 10 * 10**18
RELAY_STAKE_WEI = 1 * 10**18
RELAY_UNSTAKE_DELAY = 15_000
# Gas the worker adds on top of the request's own gas for hub bookkeeping
WORKER_GAS_ALLOWANCE = 300_000


class SimulatedRelayTransport(RelayTransport):
    """
    Relays in-process: the worker dry-runs ``relayCall`` and then submits it
    to the simulated chain, the way a relay server would on a real node.
    """

    def __init__(self, chain: SimulatedChain, relays: Sequence[RelayInfo]):
        self._chain = chain
        self._relays = list(relays)

    async def discover(self) -> List[RelayInfo]:
        return list(self._relays)

    async def relay(
        self,
        relay: RelayInfo,
        request: RelayRequest,
        metadata: RelayMetadata,
    ) -> RelayedTransaction:
        paymaster = request.relay_data.paymaster
        worker_nonce = await self._chain.get_transaction_count(relay.relay_worker)
        if worker_nonce > metadata.relay_max_nonce:
            raise SponsorshipRejection(
                f"relay nonce {worker_nonce} exceeds relayMaxNonce {metadata.relay_max_nonce}",
                paymaster=paymaster,
                relay_url=relay.url,
            )

        hub = self._chain.contract_at("RelayHub", metadata.relay_hub)
        args = (
            relay.max_acceptance_budget,
            request.to_abi_tuple(),
            metadata.signature,
            metadata.approval_data,
            request.request.gas + WORKER_GAS_ALLOWANCE,
        )
        gas_price = request.relay_data.gas_price
        try:
            accepted, return_value = await hub.call(
                "relayCall", *args, sender=relay.relay_worker, gas_price=gas_price
            )
            if not accepted:
                raise SponsorshipRejection(
                    decode_revert_reason(bytes(return_value)),
                    paymaster=paymaster,
                    relay_url=relay.url,
                )
            receipt = await hub.transact(
                "relayCall", *args, sender=relay.relay_worker, gas_price=gas_price
            )
        except TransactionReverted as e:
            raise SponsorshipRejection(
                f"relay worker transaction failed: {e.reason or e.message}",
                paymaster=paymaster,
                relay_url=relay.url,
            ) from e
        return RelayedTransaction(tx_hash=receipt.tx_hash)

    async def audit(self, signed_tx: str, exclude: Sequence[str], count: int) -> int:
        return len([r for r in self._relays if r.url not in exclude][:count])


@dataclass(frozen=True)
class SimulatedRelayNetwork:
    """What the bootstrap leaves behind: contract addresses and one ready relay."""
    addresses: RelayNetworkAddresses
    relay: RelayInfo
    chain: SimulatedChain

    def transport(self) -> SimulatedRelayTransport:
        return SimulatedRelayTransport(self.chain, [self.relay])


async def bootstrap_relay_network(
    chain: SimulatedChain,
    owner: Optional[Address] = None,
) -> SimulatedRelayNetwork:
    """
    Deploy and wire the GSN infrastructure on a simulated chain, then
    register a staked relay manager with one funded worker.
    """
    owner = Address(owner) if owner else (await chain.accounts())[0]

    stake_manager = await chain.deploy("StakeManager", owner)
    penalizer = await chain.deploy("Penalizer", owner)
    relay_hub = await chain.deploy("RelayHub", owner, [stake_manager.address, penalizer.address])
    forwarder = await chain.deploy("Forwarder", owner)
    version_registry = await chain.deploy("VersionRegistry", owner)

    manager = derive_address("simulated-relay-manager")
    worker = derive_address("simulated-relay-worker")
    for account in (manager, worker):
        await chain.rpc("hardhat_setBalance", [account, hex(RELAY_FUNDING_WEI)])

    await stake_manager.transact(
        "stakeForRelayManager", manager, RELAY_UNSTAKE_DELAY, sender=owner, value=RELAY_STAKE_WEI
    )
    await relay_hub.transact("addRelayWorkers", [worker], sender=manager)
    await version_registry.transact(
        "addVersion",
        keccak(text="hub"),
        keccak(text="2.2.0"),
        relay_hub.address,
        sender=owner,
    )

    addresses = RelayNetworkAddresses(
        forwarder=forwarder.address,
        penalizer=penalizer.address,
        relay_hub=relay_hub.address,
        stake_manager=stake_manager.address,
        version_registry=version_registry.address,
    )
    relay = RelayInfo(
        url=SIMULATED_RELAY_URL,
        relay_worker=worker,
        relay_manager=manager,
        relay_hub=relay_hub.address,
        ready=True,
        version="2.2.0",
    )
    logger.info(f"Relay network ready: hub={relay_hub.address} forwarder={forwarder.address}")
    return SimulatedRelayNetwork(addresses=addresses, relay=relay, chain=chain)
