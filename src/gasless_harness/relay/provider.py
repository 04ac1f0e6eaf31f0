"""
Relay-aware provider.

Wraps a base chain connection so that calls from accounts it manages are
sent as GSN relayed calls sponsored by a paymaster instead of ordinary
transactions. A rejected sponsorship is an error; there is no fallback to
a transaction paid by the caller.

Usage:
    provider = await RelayProvider(connection, RelayProviderConfig(paymaster)).init()
    user = provider.new_account()
    receipt = await provider.signer(user.address).transact(recipient, "heavyFunc", 2000)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_hex

from ..config import RelaySettings
from ..connection import ChainConnection, DeployedContract, TxReceipt
from ..exceptions import RelayNotInitialized, SponsorshipRejection, TransactionReverted
from ..logging_utils import OperationType, get_harness_logger
from ..types import Address
from .request import ForwardRequest, RelayData, RelayRequest
from .transport import HttpRelayTransport, RelayInfo, RelayMetadata, RelayTransport

logger = logging.getLogger(__name__)

RELAY_LOGGER_NAME = "gasless_harness.relay"

PAYMASTER_INTERFACE = "IPaymaster"
FORWARDER_INTERFACE = "IForwarder"
RELAY_HUB_INTERFACE = "IRelayHub"

# Headroom for the hub's own bookkeeping around the inner call.
HUB_GAS_RESERVE = 150_000

ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")

RELAY_CALL_STATUS_OK = 0


def decode_revert_reason(data: bytes) -> str:
    """Decode an ``Error(string)`` payload; fall back to hex."""
    if data[:4] == ERROR_STRING_SELECTOR:
        try:
            (reason,) = decode(["string"], data[4:])
            return reason
        except DecodingError:
            pass
    return to_hex(data) if data else "no reason"


@dataclass
class RelayProviderConfig:
    paymaster_address: str
    auditors_count: int = 0
    log_level: Optional[str] = None
    preferred_relays: List[str] = field(default_factory=list)
    max_relay_nonce_gap: int = 3
    valid_until_blocks: int = 6000
    client_id: int = 1

    @classmethod
    def from_settings(cls, settings: RelaySettings, paymaster_address: str) -> "RelayProviderConfig":
        return cls(
            paymaster_address=paymaster_address,
            auditors_count=settings.auditors_count,
            log_level=settings.log_level,
            preferred_relays=list(settings.preferred_relays),
            max_relay_nonce_gap=settings.max_relay_nonce_gap,
            valid_until_blocks=settings.valid_until_blocks,
        )


@dataclass(frozen=True)
class PaymasterGasLimits:
    acceptance_budget: int
    pre_relayed_call_gas_limit: int
    post_relayed_call_gas_limit: int
    calldata_size_limit: int


class RelayedSigner:
    """Sends calls from one managed account through the relay."""

    def __init__(self, provider: "RelayProvider", address: Address):
        self._provider = provider
        self.address = address

    async def transact(self, contract: DeployedContract, fn: str, *args: Any) -> TxReceipt:
        return await self._provider.relay_call(self.address, contract, fn, list(args))

    async def get_balance(self) -> int:
        return await self._provider.connection.get_balance(self.address)


class RelayProvider:
    def __init__(
        self,
        connection: ChainConnection,
        config: RelayProviderConfig,
        transport: Optional[RelayTransport] = None,
    ):
        self._connection = connection
        self._config = config
        self._paymaster_address = Address(config.paymaster_address)
        self._transport = transport or HttpRelayTransport(config.preferred_relays)
        self._accounts: Dict[Address, LocalAccount] = {}
        self._relays: List[RelayInfo] = []
        self._initialized = False
        self._log = get_harness_logger()

        if config.log_level:
            logging.getLogger(RELAY_LOGGER_NAME).setLevel(config.log_level.upper())

    @property
    def connection(self) -> ChainConnection:
        return self._connection

    @property
    def config(self) -> RelayProviderConfig:
        return self._config

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def relays(self) -> List[RelayInfo]:
        return list(self._relays)

    async def init(self) -> "RelayProvider":
        """Read paymaster wiring and discover ready relays for its hub."""
        async with self._log.operation_context(
            OperationType.RELAY_INIT,
            self._connection.label,
            paymaster=self._paymaster_address,
        ) as ctx:
            paymaster = self._connection.contract_at(PAYMASTER_INTERFACE, self._paymaster_address)
            self._chain_id = await self._connection.chain_id()
            hub_address = Address(await paymaster.call("getHubAddr"))
            forwarder_address = Address(await paymaster.call("trustedForwarder"))
            limits = await paymaster.call("getGasAndDataLimits")
            self._gas_limits = PaymasterGasLimits(*(int(v) for v in limits))

            self._relay_hub = self._connection.contract_at(RELAY_HUB_INTERFACE, hub_address)
            self._forwarder = self._connection.contract_at(FORWARDER_INTERFACE, forwarder_address)

            discovered = await self._transport.discover()
            self._relays = [r for r in discovered if r.ready and r.relay_hub == hub_address]
            if not self._relays:
                raise SponsorshipRejection(
                    f"no ready relay serves hub {hub_address}",
                    paymaster=self._paymaster_address,
                )
            ctx.metadata["relays"] = len(self._relays)
            self._initialized = True
        return self

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise RelayNotInitialized("RelayProvider.init() must complete before relaying calls")

    def new_account(self) -> LocalAccount:
        """Create a fresh key; the account holds no native currency."""
        account = Account.create()
        self._accounts[Address(account.address)] = account
        logger.debug(f"Created relay account {account.address}")
        return account

    def add_account(self, private_key: str) -> LocalAccount:
        account = Account.from_key(private_key)
        self._accounts[Address(account.address)] = account
        return account

    def signer(self, address: str) -> RelayedSigner:
        self._require_initialized()
        address = Address(address)
        if address not in self._accounts:
            raise ValueError(f"Account {address} is not managed by this provider")
        return RelayedSigner(self, address)

    async def relay_call(
        self,
        sender: Address,
        contract: DeployedContract,
        fn: str,
        args: List[Any],
    ) -> TxReceipt:
        self._require_initialized()
        account = self._accounts.get(Address(sender))
        if account is None:
            raise ValueError(f"Account {sender} is not managed by this provider")

        async with self._log.operation_context(
            OperationType.RELAYED_CALL,
            self._connection.label,
            sender=sender,
            target=contract.address,
            function=fn,
        ) as ctx:
            data = contract.encode(fn, *args)
            if len(data) > self._gas_limits.calldata_size_limit:
                raise SponsorshipRejection(
                    f"calldata of {len(data)} bytes exceeds paymaster limit "
                    f"{self._gas_limits.calldata_size_limit}",
                    paymaster=self._paymaster_address,
                )

            gas = await self._connection.estimate_gas(
                {"from": account.address, "to": contract.address, "data": to_hex(data)}
            )
            nonce = await self._forwarder.call("getNonce", account.address)
            valid_until = await self._connection.block_number() + self._config.valid_until_blocks
            network_gas_price = await self._connection.gas_price()

            failures: List[str] = []
            for relay in self._relays:
                request = RelayRequest(
                    request=ForwardRequest(
                        from_address=Address(account.address),
                        to=contract.address,
                        value=0,
                        gas=gas,
                        nonce=nonce,
                        data=data,
                        valid_until=valid_until,
                    ),
                    relay_data=RelayData(
                        gas_price=max(network_gas_price, relay.min_gas_price),
                        pct_relay_fee=relay.pct_relay_fee,
                        base_relay_fee=relay.base_relay_fee,
                        relay_worker=relay.relay_worker,
                        paymaster=self._paymaster_address,
                        forwarder=self._forwarder.address,
                        client_id=self._config.client_id,
                    ),
                )
                signature = request.sign(account, self._chain_id)
                await self._dry_run(relay, request, signature)

                worker_nonce = await self._connection.get_transaction_count(relay.relay_worker)
                metadata = RelayMetadata(
                    signature=signature,
                    relay_hub=self._relay_hub.address,
                    relay_max_nonce=worker_nonce + self._config.max_relay_nonce_gap,
                )
                try:
                    relayed = await self._transport.relay(relay, request, metadata)
                except SponsorshipRejection as e:
                    logger.warning(f"Relay {relay.url} refused request: {e.reason}")
                    failures.append(f"{relay.url}: {e.reason}")
                    continue

                receipt = await self._connection.wait_for_receipt(relayed.tx_hash)
                self._check_relayed(receipt, relay)
                ctx.metadata["tx_hash"] = receipt.tx_hash
                self._log.log_transaction_confirmed(
                    receipt.tx_hash, receipt.block_number, receipt.gas_used, f"relayed {fn}"
                )

                if self._config.auditors_count > 0 and relayed.signed_tx:
                    audited = await self._transport.audit(
                        relayed.signed_tx, [relay.url], self._config.auditors_count
                    )
                    logger.debug(f"Transaction {receipt.tx_hash} sent to {audited} auditors")
                return receipt

            raise SponsorshipRejection(
                "no relay accepted the request: " + "; ".join(failures),
                paymaster=self._paymaster_address,
            )

    def _max_possible_gas(self, request: RelayRequest) -> int:
        return (
            request.request.gas
            + self._gas_limits.acceptance_budget
            + self._gas_limits.post_relayed_call_gas_limit
            + 16 * len(request.request.data)
            + HUB_GAS_RESERVE
        )

    async def _dry_run(self, relay: RelayInfo, request: RelayRequest, signature: bytes) -> None:
        """
        Ask the hub, as the worker would, whether the paymaster accepts.

        The hub rejects a transaction priced below ``relayData.gasPrice``, so
        the call carries that price and enough gas for the whole relay.
        """
        max_possible_gas = self._max_possible_gas(request)
        try:
            accepted, return_value = await self._relay_hub.call(
                "relayCall",
                relay.max_acceptance_budget,
                request.to_abi_tuple(),
                signature,
                b"",
                max_possible_gas,
                sender=relay.relay_worker,
                gas=max_possible_gas,
                gas_price=request.relay_data.gas_price,
            )
        except TransactionReverted as e:
            raise SponsorshipRejection(
                f"relayCall dry run reverted: {e.reason or e.message}",
                paymaster=self._paymaster_address,
                relay_url=relay.url,
            ) from e
        if not accepted:
            raise SponsorshipRejection(
                decode_revert_reason(bytes(return_value)),
                paymaster=self._paymaster_address,
                relay_url=relay.url,
            )

    def _check_relayed(self, receipt: TxReceipt, relay: RelayInfo) -> None:
        rejected = self._relay_hub.events(receipt, "TransactionRejectedByPaymaster")
        if rejected:
            reason = rejected[0].args.get("reason", b"")
            raise SponsorshipRejection(
                decode_revert_reason(bytes(reason)),
                paymaster=self._paymaster_address,
                relay_url=relay.url,
            )
        relayed = self._relay_hub.events(receipt, "TransactionRelayed")
        if not relayed:
            raise TransactionReverted(
                "relay transaction did not relay the call", tx_hash=receipt.tx_hash
            )
        status = relayed[0].args.get("status", RELAY_CALL_STATUS_OK)
        if status != RELAY_CALL_STATUS_OK:
            raise TransactionReverted(
                f"relayed call failed with status {status}", tx_hash=receipt.tx_hash
            )

    async def close(self) -> None:
        await self._transport.close()
