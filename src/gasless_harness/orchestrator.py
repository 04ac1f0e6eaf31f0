"""
Environment orchestration.

Deploys the recipient, token and paymaster in dependency order, wires the
paymaster into the token and the relay hub, and funds the sponsored
account with tokens. Any failure is fatal to the run: there is no partial
environment.

Steps:
1. Deploy MyRecipient trusting the forwarder
2. Deploy GaslessErc20Token
3. Assemble PaymasterLimits
4. Deploy MyPaymaster against hub, forwarder, token and limits
5. Grant the paymaster PAYMASTER_ROLE on the token      (after 4)
6. Deposit native currency for the paymaster on the hub (after 4)
7. Mint tokens to the zero-balance sponsored account
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .config import HarnessSettings
from .connection import ChainConnection, DeployedContract, TxReceipt
from .deployers import deploy_gasless_erc20_token, deploy_my_paymaster, deploy_my_recipient
from .exceptions import ChainConnectionError, TransactionReverted, WiringFailure
from .logging_utils import OperationType, get_harness_logger
from .network import RelayNetworkAddresses
from .types import Address, PaymasterLimits, Uint256

logger = logging.getLogger(__name__)

RELAY_HUB_INTERFACE = "IRelayHub"

_SUBMISSION_ERRORS = (TransactionReverted, ChainConnectionError)


@dataclass(frozen=True)
class EnvironmentParams:
    """Economic and token parameters for one orchestration run."""
    token_name: str = "Gasless Token"
    token_symbol: str = "GT"
    token_decimals: int = 18
    mint_amount: int = 100_000_000 * 10**18
    deposit_amount: int = 2 * 10**18
    limits: PaymasterLimits = field(default_factory=PaymasterLimits)
    minters: Tuple[Address, ...] = ()
    paymasters: Tuple[Address, ...] = ()

    @classmethod
    def from_settings(cls, settings: HarnessSettings) -> "EnvironmentParams":
        return cls(
            token_name=settings.token.name,
            token_symbol=settings.token.symbol,
            token_decimals=settings.token.decimals,
            mint_amount=settings.token.mint_amount,
            deposit_amount=settings.deposit_wei,
            limits=settings.limits.to_limits(),
        )


@dataclass(frozen=True)
class Environment:
    """Fully wired set of deployed contracts plus the relay infrastructure."""
    admin: Address
    network: RelayNetworkAddresses
    recipient: DeployedContract
    token: DeployedContract
    paymaster: DeployedContract
    relay_hub: DeployedContract
    sponsored_account: Address
    limits: PaymasterLimits
    mint_amount: int
    deposit_amount: int

    async def token_balance(self, address: str) -> int:
        return await self.token.call("balanceOf", Address(address))

    async def hub_balance(self, address: str) -> int:
        return await self.relay_hub.call("balanceOf", Address(address))

    async def paymaster_role_granted(self) -> bool:
        role = await self.token.call("PAYMASTER_ROLE")
        return await self.token.call("hasRole", role, self.paymaster.address)

    async def paymaster_limits(self) -> PaymasterLimits:
        """Limits as currently stored by the paymaster, scenario changes included."""
        return PaymasterLimits.from_tuple(await self.paymaster.call("limits"))

    async def set_relayed_call_overhead(self, overhead: int) -> TxReceipt:
        """Scenario mutation; bracket it with a snapshot."""
        return await self.paymaster.transact(
            "setRelayedCallOverhead", int(Uint256(overhead)), sender=self.admin
        )


class Orchestrator:
    """Builds an ``Environment`` on an explicit chain connection."""

    def __init__(self, connection: ChainConnection, concurrent_wiring: bool = False):
        self._connection = connection
        self._concurrent_wiring = concurrent_wiring
        self._log = get_harness_logger()

    async def build(
        self,
        admin: Address,
        network: RelayNetworkAddresses,
        sponsored_account: Address,
        params: Optional[EnvironmentParams] = None,
    ) -> Environment:
        params = params or EnvironmentParams()
        admin = Address(admin)
        sponsored_account = Address(sponsored_account)
        connection = self._connection

        recipient = await deploy_my_recipient(connection, admin, network.forwarder)

        token = await deploy_gasless_erc20_token(
            connection,
            admin,
            admin,
            list(params.minters),
            list(params.paymasters),
            params.token_name,
            params.token_symbol,
            params.token_decimals,
            network.forwarder,
        )

        limits = params.limits

        paymaster = await deploy_my_paymaster(
            connection,
            admin,
            admin,
            network.relay_hub,
            network.forwarder,
            token.address,
            limits,
        )

        relay_hub = connection.contract_at(RELAY_HUB_INTERFACE, network.relay_hub)

        if self._concurrent_wiring:
            await self._run_concurrently(
                self._grant_paymaster_role(admin, token, paymaster),
                self._deposit_for_paymaster(admin, relay_hub, paymaster, params.deposit_amount),
            )
        else:
            await self._grant_paymaster_role(admin, token, paymaster)
            await self._deposit_for_paymaster(admin, relay_hub, paymaster, params.deposit_amount)

        await self._mint_to_sponsored_account(admin, token, sponsored_account, params.mint_amount)

        logger.info(
            f"Environment ready: recipient={recipient.address} token={token.address} "
            f"paymaster={paymaster.address} sponsored_account={sponsored_account}"
        )
        return Environment(
            admin=admin,
            network=network,
            recipient=recipient,
            token=token,
            paymaster=paymaster,
            relay_hub=relay_hub,
            sponsored_account=sponsored_account,
            limits=limits,
            mint_amount=params.mint_amount,
            deposit_amount=params.deposit_amount,
        )

    @staticmethod
    async def _run_concurrently(*steps) -> None:
        """Run wiring steps together; the first failure cancels the rest."""
        tasks = [asyncio.ensure_future(step) for step in steps]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            # wait for cancelled steps so none keeps transacting after the failure
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _grant_paymaster_role(
        self,
        admin: Address,
        token: DeployedContract,
        paymaster: DeployedContract,
    ) -> None:
        step = "grant_paymaster_role"
        async with self._log.operation_context(
            OperationType.WIRING, self._connection.label, step=step
        ):
            try:
                role = await token.call("PAYMASTER_ROLE")
                await token.transact("grantRole", role, paymaster.address, sender=admin)
                granted = await token.call("hasRole", role, paymaster.address)
            except _SUBMISSION_ERRORS as e:
                raise WiringFailure(step, e.message) from e
            if not granted:
                raise WiringFailure(step, "PAYMASTER_ROLE not held after grant")

    async def _deposit_for_paymaster(
        self,
        admin: Address,
        relay_hub: DeployedContract,
        paymaster: DeployedContract,
        amount: int,
    ) -> None:
        step = "deposit_for_paymaster"
        async with self._log.operation_context(
            OperationType.WIRING, self._connection.label, step=step, amount=amount
        ):
            try:
                await relay_hub.transact("depositFor", paymaster.address, sender=admin, value=amount)
                balance = await relay_hub.call("balanceOf", paymaster.address)
            except _SUBMISSION_ERRORS as e:
                raise WiringFailure(step, e.message) from e
            if balance != amount:
                raise WiringFailure(step, f"hub balance {balance} != deposit {amount}")

    async def _mint_to_sponsored_account(
        self,
        admin: Address,
        token: DeployedContract,
        account: Address,
        amount: int,
    ) -> None:
        step = "mint_to_sponsored_account"
        async with self._log.operation_context(
            OperationType.WIRING, self._connection.label, step=step, account=account
        ):
            try:
                native_balance = await self._connection.get_balance(account)
                if native_balance != 0:
                    raise WiringFailure(step, f"sponsored account holds {native_balance} wei")
                await token.transact("mint", account, amount, sender=admin)
                balance = await token.call("balanceOf", account)
            except _SUBMISSION_ERRORS as e:
                raise WiringFailure(step, e.message) from e
            if balance != amount:
                raise WiringFailure(step, f"token balance {balance} != minted {amount}")
