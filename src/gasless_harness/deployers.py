"""Contract deployers.

Two deployment shapes:
- single step: the constructor fully configures the instance (MyRecipient)
- two step: a no-argument construction followed by ``initialize(...)``
  (GaslessErc20Token, MyPaymaster), the upgradeable-proxy-friendly pattern

A deployer never hands out a contract whose initialization has not been
confirmed; ``PendingContract`` is deliberately not a ``DeployedContract``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from .connection import ChainConnection, DeployedContract
from .exceptions import ChainConnectionError, DeploymentFailure, TransactionReverted
from .logging_utils import OperationType, get_harness_logger
from .types import Address, PaymasterLimits, Uint8, check_abi_value

logger = logging.getLogger(__name__)

RECIPIENT_CONTRACT = "MyRecipient"
TOKEN_CONTRACT = "GaslessErc20Token"
PAYMASTER_CONTRACT = "MyPaymaster"

_SUBMISSION_ERRORS = (TransactionReverted, ChainConnectionError)


def validate_arguments(
    connection: ChainConnection,
    contract_name: str,
    fn: str,
    args: Sequence[Any],
) -> None:
    """Check ``args`` against the declared ABI inputs of ``fn``, exactly."""
    expected = connection.abi_inputs(contract_name, fn)
    if expected is None:
        raise DeploymentFailure(contract_name, "arguments", f"{fn} is not in the contract ABI")
    if len(expected) != len(args):
        raise DeploymentFailure(
            contract_name,
            "arguments",
            f"{fn} expects {len(expected)} arguments, got {len(args)}",
        )
    for index, (abi_type, value) in enumerate(zip(expected, args)):
        try:
            check_abi_value(abi_type, value)
        except (TypeError, ValueError) as e:
            raise DeploymentFailure(
                contract_name, "arguments", f"{fn} argument {index} ({abi_type}): {e}"
            ) from e


@dataclass(frozen=True)
class PendingContract:
    """A constructed contract still waiting for ``initialize``."""
    name: str
    address: Address
    _handle: DeployedContract = field(repr=False)


class TwoPhaseDeployment:
    """Builder: ``create()`` then mandatory ``configure()``."""

    def __init__(
        self,
        connection: ChainConnection,
        contract_name: str,
        deployer: Address,
        init_args: Sequence[Any],
        init_function: str = "initialize",
    ):
        self._connection = connection
        self._contract_name = contract_name
        self._deployer = Address(deployer)
        self._init_args = list(init_args)
        self._init_function = init_function
        self._log = get_harness_logger()

    async def create(self) -> PendingContract:
        validate_arguments(self._connection, self._contract_name, "constructor", [])
        validate_arguments(
            self._connection, self._contract_name, self._init_function, self._init_args
        )
        async with self._log.operation_context(
            OperationType.DEPLOY, self._connection.label, contract=self._contract_name
        ) as ctx:
            try:
                handle = await self._connection.deploy(self._contract_name, self._deployer)
            except _SUBMISSION_ERRORS as e:
                raise DeploymentFailure(self._contract_name, "construct", e.message) from e
            ctx.metadata["address"] = handle.address
        return PendingContract(name=self._contract_name, address=handle.address, _handle=handle)

    async def configure(
        self,
        pending: PendingContract,
        init_args: Optional[Sequence[Any]] = None,
    ) -> DeployedContract:
        """Initialize ``pending``; ``init_args`` overrides the builder's arguments."""
        if init_args is None:
            init_args = self._init_args
        else:
            init_args = list(init_args)
            validate_arguments(self._connection, pending.name, self._init_function, init_args)
        async with self._log.operation_context(
            OperationType.INITIALIZE,
            self._connection.label,
            contract=pending.name,
            address=pending.address,
        ):
            try:
                await pending._handle.transact(
                    self._init_function, *init_args, sender=self._deployer
                )
            except _SUBMISSION_ERRORS as e:
                logger.warning(
                    f"{pending.name} at {pending.address} left uninitialized: {e.message}"
                )
                raise DeploymentFailure(
                    pending.name, "initialize", e.message, address=pending.address
                ) from e
        return pending._handle

    async def deploy(self) -> DeployedContract:
        pending = await self.create()
        return await self.configure(pending)


async def deploy_single_step(
    connection: ChainConnection,
    contract_name: str,
    deployer: Address,
    constructor_args: Sequence[Any],
) -> DeployedContract:
    validate_arguments(connection, contract_name, "constructor", constructor_args)
    async with get_harness_logger().operation_context(
        OperationType.DEPLOY, connection.label, contract=contract_name
    ) as ctx:
        try:
            handle = await connection.deploy(contract_name, Address(deployer), constructor_args)
        except _SUBMISSION_ERRORS as e:
            raise DeploymentFailure(contract_name, "construct", e.message) from e
        ctx.metadata["address"] = handle.address
    return handle


async def deploy_my_recipient(
    connection: ChainConnection,
    deployer: Address,
    trusted_forwarder: Address,
) -> DeployedContract:
    return await deploy_single_step(
        connection, RECIPIENT_CONTRACT, deployer, [Address(trusted_forwarder)]
    )


async def deploy_gasless_erc20_token(
    connection: ChainConnection,
    deployer: Address,
    admin: Address,
    minters: List[Address],
    paymasters: List[Address],
    name: str,
    symbol: str,
    decimals: Uint8,
    trusted_forwarder: Address,
) -> DeployedContract:
    return await TwoPhaseDeployment(
        connection,
        TOKEN_CONTRACT,
        deployer,
        [admin, list(minters), list(paymasters), name, symbol, decimals, trusted_forwarder],
    ).deploy()


async def deploy_my_paymaster(
    connection: ChainConnection,
    deployer: Address,
    admin: Address,
    relay_hub: Address,
    trusted_forwarder: Address,
    token: Address,
    limits: PaymasterLimits,
) -> DeployedContract:
    """Deploy and initialize the paymaster against an existing token.

    Raises:
        DeploymentFailure: phase "precondition" when ``token`` is the zero
            address or holds no code
    """
    try:
        token_address = Address(token)
    except ValueError as e:
        raise DeploymentFailure(PAYMASTER_CONTRACT, "precondition", str(e)) from e
    if token_address.is_zero:
        raise DeploymentFailure(PAYMASTER_CONTRACT, "precondition", "token address is zero")
    if not await connection.get_code(token_address):
        raise DeploymentFailure(
            PAYMASTER_CONTRACT, "precondition", f"no contract deployed at token {token_address}"
        )

    return await TwoPhaseDeployment(
        connection,
        PAYMASTER_CONTRACT,
        deployer,
        [admin, relay_hub, trusted_forwarder, token_address, limits.as_tuple()],
    ).deploy()
