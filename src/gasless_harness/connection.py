"""
Explicit chain connection passed to deployers, orchestrator, relay and snapshots.

Every mutating operation submits a transaction and waits for its receipt;
a call is complete only once its confirmation has been observed.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_utils import to_bytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from .artifacts import ArtifactStore
from .exceptions import ChainConnectionError, TransactionReverted
from .logging_utils import get_harness_logger
from .types import Address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventLog:
    """A decoded contract event."""
    name: str
    address: Address
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TxReceipt:
    """Confirmed transaction receipt."""
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    contract_address: Optional[Address] = None
    events: Tuple[EventLog, ...] = ()
    raw: Any = field(default=None, repr=False, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class DeployedContract:
    """Handle to a deployed contract: its address plus a way to call it."""
    name: str
    address: Address
    connection: "ChainConnection" = field(repr=False, compare=False)

    async def transact(
        self,
        fn: str,
        *args: Any,
        sender: Address,
        value: int = 0,
        gas_price: Optional[int] = None,
    ) -> TxReceipt:
        return await self.connection.transact(
            self, fn, list(args), sender=sender, value=value, gas_price=gas_price
        )

    async def call(
        self,
        fn: str,
        *args: Any,
        sender: Optional[Address] = None,
        gas: Optional[int] = None,
        gas_price: Optional[int] = None,
    ) -> Any:
        return await self.connection.call(
            self, fn, list(args), sender=sender, gas=gas, gas_price=gas_price
        )

    def encode(self, fn: str, *args: Any) -> bytes:
        return self.connection.encode_call(self, fn, list(args))

    def events(self, receipt: TxReceipt, event_name: str) -> List[EventLog]:
        return self.connection.decode_events(self, receipt, event_name)


class ChainConnection(ABC):
    """Abstract chain endpoint (live node or in-process simulation)."""

    label: str = "chain"

    @abstractmethod
    async def chain_id(self) -> int: ...

    @abstractmethod
    async def accounts(self) -> List[Address]:
        """Signer accounts the endpoint can send from."""

    @abstractmethod
    async def get_balance(self, address: str) -> int: ...

    @abstractmethod
    async def get_code(self, address: str) -> bytes: ...

    @abstractmethod
    async def get_transaction_count(self, address: str) -> int: ...

    @abstractmethod
    async def block_number(self) -> int: ...

    @abstractmethod
    async def gas_price(self) -> int: ...

    @abstractmethod
    async def estimate_gas(self, tx: Dict[str, Any]) -> int: ...

    @abstractmethod
    def abi_inputs(self, contract_name: str, fn: str) -> Optional[List[str]]:
        """Declared input types of ``fn`` ("constructor" for the constructor)."""

    @abstractmethod
    async def deploy(
        self,
        contract_name: str,
        signer: Address,
        args: Sequence[Any] = (),
    ) -> DeployedContract: ...

    @abstractmethod
    async def transact(
        self,
        contract: DeployedContract,
        fn: str,
        args: Sequence[Any],
        sender: Address,
        value: int = 0,
        gas_price: Optional[int] = None,
    ) -> TxReceipt: ...

    @abstractmethod
    async def call(
        self,
        contract: DeployedContract,
        fn: str,
        args: Sequence[Any],
        sender: Optional[Address] = None,
        gas: Optional[int] = None,
        gas_price: Optional[int] = None,
    ) -> Any:
        """``eth_call``; without ``gas_price`` the node executes at a price of 0."""

    @abstractmethod
    def encode_call(self, contract: DeployedContract, fn: str, args: Sequence[Any]) -> bytes: ...

    @abstractmethod
    def decode_events(
        self,
        contract: DeployedContract,
        receipt: TxReceipt,
        event_name: str,
    ) -> List[EventLog]: ...

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt: ...

    @abstractmethod
    async def rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Raw JSON-RPC request (``evm_snapshot``, ``evm_revert``, ...)."""

    def contract_at(self, contract_name: str, address: str) -> DeployedContract:
        return DeployedContract(name=contract_name, address=Address(address), connection=self)

    async def close(self) -> None:
        """Release transport resources."""


def _revert_reason(error: ContractLogicError) -> str:
    message = getattr(error, "message", None) or str(error)
    return message.removeprefix("execution reverted: ")


class Web3ChainConnection(ChainConnection):
    """
    Live connection over web3.py ``AsyncWeb3``.

    Senders are accounts unlocked on the node (Hardhat / Anvil dev accounts).
    Contract ABIs and bytecode come from the artifact store.
    """

    label = "live"

    def __init__(self, rpc_url: str, artifacts: ArtifactStore):
        self._rpc_url = rpc_url
        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._artifacts = artifacts
        logger.info(f"Initialized web3 connection to {rpc_url}")

    @property
    def w3(self) -> AsyncWeb3:
        return self._w3

    def _contract(self, handle: DeployedContract):
        abi = self._artifacts.load(handle.name).abi
        return self._w3.eth.contract(address=handle.address, abi=abi)

    async def _guard(self, coro, method: str):
        try:
            return await coro
        except ContractLogicError:
            raise
        except (Web3Exception, OSError) as e:
            raise ChainConnectionError(f"RPC {method} failed: {e}", method=method) from e

    async def chain_id(self) -> int:
        return await self._guard(self._w3.eth.chain_id, "eth_chainId")

    async def accounts(self) -> List[Address]:
        accounts = await self._guard(self._w3.eth.accounts, "eth_accounts")
        return [Address(a) for a in accounts]

    async def get_balance(self, address: str) -> int:
        return await self._guard(self._w3.eth.get_balance(Address(address)), "eth_getBalance")

    async def get_code(self, address: str) -> bytes:
        code = await self._guard(self._w3.eth.get_code(Address(address)), "eth_getCode")
        return bytes(code)

    async def get_transaction_count(self, address: str) -> int:
        return await self._guard(
            self._w3.eth.get_transaction_count(Address(address)), "eth_getTransactionCount"
        )

    async def block_number(self) -> int:
        return await self._guard(self._w3.eth.block_number, "eth_blockNumber")

    async def gas_price(self) -> int:
        return await self._guard(self._w3.eth.gas_price, "eth_gasPrice")

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        try:
            return await self._guard(self._w3.eth.estimate_gas(tx), "eth_estimateGas")
        except ContractLogicError as e:
            raise TransactionReverted("Gas estimation reverted", reason=_revert_reason(e)) from e

    def abi_inputs(self, contract_name: str, fn: str) -> Optional[List[str]]:
        return self._artifacts.load(contract_name).function_inputs(fn)

    async def _submit(self, send, description: str) -> TxReceipt:
        try:
            tx_hash = await self._guard(send, "eth_sendTransaction")
        except ContractLogicError as e:
            reason = _revert_reason(e)
            get_harness_logger().log_transaction_failed(None, f"{description} reverted", reason)
            raise TransactionReverted(f"{description} reverted", reason=reason) from e

        receipt = await self.wait_for_receipt(Web3.to_hex(tx_hash))
        if not receipt.succeeded:
            get_harness_logger().log_transaction_failed(receipt.tx_hash, f"{description} reverted")
            raise TransactionReverted(f"{description} reverted", tx_hash=receipt.tx_hash)
        return receipt

    async def deploy(
        self,
        contract_name: str,
        signer: Address,
        args: Sequence[Any] = (),
    ) -> DeployedContract:
        artifact = self._artifacts.load(contract_name)
        factory = self._w3.eth.contract(abi=artifact.abi, bytecode=artifact.bytecode)
        receipt = await self._submit(
            factory.constructor(*args).transact({"from": signer}),
            f"{contract_name} construction",
        )
        if receipt.contract_address is None:
            raise TransactionReverted(
                f"{contract_name} construction produced no contract", tx_hash=receipt.tx_hash
            )
        return DeployedContract(contract_name, receipt.contract_address, self)

    async def transact(
        self,
        contract: DeployedContract,
        fn: str,
        args: Sequence[Any],
        sender: Address,
        value: int = 0,
        gas_price: Optional[int] = None,
    ) -> TxReceipt:
        function = getattr(self._contract(contract).functions, fn)(*args)
        tx: Dict[str, Any] = {"from": sender, "value": value}
        if gas_price is not None:
            tx["gasPrice"] = gas_price
        return await self._submit(function.transact(tx), f"{contract.name}.{fn}")

    async def call(
        self,
        contract: DeployedContract,
        fn: str,
        args: Sequence[Any],
        sender: Optional[Address] = None,
        gas: Optional[int] = None,
        gas_price: Optional[int] = None,
    ) -> Any:
        function = getattr(self._contract(contract).functions, fn)(*args)
        tx: Dict[str, Any] = {"from": sender} if sender else {}
        if gas is not None:
            tx["gas"] = gas
        if gas_price is not None:
            tx["gasPrice"] = gas_price
        try:
            return await self._guard(function.call(tx), "eth_call")
        except ContractLogicError as e:
            raise TransactionReverted(
                f"{contract.name}.{fn} call reverted", reason=_revert_reason(e)
            ) from e

    def encode_call(self, contract: DeployedContract, fn: str, args: Sequence[Any]) -> bytes:
        return to_bytes(hexstr=self._contract(contract).encode_abi(fn, args=list(args)))

    def decode_events(
        self,
        contract: DeployedContract,
        receipt: TxReceipt,
        event_name: str,
    ) -> List[EventLog]:
        if receipt.raw is None:
            return [e for e in receipt.events if e.name == event_name and e.address == contract.address]
        event = getattr(self._contract(contract).events, event_name)()
        return [
            EventLog(name=log["event"], address=Address(log["address"]), args=dict(log["args"]))
            for log in event.process_receipt(receipt.raw, errors=DISCARD)
        ]

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        try:
            raw = await self._guard(
                self._w3.eth.wait_for_transaction_receipt(tx_hash), "eth_getTransactionReceipt"
            )
        except TimeExhausted as e:
            raise ChainConnectionError(f"Transaction {tx_hash} not confirmed: {e}") from e

        contract_address = raw.get("contractAddress")
        return TxReceipt(
            tx_hash=Web3.to_hex(raw["transactionHash"]),
            status=raw["status"],
            block_number=raw["blockNumber"],
            gas_used=raw["gasUsed"],
            contract_address=Address(contract_address) if contract_address else None,
            raw=raw,
        )

    async def rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        try:
            response = await self._w3.provider.make_request(method, params or [])
        except (Web3Exception, OSError) as e:
            raise ChainConnectionError(f"RPC {method} failed: {e}", method=method) from e
        if response.get("error"):
            raise ChainConnectionError(
                f"RPC {method} returned error: {response['error']}", method=method
            )
        return response.get("result")

    async def close(self) -> None:
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
