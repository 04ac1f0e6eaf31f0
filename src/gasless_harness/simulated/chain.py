"""
In-process simulated chain.

Deterministic stand-in for a Hardhat node: pre-funded accounts, native
balances, gas charged to the sender of every transaction, automine, and
``evm_snapshot`` / ``evm_revert`` with Hardhat semantics. A failed
transaction leaves no trace except the sender's gas fee and nonce.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_utils import keccak, to_bytes, to_canonical_address, to_checksum_address, to_hex

from ..connection import ChainConnection, DeployedContract, EventLog, TxReceipt
from ..exceptions import ArtifactNotFoundError, ChainConnectionError, TransactionReverted
from ..types import Address
from .contracts import CONTRACT_TYPES, INTERFACE_ALIASES, contract_type
from .vm import AbiFunction, Execution, Revert, WorldState, encode_arguments, intrinsic_gas

logger = logging.getLogger(__name__)

HARDHAT_CHAIN_ID = 31337
DEFAULT_ACCOUNT_COUNT = 10
DEFAULT_ACCOUNT_BALANCE = 10_000 * 10**18
DEFAULT_GAS_PRICE = 10**9

SIMULATED_CODE = bytes.fromhex("6080604052")


def derive_address(label: str) -> Address:
    """Deterministic address for a named simulated identity."""
    return Address(to_checksum_address(keccak(text=label)[12:]))


class SimulatedChain(ChainConnection):
    """Chain connection backed by an in-memory world state."""

    label = "simulated"

    def __init__(
        self,
        chain_id: int = HARDHAT_CHAIN_ID,
        account_count: int = DEFAULT_ACCOUNT_COUNT,
        account_balance: int = DEFAULT_ACCOUNT_BALANCE,
        gas_price: int = DEFAULT_GAS_PRICE,
    ):
        self._chain_id = chain_id
        self._gas_price = gas_price
        self._accounts = [derive_address(f"simulated-account-{i}") for i in range(account_count)]
        self._world = WorldState(balances={a: account_balance for a in self._accounts})
        self._snapshots: List[Tuple[str, WorldState]] = []
        self._snapshot_counter = 0
        self._lock = asyncio.Lock()
        logger.info(f"Initialized simulated chain {chain_id} with {account_count} accounts")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def chain_id(self) -> int:
        return self._chain_id

    async def accounts(self) -> List[Address]:
        return list(self._accounts)

    async def get_balance(self, address: str) -> int:
        return self._world.balances.get(Address(address), 0)

    async def get_code(self, address: str) -> bytes:
        return SIMULATED_CODE if Address(address) in self._world.contracts else b""

    async def get_transaction_count(self, address: str) -> int:
        return self._world.nonces.get(Address(address), 0)

    async def block_number(self) -> int:
        return self._world.block_number

    async def gas_price(self) -> int:
        return self._gas_price

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        sender = Address(tx["from"])
        data = _as_bytes(tx.get("data", b""))
        scratch = copy.deepcopy(self._world)
        execution = Execution(scratch, self._chain_id, scratch.block_number + 1)
        execution.meter.consume(intrinsic_gas(data))
        try:
            execution.message(sender, Address(tx["to"]), int(tx.get("value", 0)), data)
        except Revert as e:
            raise TransactionReverted("Gas estimation reverted", reason=e.reason) from e
        return execution.meter.used

    async def call(
        self,
        contract: DeployedContract,
        fn: str,
        args: Sequence[Any],
        sender: Optional[Address] = None,
        gas: Optional[int] = None,
        gas_price: Optional[int] = None,
    ) -> Any:
        abi = self._function(contract, fn)
        if contract.address not in self._world.contracts:
            raise ChainConnectionError(
                f"Call to {contract.name}.{fn} at {contract.address} returned no data",
                method="eth_call",
            )
        data = abi.encode_input(encode_arguments(abi.inputs, args))
        scratch = copy.deepcopy(self._world)
        execution = Execution(
            scratch, self._chain_id, scratch.block_number, gas_limit=gas, gas_price=gas_price or 0
        )
        caller = Address(sender) if sender else self._accounts[0]
        try:
            output = execution.message(caller, contract.address, 0, data)
        except Revert as e:
            raise TransactionReverted(f"{contract.name}.{fn} call reverted", reason=e.reason) from e
        return abi.decode_output(output)

    # -------------------------------------------------------------------------
    # ABI
    # -------------------------------------------------------------------------

    def _type_for(self, contract: DeployedContract) -> type:
        instance = self._world.contracts.get(contract.address)
        return type(instance) if instance is not None else contract_type(contract.name)

    def _function(self, contract: DeployedContract, fn: str) -> AbiFunction:
        entry = self._type_for(contract).functions.get(fn)
        if entry is None:
            raise ValueError(f"{contract.name} has no function {fn}")
        return entry[0]

    def abi_inputs(self, contract_name: str, fn: str) -> Optional[List[str]]:
        cls = contract_type(contract_name)
        if fn == "constructor":
            return list(cls.constructor_inputs)
        entry = cls.functions.get(fn)
        return list(entry[0].inputs) if entry else None

    def encode_call(self, contract: DeployedContract, fn: str, args: Sequence[Any]) -> bytes:
        abi = self._function(contract, fn)
        return abi.encode_input(encode_arguments(abi.inputs, args))

    def decode_events(
        self,
        contract: DeployedContract,
        receipt: TxReceipt,
        event_name: str,
    ) -> List[EventLog]:
        return [e for e in receipt.events if e.name == event_name and e.address == contract.address]

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def deploy(
        self,
        contract_name: str,
        signer: Address,
        args: Sequence[Any] = (),
    ) -> DeployedContract:
        cls = CONTRACT_TYPES.get(contract_name)
        if cls is None:
            if contract_name in INTERFACE_ALIASES:
                raise ValueError(f"{contract_name} is an interface and cannot be deployed")
            raise ArtifactNotFoundError(contract_name, "<simulated>")
        values = encode_arguments(cls.constructor_inputs, args)
        async with self._lock:
            receipt = self._apply(Address(signer), None, 0, b"", create=(cls, values))
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
        data = self.encode_call(contract, fn, args)
        async with self._lock:
            return self._apply(Address(sender), contract.address, value, data, gas_price=gas_price)

    def _apply(
        self,
        sender: Address,
        to: Optional[Address],
        value: int,
        data: bytes,
        create: Optional[Tuple[type, List[Any]]] = None,
        gas_price: Optional[int] = None,
    ) -> TxReceipt:
        world = self._world
        gas_price = self._gas_price if gas_price is None else gas_price
        nonce = world.nonces.get(sender, 0)
        sender_key = to_canonical_address(sender) + nonce.to_bytes(32, "big")
        tx_hash = to_hex(keccak(sender_key + data + (to_canonical_address(to) if to else b"")))

        scratch = copy.deepcopy(world)
        scratch.block_number += 1
        execution = Execution(scratch, self._chain_id, scratch.block_number, gas_price=gas_price)
        contract_address = None
        reason = None
        try:
            execution.meter.consume(intrinsic_gas(data))
            if create is not None:
                contract_cls, args = create
                contract_address = Address(
                    to_checksum_address(keccak(sender_key)[12:])
                )
                execution.transfer(sender, contract_address, value)
                execution.create(contract_cls, sender, contract_address, args)
            else:
                execution.message(sender, to, value, data)
            status = 1
        except Revert as e:
            status, reason = 0, e.reason

        gas_used = execution.meter.used
        fee = gas_used * gas_price
        balance = world.balances.get(sender, 0)
        if balance < fee + value:
            raise ChainConnectionError(
                f"Sender {sender} doesn't have enough funds to send tx: "
                f"balance {balance}, needs {fee + value}",
                method="eth_sendTransaction",
            )

        if status == 1:
            target, events = scratch, tuple(execution.events)
        else:
            target, events = world, ()
            target.block_number += 1
        target.balances[sender] = target.balances.get(sender, 0) - fee
        target.nonces[sender] = nonce + 1
        receipt = TxReceipt(
            tx_hash=tx_hash,
            status=status,
            block_number=target.block_number,
            gas_used=gas_used,
            contract_address=contract_address if status == 1 else None,
            events=events,
        )
        target.receipts[tx_hash] = receipt
        self._world = target

        if status == 0:
            logger.debug(f"Transaction {tx_hash} from {sender} reverted: {reason}")
            raise TransactionReverted("Transaction reverted", reason=reason, tx_hash=tx_hash)
        logger.debug(f"Transaction {tx_hash} mined in block {target.block_number} gas_used={gas_used}")
        return receipt

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        receipt = self._world.receipts.get(tx_hash)
        if receipt is None:
            raise ChainConnectionError(
                f"Transaction {tx_hash} not found", method="eth_getTransactionReceipt"
            )
        return receipt

    # -------------------------------------------------------------------------
    # JSON-RPC extensions
    # -------------------------------------------------------------------------

    async def rpc(self, method: str, params: Optional[List[Any]] = None) -> Any:
        params = params or []
        async with self._lock:
            if method == "evm_snapshot":
                return self._snapshot()
            if method == "evm_revert":
                return self._revert(str(params[0]))
            if method == "evm_mine":
                self._world.block_number += 1
                return "0x0"
            if method == "hardhat_setBalance":
                address, amount = params
                self._world.balances[Address(address)] = int(amount, 16) if isinstance(amount, str) else int(amount)
                return True
            if method == "eth_chainId":
                return hex(self._chain_id)
            if method == "eth_blockNumber":
                return hex(self._world.block_number)
        raise ChainConnectionError(f"Method {method} is not supported", method=method)

    def _snapshot(self) -> str:
        self._snapshot_counter += 1
        snapshot_id = hex(self._snapshot_counter)
        self._snapshots.append((snapshot_id, copy.deepcopy(self._world)))
        logger.debug(f"Snapshot {snapshot_id} at block {self._world.block_number}")
        return snapshot_id

    def _revert(self, snapshot_id: str) -> bool:
        for index, (known_id, state) in enumerate(self._snapshots):
            if known_id == snapshot_id.lower():
                self._world = state
                # reverting consumes this snapshot and every later one
                del self._snapshots[index:]
                logger.debug(f"Reverted to snapshot {snapshot_id}")
                return True
        return False


def _as_bytes(data: Any) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    return to_bytes(hexstr=data) if data else b""
