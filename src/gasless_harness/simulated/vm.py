"""
Execution model for the simulated chain.

Contracts are Python objects whose external functions are declared with
``@external("name(type,...)")``. Calls between them go through real ABI
encoding, so a relayed call travels as calldata exactly as it would on a
node: hub -> forwarder -> recipient, with the EIP-2771 sender suffix.
"""
from __future__ import annotations

import copy
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import keccak, to_checksum_address

from ..connection import EventLog, TxReceipt
from ..types import ZERO_ADDRESS, Address, split_tuple_type

TX_BASE_GAS = 21_000
CALLDATA_BYTE_GAS = 16
CALL_GAS = 2_600

ERROR_SELECTOR = bytes.fromhex("08c379a0")


class Revert(Exception):
    """Contract-level revert; unwinds state to the nearest checkpoint."""

    def __init__(self, reason: str = ""):
        super().__init__(reason)
        self.reason = reason

    def encoded(self) -> bytes:
        return ERROR_SELECTOR + encode(["string"], [self.reason])


class OutOfGas(Revert):
    def __init__(self) -> None:
        super().__init__("out of gas")


def require(condition: Any, reason: str) -> None:
    if not condition:
        raise Revert(reason)


def intrinsic_gas(data: bytes) -> int:
    return TX_BASE_GAS + CALLDATA_BYTE_GAS * len(data)


def normalize(abi_type: str, value: Any) -> Any:
    """Decoded ABI value -> harness value (checksummed addresses, tuples)."""
    if abi_type.endswith("[]"):
        return [normalize(abi_type[:-2], v) for v in value]
    if abi_type.startswith("("):
        return tuple(normalize(t, v) for t, v in zip(split_tuple_type(abi_type), value))
    if abi_type == "address":
        return Address(to_checksum_address(value))
    return value


@dataclass(frozen=True)
class AbiFunction:
    name: str
    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...] = ()
    payable: bool = False
    view: bool = False

    @classmethod
    def parse(
        cls,
        signature: str,
        outputs: Sequence[str] = (),
        payable: bool = False,
        view: bool = False,
    ) -> "AbiFunction":
        name, _, rest = signature.partition("(")
        inputs = split_tuple_type("(" + rest)
        return cls(name, tuple(inputs), tuple(outputs), payable, view)

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return keccak(text=self.signature)[:4]

    def encode_input(self, args: Sequence[Any]) -> bytes:
        return self.selector + encode(list(self.inputs), list(args))

    def decode_input(self, data: bytes) -> List[Any]:
        values = decode(list(self.inputs), data)
        return [normalize(t, v) for t, v in zip(self.inputs, values)]

    def encode_output(self, result: Any) -> bytes:
        if not self.outputs:
            return b""
        values = [result] if len(self.outputs) == 1 else list(result)
        return encode(list(self.outputs), values)

    def decode_output(self, data: bytes) -> Any:
        if not self.outputs:
            return None
        values = [normalize(t, v) for t, v in zip(self.outputs, decode(list(self.outputs), data))]
        return values[0] if len(values) == 1 else tuple(values)


def external(
    signature: str,
    returns: Sequence[str] = (),
    payable: bool = False,
    view: bool = False,
):
    """Expose a method as an ABI function of a simulated contract."""
    abi = AbiFunction.parse(signature, returns, payable, view)

    def decorator(method):
        method.__abi__ = abi
        return method

    return decorator


class SimContract:
    """Base class for simulated contracts. Instance attributes are storage."""

    contract_name: ClassVar[str] = ""
    constructor_inputs: ClassVar[Tuple[str, ...]] = ()
    deploy_gas: ClassVar[int] = 500_000
    functions: ClassVar[Dict[str, Tuple[AbiFunction, str]]] = {}
    selectors: ClassVar[Dict[bytes, Tuple[AbiFunction, str]]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        functions: Dict[str, Tuple[AbiFunction, str]] = {}
        for klass in reversed(cls.__mro__):
            for attr, member in vars(klass).items():
                abi = getattr(member, "__abi__", None)
                if abi is not None:
                    functions[abi.name] = (abi, attr)
        cls.functions = functions
        cls.selectors = {abi.selector: (abi, attr) for abi, attr in functions.values()}

    def __init__(self, address: Address):
        self.address = address

    def constructor(self, msg: "Message", *args: Any) -> None:
        pass


class Erc2771Recipient(SimContract):
    """Trusts one forwarder to append the real sender to calldata."""

    trusted_forwarder: Address

    def unwrap(self, sender: Address, data: bytes) -> Tuple[Address, bytes]:
        forwarder = getattr(self, "trusted_forwarder", None)
        if forwarder is not None and sender == forwarder and len(data) >= 24:
            return Address(to_checksum_address(data[-20:])), data[:-20]
        return sender, data

    @external("isTrustedForwarder(address)", returns=("bool",), view=True)
    def is_trusted_forwarder(self, msg: "Message", forwarder: Address) -> bool:
        return forwarder == getattr(self, "trusted_forwarder", None)

    @external("trustedForwarder()", returns=("address",), view=True)
    def get_trusted_forwarder(self, msg: "Message") -> Address:
        return getattr(self, "trusted_forwarder", ZERO_ADDRESS)


@dataclass
class WorldState:
    """Everything a snapshot captures."""
    balances: Dict[Address, int] = field(default_factory=dict)
    nonces: Dict[Address, int] = field(default_factory=dict)
    contracts: Dict[Address, SimContract] = field(default_factory=dict)
    receipts: Dict[str, TxReceipt] = field(default_factory=dict)
    block_number: int = 0


class GasMeter:
    def __init__(self, limit: Optional[int] = None):
        self.used = 0
        self._limits: List[int] = [limit] if limit is not None else []

    def consume(self, amount: int) -> None:
        self.used += amount
        if any(self.used > limit for limit in self._limits):
            raise OutOfGas()

    @contextmanager
    def limit(self, gas: Optional[int]) -> Iterator[None]:
        if gas is None:
            yield
            return
        self._limits.append(self.used + gas)
        try:
            yield
        finally:
            self._limits.pop()


@dataclass
class Message:
    """What a contract function sees: ``msg.sender``, ``msg.value``, ``this``."""
    execution: "Execution"
    this: Address
    sender: Address
    value: int = 0

    @property
    def block_number(self) -> int:
        return self.execution.block_number

    @property
    def chain_id(self) -> int:
        return self.execution.chain_id

    @property
    def gas_price(self) -> int:
        """``tx.gasprice``"""
        return self.execution.gas_price

    @property
    def gas_used(self) -> int:
        return self.execution.meter.used

    def use_gas(self, amount: int) -> None:
        self.execution.meter.consume(amount)

    def has_code(self, address: str) -> bool:
        return Address(address) in self.execution.world.contracts

    def emit(self, event: str, **args: Any) -> None:
        self.execution.events.append(EventLog(name=event, address=self.this, args=args))

    def transfer(self, to: Address, amount: int) -> None:
        self.execution.transfer(self.this, to, amount)

    def _abi(self, target: Address, fn: str) -> AbiFunction:
        contract = self.execution.world.contracts.get(Address(target))
        require(contract is not None, f"call to non-contract {target}")
        entry = contract.functions.get(fn)
        require(entry is not None, f"{contract.contract_name} has no function {fn}")
        return entry[0]

    def call(self, target: Address, fn: str, *args: Any, gas: Optional[int] = None) -> Any:
        abi = self._abi(target, fn)
        output = self.execution.message(self.this, Address(target), 0, abi.encode_input(args), gas)
        return abi.decode_output(output)

    def try_call(
        self,
        target: Address,
        fn: str,
        *args: Any,
        gas: Optional[int] = None,
    ) -> Tuple[bool, Any]:
        """Returns ``(True, decoded output)`` or ``(False, revert data)``."""
        abi = self._abi(target, fn)
        ok, output = self.execution.try_message(
            self.this, Address(target), 0, abi.encode_input(args), gas
        )
        return (True, abi.decode_output(output)) if ok else (False, output)

    def try_call_raw(
        self,
        target: Address,
        data: bytes,
        gas: Optional[int] = None,
        value: int = 0,
    ) -> Tuple[bool, bytes]:
        return self.execution.try_message(self.this, Address(target), value, data, gas)


class Execution:
    """One transaction (or eth_call) executing against a world state."""

    def __init__(
        self,
        world: WorldState,
        chain_id: int,
        block_number: int,
        gas_limit: Optional[int] = None,
        gas_price: int = 0,
    ):
        self.world = world
        self.chain_id = chain_id
        self.block_number = block_number
        self.gas_price = gas_price
        self.meter = GasMeter(gas_limit)
        self.events: List[EventLog] = []

    def transfer(self, sender: Address, to: Address, amount: int) -> None:
        if amount == 0:
            return
        balance = self.world.balances.get(sender, 0)
        require(balance >= amount, "insufficient balance for transfer")
        self.world.balances[sender] = balance - amount
        self.world.balances[to] = self.world.balances.get(to, 0) + amount

    def create(
        self,
        contract_type: type,
        sender: Address,
        address: Address,
        args: Sequence[Any],
    ) -> SimContract:
        self.meter.consume(contract_type.deploy_gas)
        instance = contract_type(address)
        self.world.contracts[address] = instance
        instance.constructor(Message(self, address, sender), *args)
        return instance

    def message(
        self,
        sender: Address,
        to: Address,
        value: int,
        data: bytes,
        gas: Optional[int] = None,
    ) -> bytes:
        self.meter.consume(CALL_GAS)
        self.transfer(sender, to, value)
        contract = self.world.contracts.get(to)
        if contract is None:
            return b""

        if isinstance(contract, Erc2771Recipient):
            sender, data = contract.unwrap(sender, data)

        entry = contract.selectors.get(data[:4])
        require(entry is not None, f"{contract.contract_name}: function selector not recognized")
        abi, attr = entry
        require(value == 0 or abi.payable, f"{contract.contract_name}.{abi.name} is not payable")
        try:
            args = abi.decode_input(data[4:])
        except DecodingError as e:
            raise Revert(f"{contract.contract_name}.{abi.name}: invalid calldata ({e})") from e

        with self.meter.limit(gas):
            result = getattr(contract, attr)(Message(self, to, sender, value), *args)
        return abi.encode_output(result)

    def try_message(
        self,
        sender: Address,
        to: Address,
        value: int,
        data: bytes,
        gas: Optional[int] = None,
    ) -> Tuple[bool, bytes]:
        checkpoint = self._checkpoint()
        try:
            return True, self.message(sender, to, value, data, gas)
        except Revert as e:
            self._restore(checkpoint)
            return False, e.encoded()

    def _checkpoint(self):
        storage = {a: copy.deepcopy(c.__dict__) for a, c in self.world.contracts.items()}
        return copy.deepcopy(self.world.balances), storage, len(self.events)

    def _restore(self, checkpoint) -> None:
        balances, storage, mark = checkpoint
        self.world.balances.clear()
        self.world.balances.update(balances)
        for address in list(self.world.contracts):
            if address not in storage:
                del self.world.contracts[address]
                continue
            contract = self.world.contracts[address]
            contract.__dict__.clear()
            contract.__dict__.update(storage[address])
        del self.events[mark:]


def encode_arguments(abi_types: Sequence[str], args: Sequence[Any]) -> List[Any]:
    """Encode then decode, so values reach contracts exactly as a node would pass them."""
    try:
        raw = encode(list(abi_types), list(args))
    except EncodingError as e:
        raise ValueError(f"Arguments do not match ({','.join(abi_types)}): {e}") from e
    return [normalize(t, v) for t, v in zip(abi_types, decode(list(abi_types), raw))]
