"""Solidity-shaped value types shared by deployers, orchestrator and relay.

Python ints are arbitrary precision, so 256-bit magnitudes need no special
arithmetic; the width-tagged subclasses only guard the range.
"""
from __future__ import annotations

import re
from dataclasses import astuple, dataclass, fields, replace as dc_replace
from typing import Any, ClassVar, Sequence, Tuple

from eth_utils import is_address, to_checksum_address


class Address(str):
    """EIP-55 checksummed account or contract address."""

    def __new__(cls, value: str) -> "Address":
        if isinstance(value, Address):
            return value
        if not isinstance(value, str) or not is_address(value):
            raise ValueError(f"Invalid address: {value!r}")
        return super().__new__(cls, to_checksum_address(value))

    @property
    def is_zero(self) -> bool:
        return int(self, 16) == 0


ZERO_ADDRESS = Address("0x0000000000000000000000000000000000000000")


class UInt(int):
    """Unsigned integer with a declared bit width."""

    bits: ClassVar[int] = 256

    def __new__(cls, value: int) -> "UInt":
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"{cls.__name__} requires an int, got {type(value).__name__}")
        if isinstance(value, UInt) and value.bits != cls.bits:
            raise TypeError(f"Cannot use uint{value.bits} as {cls.__name__}")
        if value < 0 or value >= 1 << cls.bits:
            raise ValueError(f"{value} out of range for {cls.__name__}")
        return super().__new__(cls, value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({int(self)})"


class Uint8(UInt):
    bits = 8


class Uint16(UInt):
    bits = 16


class Uint256(UInt):
    bits = 256


_UINT_RE = re.compile(r"^uint(\d*)$")


def check_abi_value(abi_type: str, value: Any) -> None:
    """Validate ``value`` against a Solidity ABI type without coercing it.

    Raises:
        TypeError: Wrong Python type, or a width-tagged int of another width
        ValueError: Value out of range or malformed
    """
    if abi_type.endswith("[]"):
        if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
            raise TypeError(f"{abi_type} expects a sequence, got {type(value).__name__}")
        for item in value:
            check_abi_value(abi_type[:-2], item)
        return

    if abi_type.startswith("(") and abi_type.endswith(")"):
        members = split_tuple_type(abi_type)
        if not isinstance(value, (tuple, list)) or len(value) != len(members):
            raise TypeError(f"{abi_type} expects {len(members)} values")
        for member, item in zip(members, value):
            check_abi_value(member, item)
        return

    if abi_type == "address":
        if not isinstance(value, str) or not is_address(value):
            raise ValueError(f"Invalid address: {value!r}")
        return

    if abi_type == "string":
        if not isinstance(value, str):
            raise TypeError(f"string expects str, got {type(value).__name__}")
        return

    if abi_type == "bool":
        if not isinstance(value, bool):
            raise TypeError(f"bool expects bool, got {type(value).__name__}")
        return

    if abi_type == "bytes32":
        if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
            raise ValueError("bytes32 expects exactly 32 bytes")
        return

    if abi_type == "bytes":
        if not isinstance(value, (bytes, bytearray, str)):
            raise TypeError(f"bytes expects bytes or hex str, got {type(value).__name__}")
        return

    match = _UINT_RE.match(abi_type)
    if match:
        bits = int(match.group(1) or 256)
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"{abi_type} expects int, got {type(value).__name__}")
        if isinstance(value, UInt) and value.bits != bits:
            raise TypeError(f"{abi_type} cannot take uint{value.bits} value {int(value)}")
        if value < 0 or value >= 1 << bits:
            raise ValueError(f"{value} out of range for {abi_type}")
        return

    raise ValueError(f"Unsupported ABI type: {abi_type}")


def split_tuple_type(abi_type: str) -> list[str]:
    """Split ``(a,(b,c),d[])`` into its top-level member types."""
    inner = abi_type[1:-1]
    members: list[str] = []
    depth = 0
    current = ""
    for char in inner:
        if char == "," and depth == 0:
            members.append(current)
            current = ""
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        current += char
    if current:
        members.append(current)
    return members


@dataclass(frozen=True)
class PaymasterLimits:
    """Economic limits handed to ``MyPaymaster.initialize``.

    Field order is the contract's positional order; ``as_tuple()`` is the
    only way the limits leave this record.
    """

    max_pct_relay_fee: Uint256 = Uint256(0)
    max_base_relay_fee: Uint256 = Uint256(0)
    acceptance_budget_overhead: Uint256 = Uint256(50_000)
    relayed_call_overhead: Uint256 = Uint256(0)
    pre_relayed_call_gas_limit: Uint256 = Uint256(70_000)
    post_relayed_call_gas_used: Uint256 = Uint256(12_000)
    calldata_size_limit: Uint256 = Uint256(10_500)
    gas_limit_epsilon: Uint256 = Uint256(0)

    def __post_init__(self) -> None:
        for f in fields(self):
            object.__setattr__(self, f.name, Uint256(getattr(self, f.name)))

    def as_tuple(self) -> Tuple[int, ...]:
        return tuple(int(v) for v in astuple(self))

    @classmethod
    def from_tuple(cls, values: Sequence[int]) -> "PaymasterLimits":
        names = [f.name for f in fields(cls)]
        if len(values) != len(names):
            raise ValueError(f"PaymasterLimits needs {len(names)} values, got {len(values)}")
        return cls(**dict(zip(names, values)))

    def replace(self, **changes: int) -> "PaymasterLimits":
        return dc_replace(self, **changes)


PAYMASTER_LIMITS_ABI = "(" + ",".join(["uint256"] * len(fields(PaymasterLimits))) + ")"
