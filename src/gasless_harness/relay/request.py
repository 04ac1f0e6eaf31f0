"""
GSN v2 relay request model and its EIP-712 signature.

The user signs a RelayRequest off-chain; the relay worker submits it to
the RelayHub, which asks the paymaster to accept it and forwards the
inner call through the trusted forwarder.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from eth_utils import to_bytes, to_hex

from ..types import Address

EIP712_DOMAIN_NAME = "GSN Relayed Transaction"
EIP712_DOMAIN_VERSION = "2"

FORWARD_REQUEST_ABI = "(address,address,uint256,uint256,uint256,bytes,uint256)"
RELAY_DATA_ABI = "(uint256,uint256,uint256,address,address,address,bytes,uint256)"
RELAY_REQUEST_ABI = f"({FORWARD_REQUEST_ABI},{RELAY_DATA_ABI})"

RELAY_REQUEST_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "RelayRequest": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "gas", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "data", "type": "bytes"},
        {"name": "validUntil", "type": "uint256"},
        {"name": "relayData", "type": "RelayData"},
    ],
    "RelayData": [
        {"name": "gasPrice", "type": "uint256"},
        {"name": "pctRelayFee", "type": "uint256"},
        {"name": "baseRelayFee", "type": "uint256"},
        {"name": "relayWorker", "type": "address"},
        {"name": "paymaster", "type": "address"},
        {"name": "forwarder", "type": "address"},
        {"name": "paymasterData", "type": "bytes"},
        {"name": "clientId", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class ForwardRequest:
    """The user's intended call."""
    from_address: Address
    to: Address
    value: int
    gas: int
    nonce: int
    data: bytes
    valid_until: int

    def to_abi_tuple(self) -> Tuple[Any, ...]:
        return (
            self.from_address, self.to, self.value, self.gas,
            self.nonce, self.data, self.valid_until,
        )


@dataclass(frozen=True)
class RelayData:
    """Who relays, at what price, and who pays."""
    gas_price: int
    pct_relay_fee: int
    base_relay_fee: int
    relay_worker: Address
    paymaster: Address
    forwarder: Address
    paymaster_data: bytes = b""
    client_id: int = 1

    def to_abi_tuple(self) -> Tuple[Any, ...]:
        return (
            self.gas_price, self.pct_relay_fee, self.base_relay_fee, self.relay_worker,
            self.paymaster, self.forwarder, self.paymaster_data, self.client_id,
        )


@dataclass(frozen=True)
class RelayRequest:
    request: ForwardRequest
    relay_data: RelayData

    def to_abi_tuple(self) -> Tuple[Any, ...]:
        return (self.request.to_abi_tuple(), self.relay_data.to_abi_tuple())

    @classmethod
    def from_abi_tuple(cls, value: Tuple[Any, ...]) -> "RelayRequest":
        req, data = value
        return cls(
            request=ForwardRequest(
                from_address=Address(req[0]),
                to=Address(req[1]),
                value=int(req[2]),
                gas=int(req[3]),
                nonce=int(req[4]),
                data=bytes(req[5]),
                valid_until=int(req[6]),
            ),
            relay_data=RelayData(
                gas_price=int(data[0]),
                pct_relay_fee=int(data[1]),
                base_relay_fee=int(data[2]),
                relay_worker=Address(data[3]),
                paymaster=Address(data[4]),
                forwarder=Address(data[5]),
                paymaster_data=bytes(data[6]),
                client_id=int(data[7]),
            ),
        )

    def to_json(self) -> Dict[str, Any]:
        """Relay server wire format: numbers as decimal strings, bytes as hex."""
        r, d = self.request, self.relay_data
        return {
            "request": {
                "from": r.from_address,
                "to": r.to,
                "value": str(r.value),
                "gas": str(r.gas),
                "nonce": str(r.nonce),
                "data": to_hex(r.data),
                "validUntil": str(r.valid_until),
            },
            "relayData": {
                "gasPrice": str(d.gas_price),
                "pctRelayFee": str(d.pct_relay_fee),
                "baseRelayFee": str(d.base_relay_fee),
                "relayWorker": d.relay_worker,
                "paymaster": d.paymaster,
                "forwarder": d.forwarder,
                "paymasterData": to_hex(d.paymaster_data),
                "clientId": str(d.client_id),
            },
        }

    def typed_data(self, chain_id: int) -> Dict[str, Any]:
        r, d = self.request, self.relay_data
        return {
            "types": RELAY_REQUEST_TYPES,
            "primaryType": "RelayRequest",
            "domain": {
                "name": EIP712_DOMAIN_NAME,
                "version": EIP712_DOMAIN_VERSION,
                "chainId": chain_id,
                "verifyingContract": d.forwarder,
            },
            "message": {
                "from": r.from_address,
                "to": r.to,
                "value": r.value,
                "gas": r.gas,
                "nonce": r.nonce,
                "data": r.data,
                "validUntil": r.valid_until,
                "relayData": {
                    "gasPrice": d.gas_price,
                    "pctRelayFee": d.pct_relay_fee,
                    "baseRelayFee": d.base_relay_fee,
                    "relayWorker": d.relay_worker,
                    "paymaster": d.paymaster,
                    "forwarder": d.forwarder,
                    "paymasterData": d.paymaster_data,
                    "clientId": d.client_id,
                },
            },
        }

    def sign(self, account: LocalAccount, chain_id: int) -> bytes:
        """Sign with the user's key; must match ``request.from_address``."""
        if Address(account.address) != self.request.from_address:
            raise ValueError(
                f"Signer {account.address} is not request sender {self.request.from_address}"
            )
        signable = encode_typed_data(full_message=self.typed_data(chain_id))
        signed = account.sign_message(signable)
        return to_bytes(signed.signature)

    def recover_signer(self, signature: bytes, chain_id: int) -> Address:
        signable = encode_typed_data(full_message=self.typed_data(chain_id))
        return Address(Account.recover_message(signable, signature=signature))
