"""
Simulated contracts: the GSN v2 infrastructure and the sponsored contracts.

These model observable behaviour only (roles, balances, deposits, the
paymaster acceptance policy, relay hub accounting). They are stand-ins for
the compiled contracts used against a live node.
"""
from __future__ import annotations

from typing import Dict, List, Tuple, Type

from eth_abi import decode, encode
from eth_utils import keccak, to_canonical_address

from ..exceptions import ArtifactNotFoundError
from ..relay.request import RELAY_DATA_ABI, RELAY_REQUEST_ABI, RelayRequest
from ..types import PAYMASTER_LIMITS_ABI, ZERO_ADDRESS, Address, PaymasterLimits
from .vm import Erc2771Recipient, Message, Revert, SimContract, external, require

DEFAULT_ADMIN_ROLE = b"\x00" * 32
MINTER_ROLE = keccak(text="MINTER_ROLE")
PAYMASTER_ROLE = keccak(text="PAYMASTER_ROLE")

# RelayHub.relayCall outcome codes, as in GSN's RelayCallStatus
STATUS_OK = 0
STATUS_RELAYED_CALL_FAILED = 1
STATUS_REJECTED_BY_PRE_RELAYED = 2
STATUS_REJECTED_BY_FORWARDER = 3
STATUS_REJECTED_BY_RECIPIENT_REVERT = 4
STATUS_POST_RELAYED_FAILED = 5

PAYMASTER_PRE_RELAYED_CALL_GAS = 10_000


def required_relayed_call_overhead(calldata_size: int) -> int:
    """Overhead the hub spends around an inner call of ``calldata_size`` bytes."""
    return 21_000 + 16 * calldata_size + 80_000


# =============================================================================
# GSN infrastructure
# =============================================================================

class StakeManager(SimContract):
    contract_name = "StakeManager"

    def __init__(self, address: Address):
        super().__init__(address)
        self.stakes: Dict[Address, Tuple[int, int, Address]] = {}

    @external("stakeForRelayManager(address,uint256)", payable=True)
    def stake_for_relay_manager(self, msg: Message, relay_manager: Address, unstake_delay: int) -> None:
        stake, _, owner = self.stakes.get(relay_manager, (0, 0, msg.sender))
        require(owner == msg.sender, "not owner")
        self.stakes[relay_manager] = (stake + msg.value, unstake_delay, owner)
        msg.emit(
            "StakeAdded",
            relayManager=relay_manager,
            owner=owner,
            stake=stake + msg.value,
            unstakeDelay=unstake_delay,
        )

    @external("getStakeInfo(address)", returns=("uint256", "uint256", "address"), view=True)
    def get_stake_info(self, msg: Message, relay_manager: Address) -> Tuple[int, int, Address]:
        return self.stakes.get(relay_manager, (0, 0, ZERO_ADDRESS))

    @external("versionSM()", returns=("string",), view=True)
    def version(self, msg: Message) -> str:
        return "2.2.0+opengsn.stakemanager.istakemanager"


class Penalizer(SimContract):
    contract_name = "Penalizer"

    @external("versionPenalizer()", returns=("string",), view=True)
    def version(self, msg: Message) -> str:
        return "2.2.0+opengsn.penalizer.ipenalizer"


class VersionRegistry(SimContract):
    contract_name = "VersionRegistry"

    def constructor(self, msg: Message) -> None:
        self.owner = msg.sender
        self.versions: Dict[bytes, Tuple[bytes, str]] = {}

    @external("addVersion(bytes32,bytes32,string)")
    def add_version(self, msg: Message, version_id: bytes, version: bytes, value: str) -> None:
        require(msg.sender == self.owner, "caller is not the owner")
        self.versions[version_id] = (version, value)
        msg.emit("VersionAdded", id=version_id, version=version, value=value)

    @external("getVersion(bytes32)", returns=("bytes32", "string"), view=True)
    def get_version(self, msg: Message, version_id: bytes) -> Tuple[bytes, str]:
        require(version_id in self.versions, "no version")
        return self.versions[version_id]


class Forwarder(SimContract):
    """Verifies the user's EIP-712 signature and nonce, then forwards."""

    contract_name = "Forwarder"

    def __init__(self, address: Address):
        super().__init__(address)
        self.nonces: Dict[Address, int] = {}

    @external("getNonce(address)", returns=("uint256",), view=True)
    def get_nonce(self, msg: Message, sender: Address) -> int:
        return self.nonces.get(sender, 0)

    def _verify(self, msg: Message, relay_request: tuple, signature: bytes) -> RelayRequest:
        request = RelayRequest.from_abi_tuple(relay_request)
        forward = request.request
        require(request.relay_data.forwarder == self.address, "FWD: wrong forwarder")
        require(forward.nonce == self.nonces.get(forward.from_address, 0), "FWD: nonce mismatch")
        require(
            forward.valid_until == 0 or forward.valid_until > msg.block_number,
            "FWD: request expired",
        )
        try:
            signer = request.recover_signer(signature, msg.chain_id)
        except (ValueError, TypeError) as e:
            raise Revert("FWD: signature mismatch") from e
        require(signer == forward.from_address, "FWD: signature mismatch")
        return request

    @external(f"verify({RELAY_REQUEST_ABI},bytes)", view=True)
    def verify(self, msg: Message, relay_request: tuple, signature: bytes) -> None:
        self._verify(msg, relay_request, signature)

    @external(f"execute({RELAY_REQUEST_ABI},bytes)", returns=("bool", "bytes"))
    def execute(self, msg: Message, relay_request: tuple, signature: bytes) -> Tuple[bool, bytes]:
        request = self._verify(msg, relay_request, signature)
        forward = request.request
        self.nonces[forward.from_address] = forward.nonce + 1
        # EIP-2771: the recipient reads the real sender from the calldata suffix
        data = forward.data + to_canonical_address(forward.from_address)
        return msg.try_call_raw(forward.to, data, gas=forward.gas, value=forward.value)


class RelayHub(SimContract):
    """Holds paymaster deposits and runs the relayed-call protocol."""

    contract_name = "RelayHub"
    constructor_inputs = ("address", "address")

    def constructor(self, msg: Message, stake_manager: Address, penalizer: Address) -> None:
        self.stake_manager = stake_manager
        self.penalizer = penalizer
        self.balances: Dict[Address, int] = {}
        self.worker_to_manager: Dict[Address, Address] = {}

    @external("versionHub()", returns=("string",), view=True)
    def version(self, msg: Message) -> str:
        return "2.2.0+opengsn.hub.irelayhub"

    @external("stakeManager()", returns=("address",), view=True)
    def get_stake_manager(self, msg: Message) -> Address:
        return self.stake_manager

    @external("penalizer()", returns=("address",), view=True)
    def get_penalizer(self, msg: Message) -> Address:
        return self.penalizer

    @external("depositFor(address)", payable=True)
    def deposit_for(self, msg: Message, target: Address) -> None:
        self.balances[target] = self.balances.get(target, 0) + msg.value
        msg.emit("Deposited", paymaster=target, **{"from": msg.sender}, amount=msg.value)

    @external("balanceOf(address)", returns=("uint256",), view=True)
    def balance_of(self, msg: Message, target: Address) -> int:
        return self.balances.get(target, 0)

    @external("withdraw(uint256,address)")
    def withdraw(self, msg: Message, amount: int, dest: Address) -> None:
        balance = self.balances.get(msg.sender, 0)
        require(balance >= amount, "insufficient funds")
        self.balances[msg.sender] = balance - amount
        msg.transfer(dest, amount)
        msg.emit("Withdrawn", account=msg.sender, dest=dest, amount=amount)

    @external("addRelayWorkers(address[])")
    def add_relay_workers(self, msg: Message, workers: List[Address]) -> None:
        stake, _, _ = msg.call(self.stake_manager, "getStakeInfo", msg.sender)
        require(stake > 0, "relay manager not staked")
        for worker in workers:
            require(worker not in self.worker_to_manager, "this worker has a manager")
            self.worker_to_manager[worker] = msg.sender
        msg.emit(
            "RelayWorkersAdded",
            relayManager=msg.sender,
            newRelayWorkers=list(workers),
            workersCount=sum(1 for m in self.worker_to_manager.values() if m == msg.sender),
        )

    @external("workerToManager(address)", returns=("address",), view=True)
    def get_worker_manager(self, msg: Message, worker: Address) -> Address:
        return self.worker_to_manager.get(worker, ZERO_ADDRESS)

    @staticmethod
    def _charge(relay_data, gas_used: int) -> int:
        return (
            relay_data.gas_price * gas_used * (100 + relay_data.pct_relay_fee) // 100
            + relay_data.base_relay_fee
        )

    @external(
        f"relayCall(uint256,{RELAY_REQUEST_ABI},bytes,bytes,uint256)",
        returns=("bool", "bytes"),
    )
    def relay_call(
        self,
        msg: Message,
        max_acceptance_budget: int,
        relay_request: tuple,
        signature: bytes,
        approval_data: bytes,
        external_gas_limit: int,
    ) -> Tuple[bool, bytes]:
        request = RelayRequest.from_abi_tuple(relay_request)
        relay_data = request.relay_data
        manager = self.worker_to_manager.get(msg.sender)
        require(manager is not None, "Unknown relay worker")
        require(relay_data.relay_worker == msg.sender, "Not a right worker")
        require(relay_data.gas_price <= msg.gas_price, "Invalid gas price")
        stake, _, _ = msg.call(self.stake_manager, "getStakeInfo", manager)
        require(stake > 0, "relay manager not staked")

        paymaster = relay_data.paymaster
        require(msg.has_code(paymaster), "Paymaster is not a contract")
        acceptance_budget, pre_gas, post_gas, _ = msg.call(paymaster, "getGasAndDataLimits")
        require(acceptance_budget <= max_acceptance_budget, "acceptance budget too high")
        require(
            self.balances.get(paymaster, 0) >= self._charge(relay_data, external_gas_limit),
            "Paymaster balance too low",
        )

        verified, output = msg.try_call(request.relay_data.forwarder, "verify", relay_request, signature)
        if not verified:
            return self._reject(msg, manager, request, output)

        accepted, output = msg.try_call(
            paymaster,
            "preRelayedCall",
            relay_request,
            signature,
            approval_data,
            external_gas_limit,
            gas=pre_gas,
        )
        if not accepted:
            return self._reject(msg, manager, request, output)
        context, reject_on_recipient_revert = output

        executed, output = msg.try_call(relay_data.forwarder, "execute", relay_request, signature)
        if not executed:
            return self._reject(msg, manager, request, output)
        success, _ = output
        status = STATUS_OK if success else STATUS_RELAYED_CALL_FAILED
        if not success and reject_on_recipient_revert:
            return self._reject(msg, manager, request, b"")

        posted, _ = msg.try_call(
            paymaster,
            "postRelayedCall",
            context,
            success,
            msg.gas_used,
            relay_request[1],
            gas=post_gas,
        )
        if not posted:
            status = STATUS_POST_RELAYED_FAILED

        charge = self._charge(relay_data, msg.gas_used)
        self.balances[paymaster] = self.balances.get(paymaster, 0) - charge
        self.balances[manager] = self.balances.get(manager, 0) + charge
        msg.emit(
            "TransactionRelayed",
            relayManager=manager,
            relayWorker=msg.sender,
            **{"from": request.request.from_address},
            to=request.request.to,
            paymaster=paymaster,
            selector=request.request.data[:4],
            status=status,
            charge=charge,
        )
        return True, b""

    def _reject(
        self,
        msg: Message,
        manager: Address,
        request: RelayRequest,
        reason: bytes,
    ) -> Tuple[bool, bytes]:
        msg.emit(
            "TransactionRejectedByPaymaster",
            relayManager=manager,
            paymaster=request.relay_data.paymaster,
            **{"from": request.request.from_address},
            to=request.request.to,
            relayWorker=msg.sender,
            selector=request.request.data[:4],
            innerGasUsed=msg.gas_used,
            reason=reason,
        )
        return False, reason


# =============================================================================
# Sponsored contracts
# =============================================================================

class MyRecipient(Erc2771Recipient):
    """Meta-transaction recipient with a deliberately gas-heavy entry point."""

    contract_name = "MyRecipient"
    constructor_inputs = ("address",)

    def constructor(self, msg: Message, forwarder: Address) -> None:
        self.trusted_forwarder = forwarder
        self.call_counts: Dict[Address, int] = {}
        self.last_sender = ZERO_ADDRESS

    @external("heavyFunc(uint256)")
    def heavy_func(self, msg: Message, iterations: int) -> None:
        msg.use_gas(5_000 + iterations * 100)
        self.call_counts[msg.sender] = self.call_counts.get(msg.sender, 0) + 1
        self.last_sender = msg.sender
        msg.emit("HeavyFuncCalled", caller=msg.sender, iterations=iterations)

    @external("callCount(address)", returns=("uint256",), view=True)
    def call_count(self, msg: Message, account: Address) -> int:
        return self.call_counts.get(account, 0)

    @external("lastSender()", returns=("address",), view=True)
    def get_last_sender(self, msg: Message) -> Address:
        return self.last_sender


class GaslessErc20Token(Erc2771Recipient):
    """Role-based ERC-20 whose paymasters may move holders' tokens for fees."""

    contract_name = "GaslessErc20Token"
    deploy_gas = 1_500_000

    def __init__(self, address: Address):
        super().__init__(address)
        self.initialized = False
        self.roles: Dict[bytes, set] = {}
        self.balances: Dict[Address, int] = {}
        self.total_supply = 0
        self.name = ""
        self.symbol = ""
        self.decimals = 18

    def _has_role(self, role: bytes, account: Address) -> bool:
        return account in self.roles.get(role, set())

    def _grant(self, msg: Message, role: bytes, account: Address) -> None:
        if not self._has_role(role, account):
            self.roles.setdefault(role, set()).add(account)
            msg.emit("RoleGranted", role=role, account=account, sender=msg.sender)

    def _move(self, sender: Address, to: Address, amount: int) -> None:
        balance = self.balances.get(sender, 0)
        require(balance >= amount, "ERC20: transfer amount exceeds balance")
        self.balances[sender] = balance - amount
        self.balances[to] = self.balances.get(to, 0) + amount

    @external("initialize(address,address[],address[],string,string,uint8,address)")
    def initialize(
        self,
        msg: Message,
        admin: Address,
        minters: List[Address],
        paymasters: List[Address],
        name: str,
        symbol: str,
        decimals: int,
        forwarder: Address,
    ) -> None:
        require(not self.initialized, "Initializable: contract is already initialized")
        self.initialized = True
        self.name, self.symbol, self.decimals = name, symbol, decimals
        self.trusted_forwarder = forwarder
        self._grant(msg, DEFAULT_ADMIN_ROLE, admin)
        for minter in minters:
            self._grant(msg, MINTER_ROLE, minter)
        for paymaster in paymasters:
            self._grant(msg, PAYMASTER_ROLE, paymaster)

    @external("DEFAULT_ADMIN_ROLE()", returns=("bytes32",), view=True)
    def default_admin_role(self, msg: Message) -> bytes:
        return DEFAULT_ADMIN_ROLE

    @external("MINTER_ROLE()", returns=("bytes32",), view=True)
    def minter_role(self, msg: Message) -> bytes:
        return MINTER_ROLE

    @external("PAYMASTER_ROLE()", returns=("bytes32",), view=True)
    def paymaster_role(self, msg: Message) -> bytes:
        return PAYMASTER_ROLE

    @external("hasRole(bytes32,address)", returns=("bool",), view=True)
    def has_role(self, msg: Message, role: bytes, account: Address) -> bool:
        return self._has_role(role, account)

    @external("grantRole(bytes32,address)")
    def grant_role(self, msg: Message, role: bytes, account: Address) -> None:
        require(
            self._has_role(DEFAULT_ADMIN_ROLE, msg.sender),
            f"AccessControl: account {msg.sender.lower()} is missing role 0x{DEFAULT_ADMIN_ROLE.hex()}",
        )
        self._grant(msg, role, account)

    @external("revokeRole(bytes32,address)")
    def revoke_role(self, msg: Message, role: bytes, account: Address) -> None:
        require(
            self._has_role(DEFAULT_ADMIN_ROLE, msg.sender),
            f"AccessControl: account {msg.sender.lower()} is missing role 0x{DEFAULT_ADMIN_ROLE.hex()}",
        )
        if self._has_role(role, account):
            self.roles[role].discard(account)
            msg.emit("RoleRevoked", role=role, account=account, sender=msg.sender)

    @external("mint(address,uint256)")
    def mint(self, msg: Message, to: Address, amount: int) -> None:
        require(
            self._has_role(MINTER_ROLE, msg.sender) or self._has_role(DEFAULT_ADMIN_ROLE, msg.sender),
            "caller is not a minter",
        )
        self.balances[to] = self.balances.get(to, 0) + amount
        self.total_supply += amount
        msg.emit("Transfer", **{"from": ZERO_ADDRESS}, to=to, value=amount)

    @external("transfer(address,uint256)", returns=("bool",))
    def transfer(self, msg: Message, to: Address, amount: int) -> bool:
        self._move(msg.sender, to, amount)
        msg.emit("Transfer", **{"from": msg.sender}, to=to, value=amount)
        return True

    @external("paymasterTransfer(address,address,uint256)")
    def paymaster_transfer(self, msg: Message, holder: Address, to: Address, amount: int) -> None:
        require(self._has_role(PAYMASTER_ROLE, msg.sender), "caller is not a paymaster")
        self._move(holder, to, amount)
        msg.emit("Transfer", **{"from": holder}, to=to, value=amount)

    @external("balanceOf(address)", returns=("uint256",), view=True)
    def balance_of(self, msg: Message, account: Address) -> int:
        return self.balances.get(account, 0)

    @external("totalSupply()", returns=("uint256",), view=True)
    def get_total_supply(self, msg: Message) -> int:
        return self.total_supply

    @external("name()", returns=("string",), view=True)
    def get_name(self, msg: Message) -> str:
        return self.name

    @external("symbol()", returns=("string",), view=True)
    def get_symbol(self, msg: Message) -> str:
        return self.symbol

    @external("decimals()", returns=("uint8",), view=True)
    def get_decimals(self, msg: Message) -> int:
        return self.decimals


class MyPaymaster(SimContract):
    """
    Sponsors calls from token holders, within its configured limits, and
    recovers the gas cost in tokens after the call.
    """

    contract_name = "MyPaymaster"
    deploy_gas = 1_200_000

    def __init__(self, address: Address):
        super().__init__(address)
        self.initialized = False

    @external(f"initialize(address,address,address,address,{PAYMASTER_LIMITS_ABI})")
    def initialize(
        self,
        msg: Message,
        admin: Address,
        relay_hub: Address,
        forwarder: Address,
        token: Address,
        limits: tuple,
    ) -> None:
        require(not self.initialized, "Initializable: contract is already initialized")
        require(msg.has_code(token), "token is not a contract")
        self.initialized = True
        self.admin = admin
        self.relay_hub = relay_hub
        self.trusted_forwarder = forwarder
        self.token = token
        self.limits = PaymasterLimits.from_tuple(limits)

    def _only_admin(self, msg: Message) -> None:
        require(self.initialized and msg.sender == self.admin, "caller is not the admin")

    @external("setRelayedCallOverhead(uint256)")
    def set_relayed_call_overhead(self, msg: Message, overhead: int) -> None:
        self._only_admin(msg)
        self.limits = self.limits.replace(relayed_call_overhead=overhead)
        msg.emit("RelayedCallOverheadChanged", overhead=overhead)

    @external("relayedCallOverhead()", returns=("uint256",), view=True)
    def relayed_call_overhead(self, msg: Message) -> int:
        return int(self.limits.relayed_call_overhead)

    @external("limits()", returns=(PAYMASTER_LIMITS_ABI,), view=True)
    def get_limits(self, msg: Message) -> Tuple[int, ...]:
        return self.limits.as_tuple()

    @external("getHubAddr()", returns=("address",), view=True)
    def get_hub_addr(self, msg: Message) -> Address:
        return self.relay_hub

    @external("trustedForwarder()", returns=("address",), view=True)
    def get_trusted_forwarder(self, msg: Message) -> Address:
        return self.trusted_forwarder

    @external("token()", returns=("address",), view=True)
    def get_token(self, msg: Message) -> Address:
        return self.token

    @external("getGasAndDataLimits()", returns=("(uint256,uint256,uint256,uint256)",), view=True)
    def get_gas_and_data_limits(self, msg: Message) -> Tuple[int, int, int, int]:
        limits = self.limits
        return (
            int(limits.acceptance_budget_overhead + limits.pre_relayed_call_gas_limit),
            int(limits.pre_relayed_call_gas_limit),
            int(limits.post_relayed_call_gas_used),
            int(limits.calldata_size_limit),
        )

    @external(
        f"preRelayedCall({RELAY_REQUEST_ABI},bytes,bytes,uint256)",
        returns=("bytes", "bool"),
    )
    def pre_relayed_call(
        self,
        msg: Message,
        relay_request: tuple,
        signature: bytes,
        approval_data: bytes,
        max_possible_gas: int,
    ) -> Tuple[bytes, bool]:
        require(msg.sender == self.relay_hub, "caller is not RelayHub")
        request = RelayRequest.from_abi_tuple(relay_request)
        relay_data, limits = request.relay_data, self.limits

        require(relay_data.forwarder == self.trusted_forwarder, "Forwarder is not trusted")
        require(relay_data.pct_relay_fee <= limits.max_pct_relay_fee, "pctRelayFee too high")
        require(relay_data.base_relay_fee <= limits.max_base_relay_fee, "baseRelayFee too high")
        require(len(request.request.data) <= limits.calldata_size_limit, "calldata too large")

        required = required_relayed_call_overhead(len(request.request.data))
        require(
            limits.relayed_call_overhead >= required,
            f"relayedCallOverhead too low: {int(limits.relayed_call_overhead)} < {required}",
        )
        require(
            msg.call(self.token, "hasRole", PAYMASTER_ROLE, self.address),
            "paymaster lacks PAYMASTER_ROLE",
        )
        require(
            msg.call(self.token, "balanceOf", request.request.from_address) > 0,
            "sender holds no tokens",
        )
        msg.use_gas(PAYMASTER_PRE_RELAYED_CALL_GAS)
        return encode(["address"], [request.request.from_address]), False

    @external(f"postRelayedCall(bytes,bool,uint256,{RELAY_DATA_ABI})")
    def post_relayed_call(
        self,
        msg: Message,
        context: bytes,
        success: bool,
        gas_use_without_post: int,
        relay_data: tuple,
    ) -> None:
        require(msg.sender == self.relay_hub, "caller is not RelayHub")
        (holder,) = decode(["address"], context)
        gas_price = relay_data[0]
        fee = (gas_use_without_post + int(self.limits.post_relayed_call_gas_used)) * gas_price
        balance = msg.call(self.token, "balanceOf", holder)
        msg.call(self.token, "paymasterTransfer", holder, self.address, min(fee, balance))

    @external("versionPaymaster()", returns=("string",), view=True)
    def version(self, msg: Message) -> str:
        return "2.2.0+opengsn.paymaster.ipaymaster"


CONTRACT_TYPES: Dict[str, Type[SimContract]] = {
    cls.contract_name: cls
    for cls in (
        StakeManager,
        Penalizer,
        VersionRegistry,
        Forwarder,
        RelayHub,
        MyRecipient,
        GaslessErc20Token,
        MyPaymaster,
    )
}

# Interface artifacts resolve to the implementation that stands behind them
INTERFACE_ALIASES: Dict[str, Type[SimContract]] = {
    "IRelayHub": RelayHub,
    "IForwarder": Forwarder,
    "IPaymaster": MyPaymaster,
    "IStakeManager": StakeManager,
    "IPenalizer": Penalizer,
    "IVersionRegistry": VersionRegistry,
}


def contract_type(name: str) -> Type[SimContract]:
    cls = CONTRACT_TYPES.get(name) or INTERFACE_ALIASES.get(name)
    if cls is None:
        raise ArtifactNotFoundError(name, "<simulated>")
    return cls

