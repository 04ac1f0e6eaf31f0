"""
Tests for the in-process simulated chain.

Tests cover:
- Pre-funded accounts and gas charging
- Revert semantics (fee and nonce only)
- Self-funded transactions from a zero-balance account
- evm_snapshot / evm_revert with Hardhat semantics
- Execution model: ABI dispatch, EIP-2771 sender unwrapping, gas limits
"""
from __future__ import annotations

import pytest
from eth_account import Account

from gasless_harness.exceptions import (
    ArtifactNotFoundError,
    ChainConnectionError,
    TransactionReverted,
)
from gasless_harness.simulated import SimulatedChain, derive_address
from gasless_harness.simulated.chain import DEFAULT_ACCOUNT_BALANCE, HARDHAT_CHAIN_ID
from gasless_harness.simulated.contracts import VersionRegistry
from gasless_harness.simulated.vm import (
    AbiFunction,
    Execution,
    GasMeter,
    OutOfGas,
    Revert,
    WorldState,
    encode_arguments,
)
from gasless_harness.types import Address


class TestAccounts:
    """Tests for the default chain state."""

    @pytest.mark.asyncio
    async def test_prefunded_accounts(self):
        chain = SimulatedChain()
        accounts = await chain.accounts()
        assert len(accounts) == 10
        assert await chain.get_balance(accounts[0]) == DEFAULT_ACCOUNT_BALANCE
        assert await chain.chain_id() == HARDHAT_CHAIN_ID
        assert await chain.block_number() == 0

    def test_derive_address_is_deterministic(self):
        assert derive_address("relay") == derive_address("relay")
        assert derive_address("relay") != derive_address("worker")

    @pytest.mark.asyncio
    async def test_fresh_account_has_nothing(self):
        chain = SimulatedChain()
        user = Account.create()
        assert await chain.get_balance(user.address) == 0
        assert await chain.get_transaction_count(user.address) == 0
        assert await chain.get_code(user.address) == b""


class TestTransactions:
    """Tests for transaction application."""

    @pytest.mark.asyncio
    async def test_deploy_charges_gas_and_mines(self):
        chain = SimulatedChain()
        admin = (await chain.accounts())[0]
        forwarder = await chain.deploy("Forwarder", admin)
        assert await chain.get_code(forwarder.address) != b""
        assert await chain.get_balance(admin) < DEFAULT_ACCOUNT_BALANCE
        assert await chain.get_transaction_count(admin) == 1
        assert await chain.block_number() == 1

    @pytest.mark.asyncio
    async def test_deploy_unknown_contract(self):
        chain = SimulatedChain()
        admin = (await chain.accounts())[0]
        with pytest.raises(ArtifactNotFoundError):
            await chain.deploy("NoSuchContract", admin)

    @pytest.mark.asyncio
    async def test_deploy_interface_refused(self):
        chain = SimulatedChain()
        admin = (await chain.accounts())[0]
        with pytest.raises(ValueError):
            await chain.deploy("IRelayHub", admin)

    @pytest.mark.asyncio
    async def test_revert_charges_only_fee_and_nonce(self):
        """A reverted transaction leaves the sender's fee and nonce, nothing else."""
        chain = SimulatedChain()
        admin, other = (await chain.accounts())[:2]
        registry = await chain.deploy("VersionRegistry", admin)
        balance_before = await chain.get_balance(other)

        with pytest.raises(TransactionReverted) as exc_info:
            await registry.transact("addVersion", b"\x01" * 32, b"\x02" * 32, "x", sender=other)

        assert exc_info.value.reason == "caller is not the owner"
        assert exc_info.value.tx_hash is not None
        assert await chain.get_transaction_count(other) == 1
        assert await chain.get_balance(other) < balance_before
        with pytest.raises(TransactionReverted):
            await registry.call("getVersion", b"\x01" * 32)

    @pytest.mark.asyncio
    async def test_zero_balance_sender_cannot_self_fund(self):
        """A self-paid transaction from an account with no native currency fails."""
        chain = SimulatedChain()
        admin = (await chain.accounts())[0]
        forwarder = await chain.deploy("Forwarder", admin)
        user = Account.create()
        recipient = await chain.deploy("MyRecipient", admin, [forwarder.address])

        with pytest.raises(ChainConnectionError):
            await recipient.transact("heavyFunc", 10, sender=Address(user.address))
        assert await chain.get_transaction_count(user.address) == 0
        assert await recipient.call("callCount", user.address) == 0

    @pytest.mark.asyncio
    async def test_value_transfer_and_receipt(self):
        chain = SimulatedChain()
        admin = (await chain.accounts())[0]
        stake_manager = await chain.deploy("StakeManager", admin)
        penalizer = await chain.deploy("Penalizer", admin)
        hub = await chain.deploy("RelayHub", admin, [stake_manager.address, penalizer.address])
        target = derive_address("paymaster")

        receipt = await hub.transact("depositFor", target, sender=admin, value=5)
        assert receipt.succeeded
        assert await hub.call("balanceOf", target) == 5
        assert await chain.get_balance(hub.address) == 5
        assert await chain.wait_for_receipt(receipt.tx_hash) == receipt
        deposited = hub.events(receipt, "Deposited")
        assert len(deposited) == 1
        assert deposited[0].args["amount"] == 5

    @pytest.mark.asyncio
    async def test_unknown_receipt(self):
        chain = SimulatedChain()
        with pytest.raises(ChainConnectionError):
            await chain.wait_for_receipt("0x" + "00" * 32)

    @pytest.mark.asyncio
    async def test_call_on_missing_contract(self):
        chain = SimulatedChain()
        recipient = chain.contract_at("MyRecipient", derive_address("nowhere"))
        with pytest.raises(ChainConnectionError):
            await recipient.call("callCount", derive_address("nobody"))

    @pytest.mark.asyncio
    async def test_estimate_gas_ignores_balance(self):
        chain = SimulatedChain()
        admin = (await chain.accounts())[0]
        forwarder = await chain.deploy("Forwarder", admin)
        recipient = await chain.deploy("MyRecipient", admin, [forwarder.address])
        user = Account.create()
        data = recipient.encode("heavyFunc", 2000)

        gas = await chain.estimate_gas({"from": user.address, "to": recipient.address, "data": data})
        assert gas > 5_000 + 2000 * 100


class TestRpcSnapshots:
    """Tests for evm_snapshot / evm_revert semantics."""

    @pytest.mark.asyncio
    async def test_snapshot_ids_and_revert(self):
        chain = SimulatedChain()
        admin = (await chain.accounts())[0]
        snapshot_id = await chain.rpc("evm_snapshot")
        assert snapshot_id == "0x1"
        await chain.deploy("Forwarder", admin)
        assert await chain.rpc("evm_revert", [snapshot_id]) is True
        assert await chain.block_number() == 0
        assert await chain.get_transaction_count(admin) == 0

    @pytest.mark.asyncio
    async def test_revert_unknown_id(self):
        chain = SimulatedChain()
        assert await chain.rpc("evm_revert", ["0x99"]) is False

    @pytest.mark.asyncio
    async def test_revert_invalidates_later_snapshots(self):
        chain = SimulatedChain()
        first = await chain.rpc("evm_snapshot")
        second = await chain.rpc("evm_snapshot")
        assert await chain.rpc("evm_revert", [first]) is True
        assert await chain.rpc("evm_revert", [second]) is False
        assert await chain.rpc("evm_revert", [first]) is False

    @pytest.mark.asyncio
    async def test_set_balance_and_mine(self):
        chain = SimulatedChain()
        account = derive_address("funded")
        assert await chain.rpc("hardhat_setBalance", [account, hex(10**18)]) is True
        assert await chain.get_balance(account) == 10**18
        await chain.rpc("evm_mine")
        assert await chain.rpc("eth_blockNumber") == "0x1"
        assert await chain.rpc("eth_chainId") == hex(HARDHAT_CHAIN_ID)

    @pytest.mark.asyncio
    async def test_unsupported_method(self):
        chain = SimulatedChain()
        with pytest.raises(ChainConnectionError):
            await chain.rpc("debug_traceTransaction", ["0x00"])


class TestExecutionModel:
    """Tests for the contract execution model."""

    def test_abi_function_parse(self):
        abi = AbiFunction.parse("transfer(address,uint256)", outputs=("bool",))
        assert abi.inputs == ("address", "uint256")
        assert abi.signature == "transfer(address,uint256)"
        assert abi.selector.hex() == "a9059cbb"

    def test_single_output_unwrapped(self):
        abi = AbiFunction.parse("balanceOf(address)", outputs=("uint256",))
        assert abi.decode_output(abi.encode_output(42)) == 42

    def test_gas_meter_nested_limit(self):
        meter = GasMeter()
        meter.consume(100)
        with meter.limit(50):
            meter.consume(50)
            with pytest.raises(OutOfGas):
                meter.consume(1)
        meter.consume(1_000)
        assert meter.used == 1_151

    def test_revert_encodes_error_string(self):
        encoded = Revert("nope").encoded()
        assert encoded[:4].hex() == "08c379a0"

    def test_encode_arguments_rejects_mismatch(self):
        with pytest.raises(ValueError):
            encode_arguments(["uint8"], [256])

    def test_try_message_restores_state(self):
        """A failed inner call unwinds storage, balances and events."""
        world = WorldState()
        admin = derive_address("admin")
        world.balances[admin] = 100
        execution = Execution(world, HARDHAT_CHAIN_ID, 1)
        registry = execution.create(VersionRegistry, admin, derive_address("registry"), [])
        abi = VersionRegistry.functions["addVersion"][0]
        data = abi.encode_input([b"\x01" * 32, b"\x02" * 32, "x"])

        ok, output = execution.try_message(derive_address("intruder"), registry.address, 0, data)
        assert ok is False
        assert output[:4].hex() == "08c379a0"
        assert registry.versions == {}

        ok, _ = execution.try_message(admin, registry.address, 0, data)
        assert ok is True
        assert b"\x01" * 32 in world.contracts[registry.address].versions
        assert [e.name for e in execution.events] == ["VersionAdded"]
