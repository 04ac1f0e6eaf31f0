"""
Tests for gasless_harness.snapshot.
"""
from __future__ import annotations

import pytest

from gasless_harness.exceptions import ChainConnectionError, SnapshotMisuse
from gasless_harness.simulated import SimulatedChain
from gasless_harness.snapshot import SnapshotHarness, SnapshotToken

HEAVY_ITERATIONS = 2000


class UnreachableRevertChain(SimulatedChain):
    """evm_revert fails at the RPC layer a set number of times."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def rpc(self, method, params=None):
        if method == "evm_revert" and self.failures > 0:
            self.failures -= 1
            raise ChainConnectionError("RPC evm_revert failed: connection reset", method=method)
        return await super().rpc(method, params)


class TestSnapshotHarness:
    """Tests for snapshot / rollback."""

    @pytest.mark.asyncio
    async def test_rollback_restores_state(self, stack_factory, sufficient_overhead):
        """Chain state after rollback equals chain state at snapshot time."""
        stack = await stack_factory()
        env = stack.environment
        block_before = await stack.chain.block_number()

        token = await stack.snapshots.snapshot()
        await env.set_relayed_call_overhead(sufficient_overhead)
        assert await env.paymaster.call("relayedCallOverhead") == sufficient_overhead

        await stack.snapshots.rollback(token)
        assert await env.paymaster.call("relayedCallOverhead") == 0
        assert await stack.chain.block_number() == block_before
        assert stack.snapshots.open_tokens == []

    @pytest.mark.asyncio
    async def test_token_is_single_use(self):
        harness = SnapshotHarness(SimulatedChain())
        token = await harness.snapshot()
        await harness.rollback(token)
        with pytest.raises(SnapshotMisuse):
            await harness.rollback(token)

    @pytest.mark.asyncio
    async def test_rollback_is_lifo(self):
        harness = SnapshotHarness(SimulatedChain())
        outer = await harness.snapshot()
        inner = await harness.snapshot()

        with pytest.raises(SnapshotMisuse):
            await harness.rollback(outer)
        assert harness.open_tokens == [outer, inner]

        await harness.rollback(inner)
        await harness.rollback(outer)
        assert harness.open_tokens == []

    @pytest.mark.asyncio
    async def test_foreign_token(self):
        harness = SnapshotHarness(SimulatedChain())
        with pytest.raises(SnapshotMisuse):
            await harness.rollback(SnapshotToken(snapshot_id="0x1", sequence=1))

    @pytest.mark.asyncio
    async def test_chain_refuses_revert(self):
        """A snapshot already consumed on the chain is reported, not ignored."""
        chain = SimulatedChain()
        harness = SnapshotHarness(chain)
        token = await harness.snapshot()
        assert await chain.rpc("evm_revert", [token.snapshot_id]) is True

        with pytest.raises(SnapshotMisuse):
            await harness.rollback(token)
        assert harness.open_tokens == []

    @pytest.mark.asyncio
    async def test_isolated_rolls_back_on_error(self, stack_factory, sufficient_overhead):
        stack = await stack_factory()
        env = stack.environment

        with pytest.raises(RuntimeError):
            async with stack.snapshots.isolated():
                await env.set_relayed_call_overhead(sufficient_overhead)
                raise RuntimeError("scenario failed")

        assert await env.paymaster.call("relayedCallOverhead") == 0
        assert stack.snapshots.open_tokens == []

    @pytest.mark.asyncio
    async def test_scenarios_do_not_leak(self, stack_factory, sufficient_overhead):
        """Two isolated scenarios each see the baseline."""
        stack = await stack_factory()
        env = stack.environment

        async with stack.snapshots.isolated():
            assert await env.paymaster.call("relayedCallOverhead") == 0
            await env.set_relayed_call_overhead(sufficient_overhead)

        async with stack.snapshots.isolated():
            assert await env.paymaster.call("relayedCallOverhead") == 0

    @pytest.mark.asyncio
    async def test_rollback_restores_balances_and_roles(self, stack_factory, sufficient_overhead):
        """A relayed call and a role revocation are both undone by rollback."""
        stack = await stack_factory()
        env = stack.environment
        signer = stack.provider.signer(stack.user.address)
        token_balance = await env.token_balance(env.sponsored_account)
        deposit = await env.hub_balance(env.paymaster.address)
        assert await env.paymaster_role_granted() is True

        snapshot = await stack.snapshots.snapshot()
        await env.set_relayed_call_overhead(sufficient_overhead)
        await signer.transact(env.recipient, "heavyFunc", HEAVY_ITERATIONS)
        role = await env.token.call("PAYMASTER_ROLE")
        await env.token.transact("revokeRole", role, env.paymaster.address, sender=env.admin)
        assert await env.token_balance(env.sponsored_account) < token_balance
        assert await env.hub_balance(env.paymaster.address) < deposit
        assert await env.paymaster_role_granted() is False

        await stack.snapshots.rollback(snapshot)
        assert await env.token_balance(env.sponsored_account) == token_balance
        assert await env.hub_balance(env.paymaster.address) == deposit
        assert await env.paymaster_role_granted() is True
        assert await stack.chain.get_balance(env.sponsored_account) == 0

    @pytest.mark.asyncio
    async def test_failed_revert_rpc_can_be_retried(self):
        """An unreachable node leaves the token open; the retry reverts."""
        chain = UnreachableRevertChain(failures=1)
        harness = SnapshotHarness(chain)
        token = await harness.snapshot()
        await chain.rpc("evm_mine")

        with pytest.raises(ChainConnectionError):
            await harness.rollback(token)
        assert harness.open_tokens == [token]
        assert await chain.block_number() == 1

        await harness.rollback(token)
        assert harness.open_tokens == []
        assert await chain.block_number() == 0

    @pytest.mark.asyncio
    async def test_isolated_keeps_scenario_error(self):
        """When the scenario fails and rollback is refused, the scenario error is the cause."""
        chain = SimulatedChain()
        harness = SnapshotHarness(chain)

        with pytest.raises(SnapshotMisuse) as exc_info:
            async with harness.isolated() as token:
                await chain.rpc("evm_revert", [token.snapshot_id])
                raise RuntimeError("scenario failed")

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert str(exc_info.value.__cause__) == "scenario failed"
        assert harness.open_tokens == []
