"""Chain-state snapshot harness over ``evm_snapshot`` / ``evm_revert``.

Tokens are LIFO: only the most recently issued open token may be rolled
back, and each token is consumed by its rollback.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List

from .connection import ChainConnection
from .exceptions import HarnessException, SnapshotMisuse
from .logging_utils import OperationType, get_harness_logger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotToken:
    """Opaque handle to a captured chain state."""
    snapshot_id: str
    sequence: int


class SnapshotHarness:
    def __init__(self, connection: ChainConnection):
        self._connection = connection
        self._open: List[SnapshotToken] = []
        self._sequence = 0
        self._log = get_harness_logger()

    @property
    def open_tokens(self) -> List[SnapshotToken]:
        return list(self._open)

    async def snapshot(self) -> SnapshotToken:
        async with self._log.operation_context(OperationType.SNAPSHOT, self._connection.label) as ctx:
            snapshot_id = await self._connection.rpc("evm_snapshot", [])
            self._sequence += 1
            token = SnapshotToken(snapshot_id=str(snapshot_id), sequence=self._sequence)
            self._open.append(token)
            ctx.metadata["snapshot_id"] = token.snapshot_id
        return token

    async def rollback(self, token: SnapshotToken) -> None:
        if token not in self._open:
            raise SnapshotMisuse(
                f"Snapshot {token.snapshot_id} is not open (already rolled back or foreign)",
                details={"snapshot_id": token.snapshot_id},
            )
        if self._open[-1] != token:
            raise SnapshotMisuse(
                f"Snapshot {token.snapshot_id} is not the most recent open snapshot "
                f"({self._open[-1].snapshot_id})",
                details={"snapshot_id": token.snapshot_id},
            )

        async with self._log.operation_context(
            OperationType.ROLLBACK, self._connection.label, snapshot_id=token.snapshot_id
        ):
            # an RPC failure leaves the token open so the rollback can be retried
            reverted = await self._connection.rpc("evm_revert", [token.snapshot_id])
            self._open.pop()
            if reverted is not True:
                raise SnapshotMisuse(
                    f"Chain refused to revert to snapshot {token.snapshot_id}",
                    details={"snapshot_id": token.snapshot_id, "result": reverted},
                )

    @asynccontextmanager
    async def isolated(self) -> AsyncIterator[SnapshotToken]:
        """Snapshot on entry, always roll back on exit."""
        token = await self.snapshot()
        try:
            yield token
        except BaseException as scenario_error:
            try:
                await self.rollback(token)
            except HarnessException as rollback_error:
                raise rollback_error from scenario_error
            raise
        await self.rollback(token)
