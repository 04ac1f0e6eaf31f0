"""
Logging utilities for deployment, wiring and relay operations.

Features:
- Operation context tracking (start, duration, success) per chain operation
- Transaction lifecycle logging
- Optional JSON formatting
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Types of harness operations."""
    DEPLOY = "deploy"
    INITIALIZE = "initialize"
    WIRING = "wiring"
    RELAY_INIT = "relay_init"
    RELAYED_CALL = "relayed_call"
    SNAPSHOT = "snapshot"
    ROLLBACK = "rollback"


@dataclass
class OperationContext:
    """Context for a single harness operation."""
    operation_id: str
    operation_type: OperationType
    chain: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (
            (self.completed_at - self.started_at).total_seconds() * 1000
        )
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "chain": self.chain,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": {k: str(v) for k, v in self.metadata.items()},
        }


class HarnessLogger:
    """
    Structured logger for harness operations.

    Failures are logged and re-raised; nothing here swallows an exception.
    """

    def __init__(self, name: str = "gasless_harness"):
        self._logger = logging.getLogger(name)
        self._operation_counter = 0

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        timestamp = int(time.time() * 1000)
        return f"op_{timestamp}_{self._operation_counter}"

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        chain: str,
        **metadata,
    ):
        """
        Context manager for tracking an operation.

        Usage:
            async with log.operation_context(OperationType.DEPLOY, "31337", contract="MyPaymaster") as ctx:
                handle = await deployer.deploy()
                ctx.metadata["address"] = handle.address
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            chain=chain,
            metadata=metadata,
        )

        self._logger.debug(
            f"Starting {operation_type.value} on {chain}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)

        except BaseException as e:
            # CancelledError and KeyboardInterrupt still need a duration
            ctx.complete(success=False, error=str(e) or type(e).__name__)
            raise

        finally:
            level = logging.INFO if ctx.success else logging.ERROR
            self._logger.log(
                level,
                f"Completed {operation_type.value} on {chain} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_transaction_confirmed(
        self,
        tx_hash: str,
        block_number: Optional[int],
        gas_used: Optional[int],
        description: str = "",
    ) -> None:
        self._logger.info(
            f"Transaction confirmed: {tx_hash} in block {block_number} "
            f"gas_used={gas_used} {description}".rstrip(),
        )

    def log_transaction_failed(
        self,
        tx_hash: Optional[str],
        error: str,
        revert_reason: Optional[str] = None,
    ) -> None:
        self._logger.error(
            f"Transaction failed: {tx_hash or '<unsent>'} - {error}"
            + (f" (revert: {revert_reason})" if revert_reason else ""),
        )


_harness_logger: Optional[HarnessLogger] = None


def get_harness_logger() -> HarnessLogger:
    """Get the global harness logger instance."""
    global _harness_logger
    if _harness_logger is None:
        _harness_logger = HarnessLogger()
    return _harness_logger


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level
        format_string: Custom format string
        json_format: Use JSON formatting
    """
    if format_string is None:
        if json_format:
            format_string = json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "name": "%(name)s",
                "message": "%(message)s",
            })
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_string,
    )

    logging.getLogger("gasless_harness").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)
