"""Exception hierarchy for the gasless harness.

All harness exceptions inherit from HarnessException, enabling:
- One ``except`` clause for every failure raised by the harness
- Machine-readable error codes for test reports
- Structured ``details`` describing where an orchestration run stopped

Usage:
    from gasless_harness.exceptions import DeploymentFailure, WiringFailure

    try:
        env = await orchestrator.build(admin, network, user)
    except (DeploymentFailure, WiringFailure) as e:
        print(e.to_dict())
"""
from __future__ import annotations

from typing import Any, Optional


class HarnessException(Exception):
    """Base exception for all harness errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "DEPLOYMENT_FAILURE")
        details: Optional additional context
    """

    error_code: str = "HARNESS_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a report-friendly dictionary."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Chain Errors
# =============================================================================

class ChainConnectionError(HarnessException):
    """The chain endpoint could not be reached or answered with an RPC error."""

    error_code = "CHAIN_CONNECTION_ERROR"

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if method:
            details["method"] = method
        super().__init__(message, details=details)


class TransactionReverted(HarnessException):
    """A submitted transaction reverted or confirmed with status 0."""

    error_code = "TRANSACTION_REVERTED"

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if reason:
            details["reason"] = reason
        if tx_hash:
            details["tx_hash"] = tx_hash
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(message, details=details)


# =============================================================================
# Orchestration Errors
# =============================================================================

class DeploymentFailure(HarnessException):
    """Construction or initialization of a contract failed.

    ``phase`` names the step that failed: ``precondition``, ``arguments``,
    ``construct`` or ``initialize``. A handle whose initialization failed
    must be treated as unusable; nothing is rolled back.
    """

    error_code = "DEPLOYMENT_FAILURE"

    def __init__(
        self,
        contract: str,
        phase: str,
        reason: str,
        address: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["contract"] = contract
        details["phase"] = phase
        if address:
            details["address"] = address
        self.contract = contract
        self.phase = phase
        self.address = address
        super().__init__(f"{contract} {phase} failed: {reason}", details=details)


class WiringFailure(HarnessException):
    """A role grant, deposit, mint or post-wiring check failed."""

    error_code = "WIRING_FAILURE"

    def __init__(
        self,
        step: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["step"] = step
        self.step = step
        super().__init__(f"Wiring step '{step}' failed: {reason}", details=details)


# =============================================================================
# Relay Errors
# =============================================================================

class SponsorshipRejection(HarnessException):
    """A relayed call was refused by the paymaster or no relayer accepted it."""

    error_code = "SPONSORSHIP_REJECTED"

    def __init__(
        self,
        reason: str,
        paymaster: Optional[str] = None,
        relay_url: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if paymaster:
            details["paymaster"] = paymaster
        if relay_url:
            details["relay_url"] = relay_url
        self.reason = reason
        super().__init__(f"Sponsorship rejected: {reason}", details=details)


class RelayNotInitialized(HarnessException):
    """The relay provider was used before ``init()`` completed."""

    error_code = "RELAY_NOT_INITIALIZED"


# =============================================================================
# Harness Usage Errors
# =============================================================================

class SnapshotMisuse(HarnessException):
    """Rollback with a stale, foreign or out-of-order snapshot token."""

    error_code = "SNAPSHOT_MISUSE"


class ArtifactNotFoundError(HarnessException):
    """No compiled artifact exists for the requested contract."""

    error_code = "ARTIFACT_NOT_FOUND"

    def __init__(self, contract: str, root: str) -> None:
        super().__init__(
            f"No artifact for contract '{contract}' under {root}",
            details={"contract": contract, "root": root},
        )


class ArtifactMismatchError(HarnessException):
    """An artifact was compiled with settings other than the pinned ones."""

    error_code = "ARTIFACT_MISMATCH"


class HarnessConfigurationError(HarnessException):
    """Settings are missing or inconsistent for the selected chain mode."""

    error_code = "CONFIGURATION_ERROR"
