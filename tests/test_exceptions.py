"""
Tests for the harness exception hierarchy.
"""
from __future__ import annotations

from gasless_harness.exceptions import (
    ArtifactNotFoundError,
    ChainConnectionError,
    DeploymentFailure,
    HarnessException,
    RelayNotInitialized,
    SnapshotMisuse,
    SponsorshipRejection,
    TransactionReverted,
    WiringFailure,
)


class TestHarnessException:
    """Tests for the base exception."""

    def test_to_dict(self):
        error = HarnessException("boom", error_code="CUSTOM", details={"k": "v"})
        assert error.to_dict() == {"error": "CUSTOM", "message": "boom", "details": {"k": "v"}}

    def test_to_dict_without_details(self):
        assert HarnessException("boom").to_dict() == {"error": "HARNESS_ERROR", "message": "boom"}

    def test_all_inherit_from_base(self):
        for cls in (
            ChainConnectionError,
            TransactionReverted,
            DeploymentFailure,
            WiringFailure,
            SponsorshipRejection,
            RelayNotInitialized,
            SnapshotMisuse,
            ArtifactNotFoundError,
        ):
            assert issubclass(cls, HarnessException)


class TestSpecificErrors:
    """Tests for the structured fields of each error."""

    def test_deployment_failure(self):
        error = DeploymentFailure("MyPaymaster", "initialize", "reverted", address="0xabc")
        assert error.phase == "initialize"
        assert error.contract == "MyPaymaster"
        assert error.message == "MyPaymaster initialize failed: reverted"
        assert error.to_dict()["details"] == {
            "contract": "MyPaymaster",
            "phase": "initialize",
            "address": "0xabc",
        }
        assert error.error_code == "DEPLOYMENT_FAILURE"

    def test_wiring_failure(self):
        error = WiringFailure("deposit_for_paymaster", "out of funds")
        assert error.step == "deposit_for_paymaster"
        assert "deposit_for_paymaster" in str(error)

    def test_sponsorship_rejection(self):
        error = SponsorshipRejection("relayedCallOverhead too low", paymaster="0xpm")
        assert error.reason == "relayedCallOverhead too low"
        assert error.message == "Sponsorship rejected: relayedCallOverhead too low"
        assert error.details == {"paymaster": "0xpm"}

    def test_transaction_reverted(self):
        error = TransactionReverted("reverted", reason="nope", tx_hash="0x01")
        assert error.reason == "nope"
        assert error.tx_hash == "0x01"

    def test_chain_connection_error_method(self):
        error = ChainConnectionError("down", method="eth_call")
        assert error.details == {"method": "eth_call"}
