"""Tests for error context reporting."""

from decimal import Decimal

from carbonledger.errors import InsufficientCredits, LedgerError, StorageFailure


def test_context_in_message():
    error = InsufficientCredits("p1", attempted=30, available=10)
    assert str(error) == "Insufficient offset credits available (project_id=p1, attempted=30, available=10)"
    assert not error.retryable


def test_to_dict():
    error = StorageFailure("disk full", operation="purchase_offset")
    assert error.to_dict() == {
        "error": "StorageFailure",
        "message": "disk full",
        "retryable": True,
        "context": {"operation": "purchase_offset"},
    }


def test_plain_message():
    assert str(LedgerError("nope")) == "nope"
    assert LedgerError("x", amount=Decimal("1.50")).context["amount"] == Decimal("1.50")
