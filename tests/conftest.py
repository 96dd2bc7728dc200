"""Pytest configuration and fixtures."""

from decimal import Decimal
from pathlib import Path

import pytest

from carbonledger import CarbonLedger, LedgerConfig


@pytest.fixture
def config(tmp_path: Path) -> LedgerConfig:
    """Config pointing at a fresh SQLite file."""
    return LedgerConfig(database_url=f"sqlite:///{tmp_path / 'carbon.db'}")


@pytest.fixture
def ledger(config: LedgerConfig):
    """Initialized ledger with the seeded offset projects."""
    ledger = CarbonLedger(config)
    ledger.initialize()
    yield ledger
    ledger.close()


@pytest.fixture
def amazon(ledger):
    return next(p for p in ledger.list_projects() if p.name == "Amazon Rainforest Conservation")


@pytest.fixture
def make_account(ledger):
    """Factory for accounts, optionally funded through a reduction."""
    counter = {"n": 0}

    def make(balance=0, name=None):
        counter["n"] += 1
        name = name or f"user{counter['n']}"
        account = ledger.open_account(f"{name}@example.com", name, password_hash="x")
        if balance:
            ledger.record_reduction(account.id, "tree_planting", impact=balance,
                                    credits_earned=Decimal(balance))
        return account

    return make
