"""Tests for configuration loading."""

from decimal import Decimal

import pytest

from carbonledger.config import DEFAULT_DATABASE_URL, LedgerConfig
from carbonledger.errors import InvalidInput


def test_defaults():
    config = LedgerConfig.from_env(environ={})
    assert config.database_url == DEFAULT_DATABASE_URL
    assert config.reservation_retries == 1
    assert config.is_sqlite


def test_from_env():
    config = LedgerConfig.from_env(environ={
        "CARBONLEDGER_DATABASE_URL": "postgresql://ledger@db/carbon",
        "CARBONLEDGER_ECHO": "yes",
        "CARBONLEDGER_RESERVATION_RETRIES": "2",
        "CARBONLEDGER_CREDIT_RATIO": "0.75",
        "CARBONLEDGER_SEED_PROJECTS": "off",
        "CARBONLEDGER_LOG_LEVEL": "debug",
    })
    assert config.database_url == "postgresql://ledger@db/carbon"
    assert config.echo is True
    assert config.reservation_retries == 2
    assert config.credit_ratio == Decimal("0.75")
    assert config.seed_projects is False
    assert config.log_level == "DEBUG"
    assert not config.is_sqlite


@pytest.mark.parametrize("env", [
    {"CARBONLEDGER_ECHO": "maybe"},
    {"CARBONLEDGER_BUSY_TIMEOUT": "soon"},
    {"CARBONLEDGER_RESERVATION_RETRIES": "-1"},
    {"CARBONLEDGER_CREDIT_RATIO": "lots"},
])
def test_invalid_values(env):
    with pytest.raises(InvalidInput):
        LedgerConfig.from_env(environ=env)


def test_ledger_from_env(tmp_path):
    from carbonledger import CarbonLedger

    ledger = CarbonLedger.from_env(environ={
        "CARBONLEDGER_DATABASE_URL": f"sqlite:///{tmp_path / 'env.db'}",
        "CARBONLEDGER_SEED_PROJECTS": "false",
        "CARBONLEDGER_CREDIT_RATIO": "2",
    })
    assert ledger.initialize() == []
    assert ledger.list_projects() == []
    account = ledger.open_account("env@example.com", "env", "x")
    assert ledger.record_reduction(account.id, "recycling", impact=3).balance == Decimal("6.00")
    ledger.close()


def test_server_engines_use_read_committed(monkeypatch):
    from carbonledger import database

    calls = []
    monkeypatch.setattr(database, "create_engine",
                        lambda url, **kwargs: calls.append((url, kwargs)) or object())
    database.make_engine(LedgerConfig(database_url="postgresql://ledger@db/carbon"))
    assert calls == [("postgresql://ledger@db/carbon",
                      {"echo": False, "isolation_level": "READ COMMITTED"})]
