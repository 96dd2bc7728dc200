"""Tests for the audit recorder."""

import pytest

from carbonledger.audit import AuditRecorder, RequestOrigin
from carbonledger.errors import InsufficientBalance
from carbonledger.uow import UnitOfWork


def test_entry_carries_origin_and_snapshots(ledger, make_account):
    account = make_account()
    origin = RequestOrigin(ip_address="192.0.2.7", user_agent="curl/8.0")
    with UnitOfWork(ledger.Session, "test") as uow:
        AuditRecorder(uow.session).record(account.id, "profile.rename", "account", account.id,
                                          before={"name": "a"}, after={"name": "b"},
                                          origin=origin)
    entry = ledger.audit_trail(entity_id=account.id)[-1]
    assert entry.action == "profile.rename"
    assert entry.old_values == {"name": "a"}
    assert entry.new_values == {"name": "b"}
    assert (entry.ip_address, entry.user_agent) == ("192.0.2.7", "curl/8.0")


def test_system_actions_have_no_actor(ledger):
    seeds = [e for e in ledger.audit_trail() if e.action == "project.seed"]
    assert len(seeds) == 4
    assert all(e.user_id is None and e.ip_address is None for e in seeds)
    assert {e.new_values["name"] for e in seeds} >= {"Wind Farm India"}


def test_rejected_operation_writes_no_audit(ledger, make_account):
    a, b = make_account(balance=1), make_account()
    before = len(ledger.audit_trail())
    with pytest.raises(InsufficientBalance):
        ledger.share_credits(a.id, b.id, 5)
    assert len(ledger.audit_trail()) == before
