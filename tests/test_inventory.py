"""Tests for offset project inventory reservations."""

import logging

import pytest
from sqlalchemy.sql.dml import Update

from carbonledger.errors import (InsufficientCredits, InvalidInput, ProjectInactive,
                                 ProjectNotFound)
from carbonledger.inventory import OffsetInventory
from carbonledger.uow import UnitOfWork


def test_reserve_decrements_inventory(ledger, amazon):
    with UnitOfWork(ledger.Session, "test") as uow:
        reservation = OffsetInventory(uow.session).reserve_credits(amazon.id, 40)
        reservation.commit()
    assert ledger.project_inventory(amazon.id) == 10000 - 40


def test_release_restores_inventory(ledger, amazon):
    with UnitOfWork(ledger.Session, "test") as uow:
        reservation = OffsetInventory(uow.session).reserve_credits(amazon.id, 40)
        reservation.release()
        assert reservation.state == "released"
    assert ledger.project_inventory(amazon.id) == 10000


def test_reservation_rolled_back_with_unit(ledger, amazon):
    with pytest.raises(RuntimeError):
        with UnitOfWork(ledger.Session, "test") as uow:
            OffsetInventory(uow.session).reserve_credits(amazon.id, 40)
            raise RuntimeError("boom")
    assert ledger.project_inventory(amazon.id) == 10000


def test_cannot_oversell(ledger):
    project = ledger.register_project("Small", "10.00", 5)
    with pytest.raises(InsufficientCredits) as excinfo:
        with UnitOfWork(ledger.Session, "test") as uow:
            OffsetInventory(uow.session).reserve_credits(project.id, 6)
    assert excinfo.value.context == {"project_id": project.id, "attempted": 6, "available": 5}
    assert ledger.project_inventory(project.id) == 5


def test_exact_inventory_can_be_sold(ledger):
    project = ledger.register_project("Small", "10.00", 5)
    with UnitOfWork(ledger.Session, "test") as uow:
        OffsetInventory(uow.session).reserve_credits(project.id, 5).commit()
    assert ledger.project_inventory(project.id) == 0


def test_inactive_project_rejected(ledger):
    project = ledger.register_project("Retired", "10.00", 50, is_active=False)
    with pytest.raises(ProjectInactive):
        with UnitOfWork(ledger.Session, "test") as uow:
            OffsetInventory(uow.session).reserve_credits(project.id, 1)


@pytest.mark.parametrize("amount", [0, -3, 1.5, True])
def test_amount_must_be_positive_integer(ledger, amazon, amount):
    with pytest.raises(InvalidInput):
        with UnitOfWork(ledger.Session, "test") as uow:
            OffsetInventory(uow.session).reserve_credits(amazon.id, amount)


def test_unknown_project(ledger):
    with pytest.raises(ProjectNotFound):
        with UnitOfWork(ledger.Session, "test") as uow:
            OffsetInventory(uow.session).reserve_credits("missing", 1)


class _MissedUpdate:
    rowcount = 0


def _miss_first_updates(session, monkeypatch, misses):
    """Make the first ``misses`` conditional UPDATEs match no rows."""
    real_execute = session.execute
    state = {"left": misses}

    def execute(statement, *args, **kwargs):
        if isinstance(statement, Update) and state["left"]:
            state["left"] -= 1
            return _MissedUpdate()
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(session, "execute", execute)


def test_missed_decrement_is_retried(ledger, amazon, monkeypatch, caplog):
    caplog.set_level(logging.WARNING, logger="carbonledger.inventory")
    with UnitOfWork(ledger.Session, "test") as uow:
        _miss_first_updates(uow.session, monkeypatch, misses=1)
        OffsetInventory(uow.session, retries=1).reserve_credits(amazon.id, 5).commit()
    assert ledger.project_inventory(amazon.id) == 10000 - 5
    assert "retry 1 of 1" in caplog.text


def test_retries_exhausted_reports_insufficient_credits(ledger, amazon, monkeypatch):
    with pytest.raises(InsufficientCredits) as excinfo:
        with UnitOfWork(ledger.Session, "test") as uow:
            _miss_first_updates(uow.session, monkeypatch, misses=2)
            OffsetInventory(uow.session, retries=1).reserve_credits(amazon.id, 5)
    assert excinfo.value.context == {"project_id": amazon.id, "attempted": 5, "available": 10000}
    assert ledger.project_inventory(amazon.id) == 10000
