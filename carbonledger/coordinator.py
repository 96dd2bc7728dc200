"""
Transaction coordinator.

Every mutation of the ledger enters through one of the CarbonLedger
operations below. Each runs in a single unit of work: records, balance
deltas, inventory changes, the ledger Transaction and its audit entries
commit together or not at all.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import selectinload

from .audit import AuditRecorder, RequestOrigin
from .balance import BalanceEngine, money
from .config import LedgerConfig, configure_logging
from .database import (Account, AuditEntry, EmissionRecord, LedgerTransaction,
                       OffsetProject, OffsetPurchase, ReductionRecord, init_db,
                       make_engine, make_session_factory, new_id,
                       seed_offset_projects)
from .emissions import (ActionType, ActivityType, EmissionCalculator, ProjectType,
                        TransactionType, parse_enum, ratio_policy)
from .errors import (AccountNotFound, DuplicateOperation, InvalidInput, LedgerError,
                     ProjectNotFound, RecordNotFound)
from .inventory import OffsetInventory
from .uow import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Created record plus the acting account's balance after commit."""
    record: Any
    balance: Optional[Decimal]
    transaction: Optional[LedgerTransaction] = None


@dataclass(frozen=True)
class LedgerReference:
    """Tagged pointer from a Transaction to the record that caused it."""
    kind: TransactionType
    reference_id: Optional[str]

    @classmethod
    def of(cls, transaction):
        return cls(TransactionType(transaction.transaction_type), transaction.reference_id)


@dataclass
class Discrepancy:
    entity_type: str
    entity_id: str
    expected: Any
    actual: Any


_REFERENCE_MODELS = {
    TransactionType.MEASURE: EmissionRecord,
    TransactionType.REDUCE: ReductionRecord,
    TransactionType.OFFSET: OffsetPurchase,
    TransactionType.SHARE: LedgerTransaction,
}


def _idempotency_key(kind, key):
    """Idempotency keys are scoped per operation kind, e.g. ``offset:<id>``."""
    return None if key is None else f"{kind.value}:{key}"


class CarbonLedger:
    """
    Carbon credit ledger engine.

    Args:
        config: LedgerConfig, defaults to a local SQLite file
        engine: Optional pre-built SQLAlchemy engine
        credit_policy: Callable ``(action_type, impact) -> Decimal`` converting
            reduction impact into earned credits
        calculator: EmissionCalculator used when an emission record has no
            precomputed CO2 mass
    """

    def __init__(self, config: Optional[LedgerConfig] = None, engine=None,
                 credit_policy=None, calculator: Optional[EmissionCalculator] = None):
        self.config = config or LedgerConfig()
        self.engine = engine if engine is not None else make_engine(self.config)
        self.Session = make_session_factory(self.engine)
        self.credit_policy = credit_policy or ratio_policy(self.config.credit_ratio)
        self.calculator = calculator or EmissionCalculator()

    @classmethod
    def from_env(cls, environ=None, **kwargs):
        """Build a ledger from CARBONLEDGER_* variables and set up logging."""
        config = LedgerConfig.from_env(environ=environ)
        configure_logging(config.log_level)
        return cls(config, **kwargs)

    def initialize(self):
        """Create tables and load the predefined offset projects once."""
        init_db(self.engine)
        if not self.config.seed_projects:
            return []
        with self._unit("seed_projects") as uow:
            projects = seed_offset_projects(uow.session)
            uow.session.flush()
            audit = AuditRecorder(uow.session)
            for project in projects:
                audit.record(None, "project.seed", "offset_project", project.id,
                             after=project.snapshot())
        return projects

    def close(self):
        self.engine.dispose()

    def _unit(self, name, cancel_event=None):
        return UnitOfWork(self.Session, name, cancel_event=cancel_event)

    # --- Mutations ---

    def open_account(self, email, name, password_hash, origin: Optional[RequestOrigin] = None,
                     cancel_event=None):
        """Register an account with a zero balance."""
        email = (email or "").strip().lower()
        if "@" not in email:
            raise InvalidInput("A valid email is required", email=email)
        if not name or not password_hash:
            raise InvalidInput("name and password_hash are required", email=email)

        with self._unit("open_account", cancel_event) as uow:
            session = uow.session
            if session.query(Account.id).filter_by(email=email).first():
                raise DuplicateOperation("Email already registered", email=email)
            account = Account(email=email, name=name, password_hash=password_hash)
            session.add(account)
            session.flush()
            AuditRecorder(session).record(account.id, "account.open", "account", account.id,
                                          after=account.snapshot(), origin=origin)
        logger.info("Opened account %s", account.id)
        return account

    def register_project(self, name, price_per_credit, credits_available, description=None,
                         location=None, project_type=None, is_active=True,
                         origin: Optional[RequestOrigin] = None):
        """Add an offset project with a fixed starting inventory."""
        price = money(price_per_credit, "price_per_credit")
        if price <= 0:
            raise InvalidInput("price_per_credit must be positive", price_per_credit=price)
        if not isinstance(credits_available, int) or credits_available < 0:
            raise InvalidInput("credits_available must be a non-negative integer",
                               credits_available=credits_available)
        if project_type is not None:
            project_type = parse_enum(ProjectType, project_type, "project_type").value

        with self._unit("register_project") as uow:
            project = OffsetProject(name=name, description=description, location=location,
                                    price_per_credit=price, credits_available=credits_available,
                                    credits_issued=credits_available, project_type=project_type,
                                    is_active=is_active)
            uow.session.add(project)
            uow.session.flush()
            AuditRecorder(uow.session).record(None, "project.register", "offset_project",
                                              project.id, after=project.snapshot(),
                                              origin=origin)
        logger.info("Registered offset project %s (%s)", project.id, name)
        return project

    def record_emission(self, account_id, activity_type, quantity, unit, vehicle_type=None,
                        description=None, co2_generated=None,
                        origin: Optional[RequestOrigin] = None, cancel_event=None):
        """Append an emission record. Emissions do not move credits."""
        activity = parse_enum(ActivityType, activity_type, "activity_type")
        quantity = money(quantity, "quantity")
        if quantity < 0:
            raise InvalidInput("quantity must not be negative", quantity=quantity)
        if co2_generated is None:
            co2 = self.calculator.calculate(activity, quantity, unit, vehicle_type)
        else:
            co2 = money(co2_generated, "co2_generated")
            if co2 < 0:
                raise InvalidInput("co2_generated must not be negative", co2_generated=co2)

        with self._unit("record_emission", cancel_event) as uow:
            session = uow.session
            account = session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(account_id)
            record = EmissionRecord(user_id=account_id, activity_type=activity.value,
                                    quantity=quantity, unit=unit, vehicle_type=vehicle_type,
                                    co2_generated=co2, description=description)
            session.add(record)
            session.flush()
            AuditRecorder(session).record(account_id, "emission.record", "carbon_activity",
                                          record.id, after=record.snapshot(), origin=origin)
            balance = account.carbon_balance
        logger.info("Recorded %s kg CO2 emission for account %s", co2, account_id)
        return OperationResult(record, balance)

    def record_reduction(self, account_id, action_type, impact, credits_earned=None,
                         description=None, request_id=None,
                         origin: Optional[RequestOrigin] = None, cancel_event=None):
        """Append a reduction record and credit the credits it earned."""
        action = parse_enum(ActionType, action_type, "action_type")
        impact = money(impact, "impact")
        if impact < 0:
            raise InvalidInput("impact must not be negative", impact=impact)
        if credits_earned is None:
            credits_earned = self.credit_policy(action.value, impact)
        credits = money(credits_earned, "credits_earned")
        if credits <= 0:
            raise InvalidInput("Reduction must earn a positive number of credits",
                               account_id=account_id, credits_earned=credits)

        with self._unit("record_reduction", cancel_event) as uow:
            session = uow.session
            self._reject_replay(session, TransactionType.REDUCE, request_id)
            balances = BalanceEngine(session)
            audit = AuditRecorder(session)
            account = balances.lock_accounts(account_id)[account_id]
            before = account.snapshot()

            record = ReductionRecord(user_id=account_id, action_type=action.value, impact=impact,
                                     credits_earned=credits, description=description)
            session.add(record)
            session.flush()
            balance = balances.apply_credit_delta(account_id, credits, "reduce")
            txn = LedgerTransaction(to_user_id=account_id,
                                    transaction_type=TransactionType.REDUCE.value,
                                    credit_amount=credits, reference_id=record.id,
                                    message=f"{action.value} reduction of {impact} kg CO2",
                                    idempotency_key=_idempotency_key(
                                        TransactionType.REDUCE, request_id))
            session.add(txn)
            session.flush()
            audit.record(account_id, "reduction.record", "carbon_reduction", record.id,
                         after=record.snapshot(), origin=origin)
            audit.record(account_id, "balance.credit", "account", account_id,
                         before=before, after=account.snapshot(), origin=origin)
        logger.info("Credited %s to account %s for %s", credits, account_id, action.value)
        return OperationResult(record, balance, txn)

    def purchase_offset(self, account_id, project_id, amount, transaction_id=None,
                        origin: Optional[RequestOrigin] = None, cancel_event=None):
        """Buy ``amount`` credits from a project, debiting their total cost.

        ``transaction_id`` is the caller's unique purchase identifier; a
        replayed identifier is rejected with DuplicateOperation. Purchase ids
        and the request ids of reductions and shares are kept in separate
        namespaces.
        """
        transaction_id = transaction_id or new_id()

        with self._unit("purchase_offset", cancel_event) as uow:
            session = uow.session
            if session.query(OffsetPurchase.id).filter_by(transaction_id=transaction_id).first():
                raise DuplicateOperation("Offset purchase already recorded",
                                         transaction_id=transaction_id)
            self._reject_replay(session, TransactionType.OFFSET, transaction_id)
            balances = BalanceEngine(session)
            inventory = OffsetInventory(session, retries=self.config.reservation_retries)
            audit = AuditRecorder(session)

            account, project = self._lock_account_and_project(session, account_id, project_id)
            account_before = account.snapshot()
            project_before = project.snapshot()

            reservation = inventory.reserve_credits(project_id, amount)
            price = project.price_per_credit
            total_cost = price * amount
            try:
                balance = balances.apply_credit_delta(account_id, -total_cost, "offset")
            except LedgerError:
                reservation.release()
                raise
            reservation.commit()

            purchase = OffsetPurchase(user_id=account_id, project_id=project_id,
                                      credit_amount=amount, price_per_credit=price,
                                      total_cost=total_cost, transaction_id=transaction_id)
            session.add(purchase)
            session.flush()
            txn = LedgerTransaction(from_user_id=account_id,
                                    transaction_type=TransactionType.OFFSET.value,
                                    credit_amount=total_cost, reference_id=purchase.id,
                                    message=f"Offset {amount} credits from {project.name}",
                                    idempotency_key=_idempotency_key(TransactionType.OFFSET,
                                                                    transaction_id))
            session.add(txn)
            session.flush()
            audit.record(account_id, "offset.purchase", "carbon_offset", purchase.id,
                         after=purchase.snapshot(), origin=origin)
            audit.record(account_id, "inventory.decrement", "offset_project", project_id,
                         before=project_before, after=project.snapshot(), origin=origin)
            audit.record(account_id, "balance.debit", "account", account_id,
                         before=account_before, after=account.snapshot(), origin=origin)
        logger.info("Account %s bought %d credits from project %s for %s",
                    account_id, amount, project_id, total_cost)
        return OperationResult(purchase, balance, txn)

    def share_credits(self, from_account_id, to_account_id, amount, message=None,
                      request_id=None, origin: Optional[RequestOrigin] = None,
                      cancel_event=None):
        """Transfer credits directly from one account to another."""
        if from_account_id == to_account_id:
            raise InvalidInput("Cannot share credits with the same account",
                               account_id=from_account_id)
        amount = money(amount)
        if amount <= 0:
            raise InvalidInput("Share amount must be positive", amount=amount)

        with self._unit("share_credits", cancel_event) as uow:
            session = uow.session
            self._reject_replay(session, TransactionType.SHARE, request_id)
            balances = BalanceEngine(session)
            audit = AuditRecorder(session)
            accounts = balances.lock_accounts(from_account_id, to_account_id)
            source, target = accounts[from_account_id], accounts[to_account_id]
            source_before, target_before = source.snapshot(), target.snapshot()

            balance = balances.apply_credit_delta(from_account_id, -amount, "share out")
            balances.apply_credit_delta(to_account_id, amount, "share in")
            txn_id = new_id()
            txn = LedgerTransaction(id=txn_id, from_user_id=from_account_id,
                                    to_user_id=to_account_id,
                                    transaction_type=TransactionType.SHARE.value,
                                    credit_amount=amount, reference_id=txn_id,
                                    message=message,
                                    idempotency_key=_idempotency_key(
                                        TransactionType.SHARE, request_id))
            session.add(txn)
            session.flush()
            audit.record(from_account_id, "credits.share", "transaction", txn_id,
                         after=txn.snapshot(), origin=origin)
            audit.record(from_account_id, "balance.debit", "account", from_account_id,
                         before=source_before, after=source.snapshot(), origin=origin)
            audit.record(from_account_id, "balance.credit", "account", to_account_id,
                         before=target_before, after=target.snapshot(), origin=origin)
        logger.info("Shared %s credits from %s to %s", amount, from_account_id, to_account_id)
        return OperationResult(txn, balance, txn)

    def _reject_replay(self, session, kind, key):
        if key is None:
            return
        stored = _idempotency_key(kind, key)
        if session.query(LedgerTransaction.id).filter_by(idempotency_key=stored).first():
            logger.warning("Rejected replay of operation %s", key)
            raise DuplicateOperation("Operation already recorded", kind=kind.value, request_id=key)

    def _lock_account_and_project(self, session, account_id, project_id):
        """Row-lock the account and project in ascending id order."""
        found = {}
        for entity_id, model in sorted([(account_id, Account), (project_id, OffsetProject)],
                                       key=lambda pair: pair[0]):
            found[model] = session.get(model, entity_id, with_for_update=True,
                                       populate_existing=True)
        if found[Account] is None:
            raise AccountNotFound(account_id)
        if found[OffsetProject] is None:
            raise ProjectNotFound(project_id)
        return found[Account], found[OffsetProject]

    # --- Queries ---
    # Results are detached snapshots; relationships callers may need are
    # loaded eagerly before the session closes.

    def get_account(self, account_id):
        """Account with its emissions, reductions and offsets loaded."""
        with self.Session() as session:
            account = session.get(Account, account_id, options=[
                selectinload(Account.emissions),
                selectinload(Account.reductions),
                selectinload(Account.offsets),
            ])
            if account is None:
                raise AccountNotFound(account_id)
            return account

    def get_balance(self, account_id):
        with self.Session() as session:
            account = session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(account_id)
            return account.carbon_balance

    def history(self, account_id, kind=None, limit=None) -> List[LedgerTransaction]:
        """Transactions where the account is source or destination, oldest first."""
        with self.Session() as session:
            if session.get(Account, account_id) is None:
                raise AccountNotFound(account_id)
            query = session.query(LedgerTransaction).filter(or_(
                LedgerTransaction.from_user_id == account_id,
                LedgerTransaction.to_user_id == account_id,
            ))
            if kind is not None:
                kind = parse_enum(TransactionType, kind, "kind")
                query = query.filter(LedgerTransaction.transaction_type == kind.value)
            query = query.order_by(LedgerTransaction.created_at, LedgerTransaction.id)
            if limit:
                query = query.limit(limit)
            return query.all()

    def get_project(self, project_id):
        with self.Session() as session:
            project = session.get(OffsetProject, project_id,
                                  options=[selectinload(OffsetProject.purchases)])
            if project is None:
                raise ProjectNotFound(project_id)
            return project

    def project_inventory(self, project_id) -> int:
        return self.get_project(project_id).credits_available

    def list_projects(self, active_only=True):
        with self.Session() as session:
            query = session.query(OffsetProject)
            if active_only:
                query = query.filter(OffsetProject.is_active.is_(True))
            return query.order_by(OffsetProject.name).all()

    def offset_purchases(self, project_id=None, account_id=None):
        with self.Session() as session:
            query = session.query(OffsetPurchase)
            if project_id is not None:
                query = query.filter_by(project_id=project_id)
            if account_id is not None:
                query = query.filter_by(user_id=account_id)
            return query.order_by(OffsetPurchase.created_at, OffsetPurchase.id).all()

    def emissions_for(self, account_id):
        with self.Session() as session:
            return (session.query(EmissionRecord).filter_by(user_id=account_id)
                    .order_by(EmissionRecord.created_at, EmissionRecord.id).all())

    def reductions_for(self, account_id):
        with self.Session() as session:
            return (session.query(ReductionRecord).filter_by(user_id=account_id)
                    .order_by(ReductionRecord.created_at, ReductionRecord.id).all())

    def audit_trail(self, account_id=None, entity_id=None):
        with self.Session() as session:
            query = session.query(AuditEntry)
            if account_id is not None:
                query = query.filter_by(user_id=account_id)
            if entity_id is not None:
                query = query.filter_by(entity_id=entity_id)
            return query.order_by(AuditEntry.created_at, AuditEntry.id).all()

    def resolve_reference(self, transaction):
        """Load the record a transaction points at, chosen by its kind."""
        ref = LedgerReference.of(transaction)
        model = _REFERENCE_MODELS[ref.kind]
        with self.Session() as session:
            record = session.get(model, ref.reference_id) if ref.reference_id else None
            if record is None:
                raise RecordNotFound("Referenced record not found", kind=ref.kind.value,
                                     reference_id=ref.reference_id)
            return record

    def reconcile(self) -> List[Discrepancy]:
        """Recompute balances and inventories from the ledger; report mismatches."""
        problems = []
        with self.Session() as session:
            transactions = session.query(LedgerTransaction).all()
            for account in session.query(Account):
                expected = sum((t.effect_on(account.id) for t in transactions), Decimal("0"))
                if expected != account.carbon_balance:
                    problems.append(Discrepancy("account", account.id, expected,
                                                account.carbon_balance))
            for project in session.query(OffsetProject):
                sold = sum(p.credit_amount for p in project.purchases)
                expected = project.credits_issued - sold
                if project.credits_available < 0 or expected != project.credits_available:
                    problems.append(Discrepancy("offset_project", project.id, expected,
                                                project.credits_available))
        for problem in problems:
            logger.error("Ledger discrepancy on %s %s: expected %s, stored %s",
                         problem.entity_type, problem.entity_id, problem.expected, problem.actual)
        return problems
