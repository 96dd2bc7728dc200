# database.py
import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (create_engine, event, CheckConstraint, Column, Integer,
                        String, Text, Numeric, Boolean, DateTime, JSON,
                        ForeignKey, Index)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship

from .config import LedgerConfig

logger = logging.getLogger(__name__)

Base = declarative_base()

Money = Numeric(10, 2, asdecimal=True)


def new_id():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SnapshotMixin:
    """Column values as a JSON-safe dict, used for audit snapshots."""

    def snapshot(self):
        data = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, (datetime, date)):
                value = value.isoformat()
            data[column.key] = value
        return data


class Account(SnapshotMixin, Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("carbon_balance >= 0", name="ck_users_balance_non_negative"),
    )
    id             = Column(String(36), primary_key=True, default=new_id)
    email          = Column(String(255), unique=True, nullable=False)
    password_hash  = Column(String(255), nullable=False)
    name           = Column(String(100), nullable=False)
    carbon_balance = Column(Money, nullable=False, default=Decimal("0"))
    created_at     = Column(DateTime, nullable=False, default=utcnow)
    updated_at     = Column(DateTime, nullable=False, default=utcnow)

    emissions  = relationship("EmissionRecord", back_populates="account")
    reductions = relationship("ReductionRecord", back_populates="account")
    offsets    = relationship("OffsetPurchase", back_populates="account")

    def snapshot(self):
        data = super().snapshot()
        data.pop("password_hash")
        return data


class EmissionRecord(SnapshotMixin, Base):
    __tablename__ = "carbon_activities"
    __table_args__ = (
        CheckConstraint("co2_generated >= 0", name="ck_activities_co2_non_negative"),
        Index("idx_carbon_activities_user_id", "user_id"),
    )
    id            = Column(String(36), primary_key=True, default=new_id)
    user_id       = Column(String(36), ForeignKey("users.id"), nullable=False)
    activity_type = Column(String(50), nullable=False)
    quantity      = Column(Money, nullable=False)
    unit          = Column(String(20), nullable=False)
    vehicle_type  = Column(String(50))
    co2_generated = Column(Money, nullable=False)
    description   = Column(Text)
    created_at    = Column(DateTime, nullable=False, default=utcnow)

    account = relationship("Account", back_populates="emissions")


class ReductionRecord(SnapshotMixin, Base):
    __tablename__ = "carbon_reductions"
    __table_args__ = (
        CheckConstraint("impact >= 0", name="ck_reductions_impact_non_negative"),
        CheckConstraint("credits_earned >= 0", name="ck_reductions_credits_non_negative"),
        Index("idx_carbon_reductions_user_id", "user_id"),
    )
    id             = Column(String(36), primary_key=True, default=new_id)
    user_id        = Column(String(36), ForeignKey("users.id"), nullable=False)
    action_type    = Column(String(50), nullable=False)
    impact         = Column(Money, nullable=False)
    credits_earned = Column(Money, nullable=False)
    description    = Column(Text)
    created_at     = Column(DateTime, nullable=False, default=utcnow)

    account = relationship("Account", back_populates="reductions")


class OffsetProject(SnapshotMixin, Base):
    __tablename__ = "offset_projects"
    __table_args__ = (
        CheckConstraint("price_per_credit > 0", name="ck_projects_price_positive"),
        CheckConstraint("credits_available >= 0", name="ck_projects_available_non_negative"),
    )
    id                = Column(String(36), primary_key=True, default=new_id)
    name              = Column(String(200), nullable=False)
    description       = Column(Text)
    location          = Column(String(200))
    price_per_credit  = Column(Money, nullable=False)
    credits_available = Column(Integer, nullable=False, default=0)
    credits_issued    = Column(Integer, nullable=False, default=0)  # inventory at creation
    project_type      = Column(String(50))
    is_active         = Column(Boolean, nullable=False, default=True)
    created_at        = Column(DateTime, nullable=False, default=utcnow)

    purchases = relationship("OffsetPurchase", back_populates="project")


class OffsetPurchase(SnapshotMixin, Base):
    __tablename__ = "carbon_offsets"
    __table_args__ = (
        CheckConstraint("credit_amount > 0", name="ck_offsets_amount_positive"),
        Index("idx_carbon_offsets_user_id", "user_id"),
    )
    id               = Column(String(36), primary_key=True, default=new_id)
    user_id          = Column(String(36), ForeignKey("users.id"), nullable=False)
    project_id       = Column(String(36), ForeignKey("offset_projects.id"), nullable=False)
    credit_amount    = Column(Integer, nullable=False)
    price_per_credit = Column(Money, nullable=False)
    total_cost       = Column(Money, nullable=False)
    transaction_id   = Column(String(100), unique=True, nullable=False)
    created_at       = Column(DateTime, nullable=False, default=utcnow)

    account = relationship("Account", back_populates="offsets")
    project = relationship("OffsetProject", back_populates="purchases")


class LedgerTransaction(SnapshotMixin, Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("from_user_id IS NOT NULL OR to_user_id IS NOT NULL",
                        name="ck_transactions_has_party"),
        CheckConstraint("credit_amount > 0", name="ck_transactions_amount_positive"),
        Index("idx_transactions_from_user", "from_user_id"),
        Index("idx_transactions_to_user", "to_user_id"),
        Index("idx_transactions_type", "transaction_type"),
    )
    id               = Column(String(36), primary_key=True, default=new_id)
    from_user_id     = Column(String(36), ForeignKey("users.id"))
    to_user_id       = Column(String(36), ForeignKey("users.id"))
    transaction_type = Column(String(50), nullable=False)
    credit_amount    = Column(Money, nullable=False)
    reference_id     = Column(String(36))
    message          = Column(Text)
    idempotency_key  = Column(String(120), unique=True)
    created_at       = Column(DateTime, nullable=False, default=utcnow)

    def effect_on(self, account_id):
        """Signed credit effect of this transaction on one account."""
        effect = Decimal("0")
        if self.to_user_id == account_id:
            effect += self.credit_amount
        if self.from_user_id == account_id:
            effect -= self.credit_amount
        return effect


class AuditEntry(SnapshotMixin, Base):
    __tablename__ = "audit_log"
    __table_args__ = (
        Index("idx_audit_log_user_id", "user_id"),
    )
    id          = Column(String(36), primary_key=True, default=new_id)
    user_id     = Column(String(36), ForeignKey("users.id"))
    action      = Column(String(100), nullable=False)
    entity_type = Column(String(50))
    entity_id   = Column(String(36))
    old_values  = Column(JSON)
    new_values  = Column(JSON)
    ip_address  = Column(String(45))
    user_agent  = Column(Text)
    created_at  = Column(DateTime, nullable=False, default=utcnow)


SEED_PROJECTS = [
    dict(name="Amazon Rainforest Conservation",
         description="Protect primary rainforest in Brazil from deforestation",
         location="Brazil", price_per_credit=Decimal("25.00"),
         credits_available=10000, project_type="reforestation"),
    dict(name="Wind Farm India",
         description="Support renewable wind energy generation in Rajasthan",
         location="India", price_per_credit=Decimal("18.50"),
         credits_available=5000, project_type="renewable_energy"),
    dict(name="Ocean Cleanup Initiative",
         description="Remove plastic and restore marine ecosystems",
         location="Pacific Ocean", price_per_credit=Decimal("30.00"),
         credits_available=3000, project_type="carbon_capture"),
    dict(name="Community Solar Gardens",
         description="Local solar installations for underserved communities",
         location="USA", price_per_credit=Decimal("22.00"),
         credits_available=7500, project_type="renewable_energy"),
]


def make_engine(config: LedgerConfig):
    """Create the engine; SQLite write units are serialized with BEGIN IMMEDIATE."""
    if not config.is_sqlite:
        return create_engine(config.database_url, echo=config.echo,
                             isolation_level="READ COMMITTED")

    engine = create_engine(
        config.database_url,
        echo=config.echo,
        connect_args={"timeout": config.busy_timeout, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # take over transaction control from pysqlite
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine):
    Base.metadata.create_all(engine)


def seed_offset_projects(session):
    """Insert the predefined offset projects that are not present yet."""
    existing = {name for (name,) in session.query(OffsetProject.name)}
    created = []
    for spec in SEED_PROJECTS:
        if spec["name"] in existing:
            continue
        project = OffsetProject(credits_issued=spec["credits_available"], **spec)
        session.add(project)
        created.append(project)
    if created:
        logger.info("Seeded %d offset projects", len(created))
    return created
