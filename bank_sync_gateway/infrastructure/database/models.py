"""SQLAlchemy ORM models for connections, accounts, transactions and the task queue"""

import uuid
from sqlalchemy import (
    Column,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class BankConnection(Base):
    """One provider item (login/consent) covering one or more accounts"""

    __tablename__ = "bank_connection"

    id = Column(Text, primary_key=True, default=_uuid)
    user_id = Column(Text, nullable=False, index=True)
    team_id = Column(Text, nullable=True, index=True)
    item_id = Column(Text, nullable=False, unique=True)
    provider = Column(Text, nullable=False, default="plaid")
    access_token = Column(Text, nullable=False)
    institution_id = Column(Text, nullable=True)
    institution_name = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="ACTIVE", index=True)
    disabled = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    # Provider-reported status that arrived while a sync held the connection
    pending_status = Column(Text, nullable=True)
    pending_error_message = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    expiry_notice_level = Column(Text, nullable=True)
    last_expiry_notified_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    sync_started_at = Column(DateTime(timezone=True), nullable=True)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    last_status_changed_at = Column(DateTime(timezone=True), nullable=True)
    last_notified_at = Column(DateTime(timezone=True), nullable=True)
    notification_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    accounts = relationship("BankAccount", back_populates="connection", cascade="all, delete-orphan")


class BankAccount(Base):
    """Financial account under a connection"""

    __tablename__ = "bank_account"
    __table_args__ = (UniqueConstraint("user_id", "plaid_account_id", name="uq_bank_account_user_plaid_account"),)

    id = Column(Text, primary_key=True, default=_uuid)
    bank_connection_id = Column(Text, ForeignKey("bank_connection.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Text, nullable=False)
    plaid_account_id = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    type = Column(Text, nullable=True)
    subtype = Column(Text, nullable=True)
    mask = Column(Text, nullable=True)
    currency = Column(Text, nullable=True)
    current_balance = Column(Numeric(14, 2), nullable=True)
    available_balance = Column(Numeric(14, 2), nullable=True)
    limit = Column(Numeric(14, 2), nullable=True)
    monthly_income = Column(Numeric(14, 2), nullable=True)
    monthly_spending = Column(Numeric(14, 2), nullable=True)
    average_balance = Column(Numeric(14, 2), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    balance_last_updated = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    connection = relationship("BankConnection", back_populates="accounts")
    transactions = relationship("Transaction", back_populates="account", cascade="all, delete-orphan")


class Transaction(Base):
    """Ledger entry, keyed by the provider transaction id"""

    __tablename__ = "bank_transaction"

    id = Column(Text, primary_key=True, default=_uuid)
    plaid_transaction_id = Column(Text, nullable=False, unique=True)
    bank_account_id = Column(Text, ForeignKey("bank_account.id", ondelete="CASCADE"), nullable=False, index=True)
    bank_connection_id = Column(Text, nullable=False, index=True)
    user_id = Column(Text, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(Text, nullable=True)
    date = Column(Date, nullable=False, index=True)
    pending = Column(Boolean, nullable=False, default=False)
    category = Column(Text, nullable=True)
    sub_category = Column(Text, nullable=True)
    merchant_name = Column(Text, nullable=True)
    name = Column(Text, nullable=True)
    notified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    account = relationship("BankAccount", back_populates="transactions")


class TaskRun(Base):
    """Durable task queue entry with retry tracking"""

    __tablename__ = "task_run"

    id = Column(Text, primary_key=True, default=_uuid)
    task_id = Column(Text, nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    concurrency_key = Column(Text, nullable=False, index=True)
    # Set to concurrency_key while RUNNING; unique so one key runs at a time
    active_key = Column(Text, nullable=True, unique=True)
    status = Column(Text, nullable=False, default="PENDING", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    run_at = Column(DateTime(timezone=True), nullable=False, index=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
