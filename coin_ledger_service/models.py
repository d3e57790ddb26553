from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, BigInteger, DateTime, Boolean, Text, JSON,
    ForeignKey, CheckConstraint, Index,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only auto-increments INTEGER PRIMARY KEY columns
SequenceId = BigInteger().with_variant(Integer, "sqlite")

CREDIT = "credit"
DEBIT = "debit"

COMPLETED = "completed"
FAILED = "failed"

# Transaction sources
CALL_EARNING = "call_earning"
CALL_SPEND = "call_spend"
REFUND = "refund"
CLAWBACK = "clawback"
ADMIN_ADJUSTMENT = "admin_adjustment"
PURCHASE = "purchase"
BONUS = "bonus"
PLATFORM_FEE = "platform_fee"

SOURCES = (CALL_EARNING, CALL_SPEND, REFUND, CLAWBACK, ADMIN_ADJUSTMENT, PURCHASE, BONUS, PLATFORM_FEE)

# Largest value a BigInteger column holds
MAX_AMOUNT = 2**63 - 1

# Call states
SETTLED = "settled"
NEEDS_REVIEW = "needs_review"
REFUND_NONE = "none"
REFUNDED = "refunded"

def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so everything is stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    id = Column(String(64), primary_key=True)
    username = Column(String(128), nullable=True)
    email = Column(String(255), nullable=True)
    role = Column(String(16), nullable=False, default="user")  # user|creator|admin
    balance = Column(BigInteger, nullable=False, default=0)
    is_disabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class LedgerTransaction(Base):
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_transactions_amount_positive"),
        Index("ix_ledger_transactions_account_seq", "account_id", "id"),
    )

    id = Column(SequenceId, primary_key=True, autoincrement=True)
    transaction_id = Column(String(36), unique=True, nullable=False)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False)
    type = Column(String(8), nullable=False)  # credit|debit
    amount = Column(BigInteger, nullable=False)
    source = Column(String(32), nullable=False, index=True)
    related_call_id = Column(String(64), nullable=True, index=True)
    status = Column(String(16), nullable=False, default=COMPLETED)  # completed|failed
    description = Column(String(500), nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

class Call(Base):
    __tablename__ = "calls"

    call_id = Column(String(64), primary_key=True)
    payer_account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    earner_account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    duration_seconds = Column(Integer, nullable=False)
    price_per_minute = Column(Integer, nullable=False)
    coins_deducted = Column(BigInteger, nullable=False, default=0)
    coins_earned = Column(BigInteger, nullable=False, default=0)
    platform_fee = Column(BigInteger, nullable=False, default=0)
    settlement_status = Column(String(16), nullable=False, default=SETTLED)  # settled|needs_review
    refund_status = Column(String(16), nullable=False, default=REFUND_NONE)  # none|refunded
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    settled_at = Column(DateTime, nullable=True)

class Refund(Base):
    __tablename__ = "refunds"

    id = Column(SequenceId, primary_key=True, autoincrement=True)
    call_id = Column(String(64), ForeignKey("calls.call_id"), unique=True, nullable=False)
    attempt_id = Column(String(36), nullable=True)  # set by the refund request that wrote this row
    amount_refunded = Column(BigInteger, nullable=False)
    payer_balance_before = Column(BigInteger, nullable=False)
    payer_balance_after = Column(BigInteger, nullable=False)
    earner_clawback_amount = Column(BigInteger, nullable=True)  # null when skipped
    earner_balance_before = Column(BigInteger, nullable=True)
    earner_balance_after = Column(BigInteger, nullable=True)
    reason = Column(Text, nullable=False)
    admin_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class AdminAction(Base):
    __tablename__ = "admin_actions"

    id = Column(SequenceId, primary_key=True, autoincrement=True)
    admin_id = Column(String(64), nullable=False, index=True)
    action = Column(String(32), nullable=False)  # refund_call|adjust_coins|rebuild_balances
    target_type = Column(String(16), nullable=False)
    target_id = Column(String(64), nullable=True)
    reason = Column(Text, nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

class Outbox(Base):
    __tablename__ = "outbox"

    id = Column(SequenceId, primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    status = Column(String(16), nullable=False, default="new")  # new|sent|failed
