"""
Append-only transaction log: the single source of truth for coin balances.

Entries are never updated or deleted. Corrections are new offsetting entries.
"""
import uuid
import logging
from typing import Dict, Iterator, Optional, Tuple
from sqlalchemy import select, func, case
from sqlalchemy.orm import Session

from common.error_handling import InvalidAmount, InvalidInput
from coin_ledger_service.models import (
    LedgerTransaction, CREDIT, DEBIT, COMPLETED, FAILED, MAX_AMOUNT, SOURCES,
)

logger = logging.getLogger(__name__)

class AccountHistory:
    """Ordered, lazily fetched view of one account's transactions.

    Every iteration starts a fresh keyset-paginated scan, so the same object can
    be iterated again (e.g. replay after a failed attempt).
    """

    def __init__(self, db: Session, account_id: str, newest_first: bool = False,
                 completed_only: bool = False, batch_size: int = 500):
        self.db = db
        self.account_id = account_id
        self.newest_first = newest_first
        self.completed_only = completed_only
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[LedgerTransaction]:
        last_id = None
        while True:
            stmt = select(LedgerTransaction).where(LedgerTransaction.account_id == self.account_id)
            if self.completed_only:
                stmt = stmt.where(LedgerTransaction.status == COMPLETED)
            if self.newest_first:
                if last_id is not None:
                    stmt = stmt.where(LedgerTransaction.id < last_id)
                stmt = stmt.order_by(LedgerTransaction.id.desc())
            else:
                if last_id is not None:
                    stmt = stmt.where(LedgerTransaction.id > last_id)
                stmt = stmt.order_by(LedgerTransaction.id.asc())
            rows = self.db.execute(stmt.limit(self.batch_size)).scalars().all()
            if not rows:
                return
            yield from rows
            if len(rows) < self.batch_size:
                return
            last_id = rows[-1].id

class TransactionLog:

    def validate(self, type: str, amount, source: str):
        # bool is an int subclass; True must not post a one-coin entry
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(
                f"Transaction amount must be a positive integer, got {amount!r}",
                field="amount",
            )
        if amount > MAX_AMOUNT:
            raise InvalidAmount(f"Transaction amount {amount} exceeds {MAX_AMOUNT}", field="amount")
        if type not in (CREDIT, DEBIT):
            raise InvalidInput(f"Unknown transaction type: {type}", field="type")
        if source not in SOURCES:
            raise InvalidInput(f"Unknown transaction source: {source}", field="source")

    def append(self, db: Session, account_id: str, type: str, amount: int, source: str,
               related_call_id: Optional[str] = None, description: str = "",
               status: str = COMPLETED) -> LedgerTransaction:
        """Persist a new immutable entry inside the caller's database transaction."""
        self.validate(type, amount, source)
        if status not in (COMPLETED, FAILED):
            raise InvalidInput(f"Unknown transaction status: {status}", field="status")

        tx = LedgerTransaction(
            transaction_id=str(uuid.uuid4()),
            account_id=account_id,
            type=type,
            amount=amount,
            source=source,
            related_call_id=related_call_id,
            status=status,
            description=description[:500],
        )
        db.add(tx)
        db.flush()
        logger.debug(f"Appended {type} {amount} ({source}) to {account_id} as #{tx.id}")
        return tx

    def list_for_account(self, db: Session, account_id: str, newest_first: bool = False,
                         completed_only: bool = False) -> AccountHistory:
        return AccountHistory(db, account_id, newest_first=newest_first, completed_only=completed_only)

    def account_totals(self, db: Session, account_id: str) -> Tuple[int, int]:
        """(credited, debited) over completed entries of one account."""
        credited, debited = db.execute(
            select(
                func.coalesce(func.sum(case((LedgerTransaction.type == CREDIT, LedgerTransaction.amount), else_=0)), 0),
                func.coalesce(func.sum(case((LedgerTransaction.type == DEBIT, LedgerTransaction.amount), else_=0)), 0),
            ).where(
                LedgerTransaction.account_id == account_id,
                LedgerTransaction.status == COMPLETED,
            )
        ).one()
        return int(credited), int(debited)

    def mint_burn_columns(self):
        """Scalar subqueries for all-time minted/burned sums and counts."""
        def agg(type_, fn):
            return (
                select(func.coalesce(fn, 0))
                .where(LedgerTransaction.type == type_, LedgerTransaction.status == COMPLETED)
                .scalar_subquery()
            )
        return (
            agg(CREDIT, func.sum(LedgerTransaction.amount)),
            agg(CREDIT, func.count(LedgerTransaction.id)),
            agg(DEBIT, func.sum(LedgerTransaction.amount)),
            agg(DEBIT, func.count(LedgerTransaction.id)),
        )

    def global_totals(self, db: Session) -> Dict[str, int]:
        minted, minted_count, burned, burned_count = db.execute(select(*self.mint_burn_columns())).one()
        return {
            "all_time_minted": int(minted),
            "all_time_minted_count": int(minted_count),
            "all_time_burned": int(burned),
            "all_time_burned_count": int(burned_count),
        }
