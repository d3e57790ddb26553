"""
Balance projector: keeps Account.balance equal to the replayed sum of the
transaction log. This module is the only writer of the balance column.
"""
import logging
from contextlib import contextmanager
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from common.error_handling import AccountNotFound, InsufficientFunds, SettlementFailed
from coin_ledger_service.models import Account, LedgerTransaction, CREDIT, COMPLETED
from coin_ledger_service.schemas import BalanceCorrection
from coin_ledger_service.transaction_log import TransactionLog

logger = logging.getLogger(__name__)

@contextmanager
def atomic(session_factory, operation: str):
    """One database transaction per ledger operation.

    Commits on success, rolls back on any error. Driver-level failures other
    than constraint violations surface as SettlementFailed so callers can retry.
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except DBAPIError as e:
        db.rollback()
        logger.error(f"❌ {operation} rolled back: {e}")
        raise SettlementFailed(f"{operation} could not be applied atomically", original_error=e)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

class BalanceProjector:

    def __init__(self, log: TransactionLog):
        self.log = log

    def _apply_delta(self, db: Session, account_id: str, type: str, amount: int):
        if type == CREDIT:
            stmt = (
                update(Account)
                .where(Account.id == account_id)
                .values(balance=Account.balance + amount)
            )
        else:
            # Conditional debit: the row lock it takes serializes writers per account
            stmt = (
                update(Account)
                .where(Account.id == account_id, Account.balance >= amount)
                .values(balance=Account.balance - amount)
            )
        result = db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount == 1:
            return
        balance = db.execute(select(Account.balance).where(Account.id == account_id)).scalar_one_or_none()
        if balance is None:
            raise AccountNotFound(f"Account {account_id} not found", context={"account_id": account_id})
        raise InsufficientFunds(
            f"Debit of {amount} would make balance of {account_id} negative",
            context={"account_id": account_id, "balance": balance, "amount": amount},
        )

    def apply_transaction(self, db: Session, tx: LedgerTransaction):
        """Apply a completed entry to its account's cached balance."""
        if tx.status != COMPLETED:
            return
        self._apply_delta(db, tx.account_id, tx.type, tx.amount)

    def post(self, db: Session, account_id: str, type: str, amount: int, source: str,
             related_call_id: Optional[str] = None, description: str = "") -> LedgerTransaction:
        """Log append plus balance update as one unit of the caller's transaction.

        The balance update runs first so a rejected debit leaves nothing to undo
        and the session stays usable.
        """
        self.log.validate(type, amount, source)
        self._apply_delta(db, account_id, type, amount)
        return self.log.append(
            db, account_id, type, amount, source,
            related_call_id=related_call_id, description=description,
        )

    def try_post(self, db: Session, account_id: str, type: str, amount: int, source: str,
                 related_call_id: Optional[str] = None, description: str = "") -> Optional[LedgerTransaction]:
        """Like post, but returns None instead of raising when funds are short."""
        try:
            return self.post(db, account_id, type, amount, source, related_call_id, description)
        except InsufficientFunds:
            return None

    def get_balance(self, db: Session, account_id: str) -> int:
        balance = db.execute(select(Account.balance).where(Account.id == account_id)).scalar_one_or_none()
        if balance is None:
            raise AccountNotFound(f"Account {account_id} not found", context={"account_id": account_id})
        return int(balance)

    def replay_balance(self, db: Session, account_id: str) -> int:
        balance = 0
        for tx in self.log.list_for_account(db, account_id, completed_only=True):
            balance += tx.amount if tx.type == CREDIT else -tx.amount
        return balance

    def rebuild(self, db: Session, account_id: Optional[str] = None) -> List[BalanceCorrection]:
        """Recompute cached balances from a full replay of the log."""
        stmt = select(Account.id, Account.balance).order_by(Account.id)
        if account_id is not None:
            stmt = stmt.where(Account.id == account_id)
        rows = db.execute(stmt).all()
        if account_id is not None and not rows:
            raise AccountNotFound(f"Account {account_id} not found", context={"account_id": account_id})

        corrections = []
        for acc_id, cached in rows:
            replayed = self.replay_balance(db, acc_id)
            if replayed == cached:
                continue
            db.execute(
                update(Account)
                .where(Account.id == acc_id)
                .values(balance=replayed)
                .execution_options(synchronize_session=False)
            )
            logger.warning(f"⚠️ Rebuilt balance of {acc_id}: {cached} -> {replayed}")
            corrections.append(BalanceCorrection(account_id=acc_id, old_balance=cached, new_balance=replayed))
        return corrections
