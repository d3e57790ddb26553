import logging
from typing import Optional
from sqlalchemy.exc import IntegrityError

from common.error_handling import AccountExists, InsufficientFunds, InvalidAmount, InvalidInput
from common.retry import retry_sync, LEDGER_RETRY_CONFIG
from common.schemas import LedgerEvent
from common.tracing import ledger_tracer
from coin_ledger_service.audit import enqueue_event, record_admin_action
from coin_ledger_service.balance_projector import BalanceProjector, atomic
from coin_ledger_service.models import (
    Account, CREDIT, DEBIT, ADMIN_ADJUSTMENT, PURCHASE, BONUS, FAILED,
)
from coin_ledger_service.schemas import AccountRead, AdjustmentResult, TransactionRead

logger = logging.getLogger(__name__)

class AccountService:
    """Account lifecycle, coin purchases and admin adjustments."""

    def __init__(self, session_factory, projector: BalanceProjector):
        self.session_factory = session_factory
        self.projector = projector

    def create_account(self, account_id: str, username: Optional[str] = None,
                       email: Optional[str] = None, role: str = "user") -> AccountRead:
        if role not in ("user", "creator", "admin"):
            raise InvalidInput(f"Unknown role: {role}", field="role")
        try:
            with atomic(self.session_factory, "create_account") as db:
                acc = Account(id=account_id, username=username, email=email, role=role, balance=0)
                db.add(acc)
                db.flush()
        except IntegrityError:
            raise AccountExists(f"Account {account_id} already exists", context={"account_id": account_id})
        logger.info(f"👤 Created {role} account {account_id}")
        return AccountRead.model_validate(acc)

    def credit_account(self, account_id: str, amount: int, source: str = PURCHASE,
                       description: str = "") -> TransactionRead:
        """Mint coins into an account (coin purchase or bonus)."""
        if source not in (PURCHASE, BONUS):
            raise InvalidInput(f"Coins can only be minted by purchase or bonus, not {source}", field="source")

        def _credit():
            with atomic(self.session_factory, "credit_account") as db:
                tx = self.projector.post(db, account_id, CREDIT, amount, source, description=description)
                enqueue_event(db, LedgerEvent(type="CoinsCredited", account_id=account_id, amount=amount,
                                              details={"source": source}))
                return TransactionRead.model_validate(tx)

        return retry_sync(_credit, LEDGER_RETRY_CONFIG)

    def adjust_coins(self, account_id: str, amount: int, reason: str, admin_id: str) -> AdjustmentResult:
        """Signed admin adjustment: positive credits, negative debits."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise InvalidAmount("Adjustment amount must be a non-zero integer", field="amount")
        reason = (reason or "").strip()
        if not reason:
            raise InvalidInput("A reason is required to adjust coins", field="reason")

        type_ = CREDIT if amount > 0 else DEBIT
        with ledger_tracer.start_span("coins.adjust") as span:
            span.add_tag("account.id", account_id)
            span.add_tag("amount", amount)
            try:
                return retry_sync(self._adjust_once, LEDGER_RETRY_CONFIG, account_id, type_, abs(amount), reason, admin_id)
            except InsufficientFunds:
                self._record_failed_adjustment(account_id, abs(amount), reason, admin_id)
                raise

    def _adjust_once(self, account_id: str, type_: str, amount: int, reason: str, admin_id: str) -> AdjustmentResult:
        with atomic(self.session_factory, "adjust_coins") as db:
            tx = self.projector.post(
                db, account_id, type_, amount, ADMIN_ADJUSTMENT,
                description=f"Admin adjustment: {reason}",
            )
            new_balance = self.projector.get_balance(db, account_id)
            old_balance = new_balance - amount if type_ == CREDIT else new_balance + amount
            signed = amount if type_ == CREDIT else -amount
            details = {"amount": signed, "old_balance": old_balance, "new_balance": new_balance,
                       "transaction_id": tx.transaction_id}
            record_admin_action(db, admin_id, "adjust_coins", "user", account_id, reason, details)
            enqueue_event(db, LedgerEvent(type="CoinsAdjusted", account_id=account_id, amount=signed,
                                          reason=reason, details=details))
            result = AdjustmentResult(transaction_id=tx.transaction_id, old_balance=old_balance, new_balance=new_balance)
        logger.info(f"🛠️ Adjusted {account_id} by {signed}: {old_balance} -> {new_balance}")
        return result

    def _record_failed_adjustment(self, account_id: str, amount: int, reason: str, admin_id: str):
        # Audit trail only; failed entries never touch the balance
        with atomic(self.session_factory, "record_failed_adjustment") as db:
            self.projector.log.append(
                db, account_id, DEBIT, amount, ADMIN_ADJUSTMENT,
                description=f"Rejected admin adjustment by {admin_id}: {reason}",
                status=FAILED,
            )
        logger.warning(f"⚠️ Rejected debit of {amount} from {account_id}: insufficient funds")
