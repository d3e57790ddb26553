import logging
from typing import List, Optional

from common.schemas import LedgerEvent
from coin_ledger_service.accounts import AccountService
from coin_ledger_service.audit import enqueue_event, record_admin_action
from coin_ledger_service.balance_projector import BalanceProjector, atomic
from coin_ledger_service.reconciliation import ReconciliationChecker
from coin_ledger_service.refunds import RefundEngine
from coin_ledger_service.schemas import BalanceCorrection
from coin_ledger_service.settlement import CallSettlement
from coin_ledger_service.transaction_log import TransactionLog
from coin_ledger_service.views import LedgerViews

logger = logging.getLogger(__name__)

class CoinLedger:
    """Wires the ledger components around one session factory."""

    def __init__(self, session_factory, fee_percent: Optional[int] = None,
                 refund_max_age_days: Optional[int] = None, sample_size: Optional[int] = None):
        self.session_factory = session_factory
        self.log = TransactionLog()
        self.projector = BalanceProjector(self.log)
        self.accounts = AccountService(session_factory, self.projector)
        self.settlement = CallSettlement(session_factory, self.projector, fee_percent=fee_percent)
        self.refunds = RefundEngine(session_factory, self.projector, max_age_days=refund_max_age_days)
        self.checker = ReconciliationChecker(session_factory, self.log, sample_size=sample_size)
        self.views = LedgerViews(session_factory, self.log, self.checker)

    def get_balance(self, account_id: str) -> int:
        with self.session_factory() as db:
            return self.projector.get_balance(db, account_id)

    def rebuild_balances(self, admin_id: str, reason: str,
                         account_id: Optional[str] = None) -> List[BalanceCorrection]:
        """Replay the log and rewrite drifted balance caches."""
        with atomic(self.session_factory, "rebuild_balances") as db:
            corrections = self.projector.rebuild(db, account_id)
            details = {"corrections": [c.model_dump() for c in corrections]}
            record_admin_action(
                db, admin_id, "rebuild_balances", "user" if account_id else "system",
                account_id, reason, details,
            )
            if corrections:
                enqueue_event(db, LedgerEvent(type="BalancesRebuilt", account_id=account_id,
                                              reason=reason, details=details))
        logger.info(f"🔁 Balance rebuild by {admin_id}: {len(corrections)} correction(s)")
        return corrections
