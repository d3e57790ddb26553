"""
Read-only auditor comparing cached balances with the transaction log.

The aggregate mint/burn check is always exact; per-account replays are
sampled to keep the global check cheap on large ledgers.
"""
import logging
from typing import Optional
from sqlalchemy import select, func

from common.error_handling import AccountNotFound, ReconciliationDrift
from common.settings import settings
from coin_ledger_service.models import Account, utcnow
from coin_ledger_service.schemas import AccountReconciliation, GlobalReconciliation
from coin_ledger_service.transaction_log import TransactionLog

logger = logging.getLogger(__name__)

def _random(db):
    return func.rand() if db.get_bind().dialect.name == "mysql" else func.random()

class ReconciliationChecker:

    def __init__(self, session_factory, log: TransactionLog, sample_size: Optional[int] = None):
        self.session_factory = session_factory
        self.log = log
        self.sample_size = settings.reconciliation_sample_size if sample_size is None else sample_size

    def account_report(self, db, account_id: str) -> AccountReconciliation:
        actual = db.execute(select(Account.balance).where(Account.id == account_id)).scalar_one_or_none()
        if actual is None:
            raise AccountNotFound(f"Account {account_id} not found", context={"account_id": account_id})
        credited, debited = self.log.account_totals(db, account_id)
        expected = credited - debited
        return AccountReconciliation(
            account_id=account_id,
            total_credited=credited,
            total_debited=debited,
            expected_balance=expected,
            actual_balance=int(actual),
            discrepancy=int(actual) - expected,
        )

    def check_account(self, account_id: str) -> AccountReconciliation:
        with self.session_factory() as db:
            return self.account_report(db, account_id)

    def check_global(self, sample_size: Optional[int] = None) -> GlobalReconciliation:
        sample_size = self.sample_size if sample_size is None else sample_size
        with self.session_factory() as db:
            # One statement, so circulation and mint/burn come from the same snapshot
            circulation = select(func.coalesce(func.sum(Account.balance), 0)).scalar_subquery()
            negatives = select(func.count(Account.id)).where(Account.balance < 0).scalar_subquery()
            row = db.execute(select(circulation, negatives, *self.log.mint_burn_columns())).one()
            total, negative_count, minted, minted_count, burned, burned_count = (int(v) for v in row)

            sample_ids = []
            if sample_size > 0:
                sample_ids = db.execute(
                    select(Account.id).order_by(_random(db)).limit(sample_size)
                ).scalars().all()
            discrepancies = []
            for account_id in sample_ids:
                check = self.account_report(db, account_id)
                if check.discrepancy != 0:
                    discrepancies.append(check)

        report = GlobalReconciliation(
            total_in_circulation=total,
            all_time_minted=minted,
            all_time_minted_count=minted_count,
            all_time_burned=burned,
            all_time_burned_count=burned_count,
            drift=total - (minted - burned),
            sampled_accounts=len(sample_ids),
            account_discrepancies=discrepancies,
            negative_balance_accounts=negative_count,
            checked_at=utcnow(),
        )
        if not report.healthy:
            logger.error(
                f"🚨 Ledger drift: circulation={total} minted={minted} burned={burned} "
                f"drift={report.drift} drifted_accounts={len(discrepancies)}"
            )
        return report

    def assert_healthy(self, sample_size: Optional[int] = None) -> GlobalReconciliation:
        report = self.check_global(sample_size)
        if report.drift != 0:
            raise ReconciliationDrift(
                f"Circulation differs from minted minus burned by {report.drift}",
                drift=report.drift,
                report=report.model_dump(mode="json"),
            )
        return report
