"""
Periodic reconciliation sweep. A non-zero aggregate drift is a platform alarm:
it is logged and published as a ReconciliationDrift event.
"""
import time
import logging
from typing import Optional

from common.error_handling import ReconciliationDrift
from common.schemas import LedgerEvent
from common.settings import settings
from common.tracing import ledger_tracer
from coin_ledger_service.audit import enqueue_event
from coin_ledger_service.balance_projector import atomic
from coin_ledger_service.db import SessionLocal
from coin_ledger_service.reconciliation import ReconciliationChecker
from coin_ledger_service.schemas import GlobalReconciliation
from coin_ledger_service.transaction_log import TransactionLog

logger = logging.getLogger(__name__)

def sweep_once(checker: ReconciliationChecker, session_factory) -> Optional[GlobalReconciliation]:
    """Run one global check; returns the report, or None when drift was raised."""
    with ledger_tracer.start_span("reconciliation.sweep") as span:
        try:
            report = checker.assert_healthy()
        except ReconciliationDrift as e:
            span.add_tag("drift", e.drift)
            logger.error(f"🚨 {e.message}")
            with atomic(session_factory, "reconciliation_alarm") as db:
                enqueue_event(db, LedgerEvent(type="ReconciliationDrift", amount=e.drift, details=e.report))
            return None
        if report.account_discrepancies:
            logger.warning(
                f"⚠️ {len(report.account_discrepancies)}/{report.sampled_accounts} sampled accounts drifted: "
                f"{[d.account_id for d in report.account_discrepancies]}"
            )
        span.add_tag("sampled_accounts", report.sampled_accounts)
        return report

def run():
    checker = ReconciliationChecker(SessionLocal, TransactionLog())
    logger.info(f"🔍 Reconciliation sweep every {settings.reconciliation_interval_seconds}s")
    while True:
        try:
            sweep_once(checker, SessionLocal)
        except Exception as e:
            logger.error(f"❌ Reconciliation sweep failed: {e}")
        time.sleep(settings.reconciliation_interval_seconds)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run()
