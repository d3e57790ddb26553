"""
Tests for the refund & clawback engine, including the concurrent refund race.
"""
import threading
import unittest
from unittest import mock
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from common.error_handling import AlreadyRefunded, CallNotFound, CallNotRefundable, ErrorCodes, InvalidInput
from coin_ledger_service.models import AdminAction, Refund, REFUND, CLAWBACK, REFUNDED
from coin_ledger_service.refunds import ALREADY_REFUNDED, NO_COINS_DEDUCTED, TOO_OLD, raise_for_block
from ledger_fixtures import LedgerTestCase


class RefundTestCase(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.open_account("payer", balance=100)
        self.open_account("creator", balance=50, role="creator")


class TestRefunds(RefundTestCase):

    def test_refund_scenario(self):
        """Settle 90s at 10/min then refund: back to 100/50"""
        self.settle("call-1", "payer", "creator", 90, 10)
        outcome = self.ledger.refunds.refund("call-1", "test issue", "admin-1")

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.refunded_amount, 15)
        self.assertEqual((outcome.user_balance_before, outcome.user_balance_after), (85, 100))
        self.assertEqual(outcome.creator_clawback.creator_user_id, "creator")
        self.assertEqual(outcome.creator_clawback.balance_before, 65)
        self.assertEqual(outcome.creator_clawback.balance_after, 50)
        self.assertEqual((self.balance("payer"), self.balance("creator")), (100, 50))

        self.assertEqual(self.load_call("call-1").refund_status, REFUNDED)
        self.assertEqual([tx.amount for tx in self.transactions("payer") if tx.source == REFUND], [15])
        self.assertEqual([tx.amount for tx in self.transactions("creator") if tx.source == CLAWBACK], [15])
        self.assertIn("CallRefunded", self.outbox_types())
        self.assertLedgerConsistent()

    def test_refund_is_audited(self):
        self.settle("call-1", "payer", "creator", 90, 10)
        self.ledger.refunds.refund("call-1", "  dropped call  ", "admin-7")

        with self.SessionLocal() as db:
            record = db.query(Refund).filter_by(call_id="call-1").one()
            action = db.query(AdminAction).one()
        self.assertEqual(record.reason, "dropped call")
        self.assertEqual(record.admin_id, "admin-7")
        self.assertEqual((record.payer_balance_before, record.payer_balance_after), (85, 100))
        self.assertEqual(record.earner_clawback_amount, 15)
        self.assertEqual(action.action, "refund_call")
        self.assertEqual(action.target_id, "call-1")

    def test_second_refund_is_rejected(self):
        """Balances change exactly once"""
        self.settle("call-1", "payer", "creator", 90, 10)
        self.ledger.refunds.refund("call-1", "test issue", "admin-1")

        second = self.ledger.refunds.refund("call-1", "test issue", "admin-1")

        self.assertFalse(second.success)
        self.assertEqual(second.block_code, ErrorCodes.ALREADY_REFUNDED)
        self.assertEqual(second.block_reason, ALREADY_REFUNDED)
        with self.assertRaises(AlreadyRefunded):
            raise_for_block(second)
        self.assertEqual((self.balance("payer"), self.balance("creator")), (100, 50))
        self.assertEqual(len([tx for tx in self.transactions("payer") if tx.source == REFUND]), 1)

    def test_clawback_skipped_when_creator_spent_coins(self):
        """Earner spent down to 10: payer refunded, clawback skipped"""
        self.settle("call-1", "payer", "creator", 90, 10)
        self.ledger.accounts.adjust_coins("creator", -55, "cash out", "admin-1")
        self.assertEqual(self.balance("creator"), 10)

        outcome = self.ledger.refunds.refund("call-1", "test issue", "admin-1")

        self.assertTrue(outcome.success)
        self.assertIsNone(outcome.creator_clawback)
        self.assertEqual((self.balance("payer"), self.balance("creator")), (100, 10))
        with self.SessionLocal() as db:
            record = db.query(Refund).filter_by(call_id="call-1").one()
        self.assertIsNone(record.earner_clawback_amount)
        self.assertIsNone(record.earner_balance_before)
        self.assertLedgerConsistent()

    def test_zero_coin_call_not_refundable(self):
        self.settle("call-0", "payer", "creator", 0, 10)

        outcome = self.ledger.refunds.refund("call-0", "test issue", "admin-1")

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.block_code, ErrorCodes.CALL_NOT_REFUNDABLE)
        self.assertEqual(outcome.block_reason, NO_COINS_DEDUCTED)
        with self.assertRaises(CallNotRefundable):
            raise_for_block(outcome)

    def test_unknown_call(self):
        with self.assertRaises(CallNotFound):
            self.ledger.refunds.refund("nope", "test issue", "admin-1")
        with self.assertRaises(CallNotFound):
            self.ledger.refunds.preview_refund("nope")

    def test_reason_required(self):
        self.settle("call-1", "payer", "creator", 90, 10)
        with self.assertRaises(InvalidInput):
            self.ledger.refunds.refund("call-1", "   ", "admin-1")
        self.assertEqual(self.balance("payer"), 85)

    def test_old_call_not_refundable(self):
        ended = datetime.now(timezone.utc) - timedelta(days=40)
        self.settle("call-old", "payer", "creator", 90, 10, ended_at=ended)

        preview = self.ledger.refunds.preview_refund("call-old")
        outcome = self.ledger.refunds.refund("call-old", "test issue", "admin-1")

        self.assertFalse(preview.can_refund)
        self.assertEqual(preview.block_reason, TOO_OLD)
        self.assertEqual(preview.call.age_days, 40)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.block_reason, TOO_OLD)
        self.assertEqual(self.balance("payer"), 85)

    def test_eligibility_order_already_refunded_before_age(self):
        """Rule 2 wins over rule 3"""
        ended = datetime.now(timezone.utc) - timedelta(days=2)
        self.settle("call-1", "payer", "creator", 90, 10, ended_at=ended)
        self.ledger.refunds.refund("call-1", "test issue", "admin-1")
        self.ledger.refunds.max_age_days = 1

        outcome = self.ledger.refunds.refund("call-1", "test issue", "admin-1")
        self.assertEqual(outcome.block_reason, ALREADY_REFUNDED)


class TestRefundWithoutAgeLimit(RefundTestCase):

    refund_max_age_days = 0

    def test_old_call_refundable_when_limit_disabled(self):
        ended = datetime.now(timezone.utc) - timedelta(days=400)
        self.settle("call-old", "payer", "creator", 90, 10, ended_at=ended)
        outcome = self.ledger.refunds.refund("call-old", "test issue", "admin-1")
        self.assertTrue(outcome.success)


class TestRefundPreview(RefundTestCase):

    def test_preview_reports_impact_without_mutating(self):
        self.settle("call-1", "payer", "creator", 90, 10)

        first = self.ledger.refunds.preview_refund("call-1")
        second = self.ledger.refunds.preview_refund("call-1")

        self.assertEqual(first, second)
        self.assertTrue(first.can_refund)
        self.assertIsNone(first.block_reason)
        self.assertEqual(first.call.coins_deducted, 15)
        self.assertEqual(first.call.duration_seconds, 90)
        self.assertEqual((first.user_impact.current_balance, first.user_impact.after_refund), (85, 100))
        self.assertEqual(first.creator_impact.clawback_amount, 15)
        self.assertEqual(first.creator_impact.after_clawback, 50)
        self.assertFalse(first.creator_impact.clawback_skipped)
        self.assertEqual((self.balance("payer"), self.balance("creator")), (85, 65))
        self.assertEqual(self.load_call("call-1").refund_status, "none")

    def test_preview_shows_skipped_clawback(self):
        self.settle("call-1", "payer", "creator", 90, 10)
        self.ledger.accounts.adjust_coins("creator", -55, "cash out", "admin-1")

        preview = self.ledger.refunds.preview_refund("call-1")

        self.assertTrue(preview.creator_impact.clawback_skipped)
        self.assertEqual(preview.creator_impact.after_clawback, 10)

    def test_preview_after_refund_is_blocked(self):
        self.settle("call-1", "payer", "creator", 90, 10)
        self.ledger.refunds.refund("call-1", "test issue", "admin-1")

        preview = self.ledger.refunds.preview_refund("call-1")

        self.assertFalse(preview.can_refund)
        self.assertEqual(preview.block_code, ErrorCodes.ALREADY_REFUNDED)
        self.assertIsNone(preview.user_impact)


class TestConcurrentRefunds(RefundTestCase):
    """Two simultaneous refunds of one call: exactly one wins"""

    def test_refund_race(self):
        self.settle("call-race", "payer", "creator", 90, 10)
        barrier = threading.Barrier(2)

        def attempt(admin_id):
            barrier.wait()
            return self.ledger.refunds.refund("call-race", "race test", admin_id)

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(attempt, ["admin-a", "admin-b"]))

        successes = [o for o in outcomes if o.success]
        rejected = [o for o in outcomes if not o.success]
        self.assertEqual(len(successes), 1)
        self.assertEqual(len(rejected), 1)
        self.assertEqual(rejected[0].block_code, ErrorCodes.ALREADY_REFUNDED)
        self.assertEqual((self.balance("payer"), self.balance("creator")), (100, 50))
        with self.SessionLocal() as db:
            self.assertEqual(db.query(Refund).count(), 1)
        self.assertLedgerConsistent()


class TestRefundRetryAfterLostCommit(RefundTestCase):
    """A retried request whose first commit landed reports its own refund"""

    def test_retry_returns_committed_refund(self):
        self.settle("call-1", "payer", "creator", 90, 10)
        real_commit = Session.commit
        failures = []

        def commit_then_drop_ack(session):
            real_commit(session)
            if not failures:
                failures.append(1)
                raise OperationalError("COMMIT", None, Exception("connection lost"))

        with mock.patch.object(Session, "commit", commit_then_drop_ack):
            outcome = self.ledger.refunds.refund("call-1", "test issue", "admin-1")

        self.assertEqual(failures, [1])
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.refunded_amount, 15)
        self.assertEqual((outcome.user_balance_before, outcome.user_balance_after), (85, 100))
        self.assertEqual(outcome.creator_clawback.balance_after, 50)
        self.assertEqual((self.balance("payer"), self.balance("creator")), (100, 50))
        self.assertEqual(len([tx for tx in self.transactions("payer") if tx.source == REFUND]), 1)
        with self.SessionLocal() as db:
            self.assertEqual(db.query(Refund).count(), 1)


if __name__ == "__main__":
    unittest.main()
