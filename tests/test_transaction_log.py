"""
Unit tests for the transaction log and the balance projector.
"""
import unittest

from sqlalchemy import update

from common.error_handling import AccountNotFound, InsufficientFunds, InvalidAmount, InvalidInput
from coin_ledger_service.balance_projector import atomic
from coin_ledger_service.models import Account, CREDIT, DEBIT, FAILED, PURCHASE, ADMIN_ADJUSTMENT
from coin_ledger_service.transaction_log import AccountHistory, TransactionLog
from ledger_fixtures import LedgerTestCase


class TestTransactionValidation(unittest.TestCase):
    """Amounts must be positive integers"""

    def setUp(self):
        self.log = TransactionLog()

    def test_rejects_non_positive_and_non_integer_amounts(self):
        for amount in (0, -5, 1.5, True, "10", None, 2**63, 2**70):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidAmount):
                    self.log.validate(CREDIT, amount, PURCHASE)

    def test_rejects_unknown_type_and_source(self):
        with self.assertRaises(InvalidInput):
            self.log.validate("transfer", 5, PURCHASE)
        with self.assertRaises(InvalidInput):
            self.log.validate(CREDIT, 5, "gift")

    def test_accepts_valid_entry(self):
        self.log.validate(DEBIT, 1, ADMIN_ADJUSTMENT)


class TestTransactionLog(LedgerTestCase):
    """Append-only log behaviour"""

    def test_append_assigns_increasing_sequence_ids(self):
        """Sequence ids grow with every append"""
        self.open_account("alice")
        with atomic(self.SessionLocal, "test") as db:
            first = self.ledger.log.append(db, "alice", CREDIT, 5, PURCHASE)
            second = self.ledger.log.append(db, "alice", DEBIT, 3, ADMIN_ADJUSTMENT)
        self.assertLess(first.id, second.id)
        self.assertNotEqual(first.transaction_id, second.transaction_id)

    def test_zero_amount_is_never_persisted(self):
        self.open_account("alice")
        with self.assertRaises(InvalidAmount):
            with atomic(self.SessionLocal, "test") as db:
                self.ledger.log.append(db, "alice", CREDIT, 0, PURCHASE)
        self.assertEqual(self.transactions("alice"), [])

    def test_history_is_ordered_and_restartable(self):
        """Iterating twice yields the same ordered entries across batches"""
        self.open_account("alice")
        for amount in range(1, 6):
            self.ledger.accounts.credit_account("alice", amount)

        with self.SessionLocal() as db:
            history = AccountHistory(db, "alice", batch_size=2)
            first_pass = [tx.amount for tx in history]
            second_pass = [tx.amount for tx in history]
            newest = [tx.amount for tx in AccountHistory(db, "alice", newest_first=True, batch_size=2)]

        self.assertEqual(first_pass, [1, 2, 3, 4, 5])
        self.assertEqual(second_pass, first_pass)
        self.assertEqual(newest, [5, 4, 3, 2, 1])

    def test_account_totals_ignore_failed_entries(self):
        self.open_account("alice", balance=20)
        with atomic(self.SessionLocal, "test") as db:
            self.ledger.log.append(db, "alice", DEBIT, 500, ADMIN_ADJUSTMENT, status=FAILED)
        with self.SessionLocal() as db:
            credited, debited = self.ledger.log.account_totals(db, "alice")
            totals = self.ledger.log.global_totals(db)
        self.assertEqual((credited, debited), (20, 0))
        self.assertEqual(totals["all_time_minted"], 20)
        self.assertEqual(totals["all_time_burned_count"], 0)


class TestBalanceProjector(LedgerTestCase):
    """Cached balance follows the log"""

    def test_post_updates_balance_with_log(self):
        self.open_account("alice")
        with atomic(self.SessionLocal, "test") as db:
            self.ledger.projector.post(db, "alice", CREDIT, 40, PURCHASE)
            self.ledger.projector.post(db, "alice", DEBIT, 15, ADMIN_ADJUSTMENT)
        self.assertEqual(self.balance("alice"), 25)
        self.assertEqual(len(self.transactions("alice")), 2)
        self.assertLedgerConsistent()

    def test_overdraft_posts_nothing(self):
        """A rejected debit leaves neither a log entry nor a balance change"""
        self.open_account("alice", balance=10)
        with self.assertRaises(InsufficientFunds):
            with atomic(self.SessionLocal, "test") as db:
                self.ledger.projector.post(db, "alice", DEBIT, 11, ADMIN_ADJUSTMENT)
        self.assertEqual(self.balance("alice"), 10)
        self.assertEqual(len(self.transactions("alice")), 1)

    def test_try_post_keeps_transaction_usable(self):
        self.open_account("alice", balance=10)
        self.open_account("bob")
        with atomic(self.SessionLocal, "test") as db:
            skipped = self.ledger.projector.try_post(db, "alice", DEBIT, 50, ADMIN_ADJUSTMENT)
            self.ledger.projector.post(db, "bob", CREDIT, 7, PURCHASE)
        self.assertIsNone(skipped)
        self.assertEqual(self.balance("alice"), 10)
        self.assertEqual(self.balance("bob"), 7)

    def test_failed_transaction_is_not_applied(self):
        self.open_account("alice", balance=10)
        with atomic(self.SessionLocal, "test") as db:
            tx = self.ledger.log.append(db, "alice", CREDIT, 99, PURCHASE, status=FAILED)
            self.ledger.projector.apply_transaction(db, tx)
        self.assertEqual(self.balance("alice"), 10)

    def test_unknown_account(self):
        with self.assertRaises(AccountNotFound):
            self.balance("ghost")
        with self.assertRaises(AccountNotFound):
            with atomic(self.SessionLocal, "test") as db:
                self.ledger.projector.post(db, "ghost", CREDIT, 5, PURCHASE)

    def test_rebuild_repairs_out_of_band_mutation(self):
        """Full replay restores a balance changed behind the log's back"""
        self.open_account("alice", balance=30)
        self.open_account("bob", balance=5)
        with atomic(self.SessionLocal, "tamper") as db:
            db.execute(update(Account).where(Account.id == "alice").values(balance=999))

        with atomic(self.SessionLocal, "rebuild") as db:
            corrections = self.ledger.projector.rebuild(db)

        self.assertEqual(len(corrections), 1)
        self.assertEqual(corrections[0].account_id, "alice")
        self.assertEqual((corrections[0].old_balance, corrections[0].new_balance), (999, 30))
        self.assertEqual(self.balance("alice"), 30)
        self.assertEqual(self.balance("bob"), 5)
        self.assertLedgerConsistent()

    def test_rebuild_of_consistent_ledger_changes_nothing(self):
        self.open_account("payer", balance=100)
        self.open_account("creator", balance=50, role="creator")
        self.settle("c1", "payer", "creator", 90, 10)
        self.ledger.refunds.refund("c1", "test issue", "admin-1")
        self.settle("c2", "payer", "creator", 45, 8)

        before = (self.balance("payer"), self.balance("creator"))
        with atomic(self.SessionLocal, "rebuild") as db:
            corrections = self.ledger.projector.rebuild(db)
        self.assertEqual(corrections, [])
        self.assertEqual((self.balance("payer"), self.balance("creator")), before)

    def test_rebuild_single_unknown_account(self):
        with self.assertRaises(AccountNotFound):
            with atomic(self.SessionLocal, "rebuild") as db:
                self.ledger.projector.rebuild(db, "ghost")


if __name__ == "__main__":
    unittest.main()
