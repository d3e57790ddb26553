"""
Unit tests for shared plumbing: tokens, retries and the atomic unit of work.
"""
import unittest

import jwt
from sqlalchemy import text

from common.error_handling import InsufficientFunds, SettlementFailed
from common.retry import RetryConfig, retry_sync
from common.security import ADMIN_AUDIENCE, INTERNAL_AUDIENCE, mint_admin_jwt, mint_internal_jwt, verify_token
from coin_ledger_service.balance_projector import atomic
from ledger_fixtures import LedgerTestCase


class TestTokens(unittest.TestCase):

    def test_admin_token_carries_subject(self):
        claims = verify_token(mint_admin_jwt("admin-42"), audience=ADMIN_AUDIENCE)
        self.assertEqual(claims["sub"], "admin-42")

    def test_audiences_are_not_interchangeable(self):
        with self.assertRaises(jwt.InvalidAudienceError):
            verify_token(mint_internal_jwt(), audience=ADMIN_AUDIENCE)
        with self.assertRaises(jwt.InvalidAudienceError):
            verify_token(mint_admin_jwt("admin-1"), audience=INTERNAL_AUDIENCE)


class TestRetry(unittest.TestCase):

    def setUp(self):
        self.config = RetryConfig(max_attempts=3, base_delay=0.001, retryable_exceptions=[SettlementFailed])

    def test_retries_settlement_failures(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise SettlementFailed("locked")
            return "ok"

        self.assertEqual(retry_sync(flaky, self.config), "ok")
        self.assertEqual(len(attempts), 3)

    def test_business_errors_are_not_retried(self):
        attempts = []

        def broke():
            attempts.append(1)
            raise InsufficientFunds("no coins")

        with self.assertRaises(InsufficientFunds):
            retry_sync(broke, self.config)
        self.assertEqual(len(attempts), 1)


class TestAtomic(LedgerTestCase):

    def test_database_errors_become_settlement_failed(self):
        with self.assertRaises(SettlementFailed) as ctx:
            with atomic(self.SessionLocal, "broken") as db:
                db.execute(text("SELECT * FROM no_such_table"))
        self.assertIsNotNone(ctx.exception.original_error)

    def test_rollback_on_business_error(self):
        self.open_account("alice", balance=10)
        with self.assertRaises(InsufficientFunds):
            with atomic(self.SessionLocal, "unit") as db:
                self.ledger.projector.post(db, "alice", "credit", 5, "bonus")
                self.ledger.projector.post(db, "alice", "debit", 100, "admin_adjustment")
        self.assertEqual(self.balance("alice"), 10)
        self.assertEqual(len(self.transactions("alice")), 1)


if __name__ == "__main__":
    unittest.main()
