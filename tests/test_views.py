"""
Tests for the dashboard read models.
"""
import unittest

from common.error_handling import AccountNotFound
from coin_ledger_service.views import format_duration
from ledger_fixtures import LedgerTestCase


class TestFormatting(unittest.TestCase):

    def test_format_duration(self):
        self.assertEqual(format_duration(0), "0s")
        self.assertEqual(format_duration(45), "45s")
        self.assertEqual(format_duration(90), "1m 30s")


class TestLedgerViews(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.open_account("payer", balance=100)
        self.open_account("creator", balance=50, role="creator")
        self.settle("call-long", "payer", "creator", 90, 10)
        self.settle("call-zero", "payer", "creator", 0, 10)
        self.settle("call-short", "payer", "creator", 5, 60)

    def test_call_flags(self):
        page = self.ledger.views.list_calls()
        calls = {c.call_id: c for c in page.calls}

        self.assertEqual(page.pagination.total, 3)
        self.assertTrue(calls["call-zero"].is_zero_duration)
        self.assertFalse(calls["call-zero"].is_suspicious)
        self.assertTrue(calls["call-short"].is_very_short)
        self.assertTrue(calls["call-short"].is_suspicious)
        self.assertEqual(calls["call-short"].coins_deducted, 5)
        self.assertFalse(calls["call-long"].is_very_short)
        self.assertEqual(calls["call-long"].duration_formatted, "1m 30s")
        self.assertEqual(calls["call-long"].owner_username, "payer")

    def test_anomaly_filter_and_pagination(self):
        anomalies = self.ledger.views.list_calls(anomaly=True)
        self.assertEqual({c.call_id for c in anomalies.calls}, {"call-zero", "call-short"})

        first = self.ledger.views.list_calls(page=1, limit=2)
        second = self.ledger.views.list_calls(page=2, limit=2)
        self.assertEqual(len(first.calls), 2)
        self.assertEqual(len(second.calls), 1)
        self.assertEqual(first.pagination.total_pages, 2)

    def test_refunded_flag(self):
        self.ledger.refunds.refund("call-long", "test issue", "admin-1")
        calls = {c.call_id: c for c in self.ledger.views.list_calls().calls}
        self.assertTrue(calls["call-long"].is_refunded)

    def test_user_ledger(self):
        ledger = self.ledger.views.user_ledger("creator")

        self.assertEqual(ledger.user.id, "creator")
        self.assertEqual(ledger.summary.discrepancy, 0)
        self.assertEqual(ledger.summary.actual_balance, 70)
        self.assertEqual(len(ledger.calls), 3)
        self.assertTrue(all(c.owner_role == "earner" for c in ledger.calls))
        self.assertEqual(ledger.calls[0].other_account_id, "payer")
        ids = [tx.id for tx in ledger.transactions]
        self.assertEqual(ids, sorted(ids, reverse=True))

        with self.assertRaises(AccountNotFound):
            self.ledger.views.user_ledger("ghost")

    def test_coin_economy(self):
        economy = self.ledger.views.coin_economy()

        self.assertEqual(economy.total_in_circulation, 150)
        self.assertEqual(economy.leak, 0)
        self.assertEqual(economy.all_time_minted, 170)
        self.assertEqual(economy.all_time_burned, 20)
        self.assertEqual(economy.top_spenders[0].user_id, "payer")
        self.assertEqual(economy.top_spenders[0].total_spent, 20)
        self.assertEqual(economy.top_earners[0].total_earned, 20)
        self.assertEqual([tx.amount for tx in economy.recent_large_transactions], [100])
        self.assertEqual(len(economy.daily_flow), 1)
        self.assertEqual(economy.daily_flow[0].credited, 170)

    def test_overview(self):
        overview = self.ledger.views.overview()

        self.assertEqual(overview.users.total, 2)
        self.assertEqual(overview.users.creators, 1)
        self.assertEqual(overview.coins.total_in_circulation, 150)
        self.assertEqual(overview.coins.today.debited, 20)
        self.assertEqual(overview.coins.by_source_30d["call_spend"].debited, 20)
        self.assertEqual(overview.calls.total_all_time, 3)
        self.assertEqual(overview.calls.last_30d.zero_duration_calls, 1)
        self.assertEqual(overview.calls.last_30d.short_calls, 1)

        wire = overview.model_dump(by_alias=True)
        self.assertIn("last7d", wire["coins"])
        self.assertIn("bySource30d", wire["coins"])

    def test_system_health(self):
        health = self.ledger.views.system_health()

        self.assertEqual(health.services["database"].status, "healthy")
        self.assertEqual(health.platform.negative_balance_users, 0)
        self.assertEqual(health.platform.balance_discrepancies, "0/2")
        self.assertEqual(health.platform.recent_calls_1h, 3)

    def test_action_log(self):
        self.ledger.accounts.adjust_coins("payer", 5, "goodwill", "admin-1")
        self.ledger.refunds.refund("call-long", "test issue", "admin-2")

        page = self.ledger.views.action_log(limit=1)

        self.assertEqual(page.pagination.total, 2)
        self.assertEqual(page.logs[0].action, "refund_call")
        self.assertEqual(page.logs[0].admin_id, "admin-2")


if __name__ == "__main__":
    unittest.main()
