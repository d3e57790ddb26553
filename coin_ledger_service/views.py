"""
Read models behind the admin dashboard: economy summary, per-user ledger,
call list, overview, system health and the admin action log.
"""
import math
import time
import logging
from datetime import timedelta
from typing import Dict, List, Optional
from sqlalchemy import select, func, case, or_
from sqlalchemy.exc import SQLAlchemyError

from common.error_handling import AccountNotFound
from common.settings import settings
from coin_ledger_service.models import (
    Account, AdminAction, Call, LedgerTransaction, Outbox,
    CREDIT, COMPLETED, FAILED, CALL_SPEND, CALL_EARNING, NEEDS_REVIEW, REFUNDED, utcnow,
)
from coin_ledger_service.reconciliation import ReconciliationChecker
from coin_ledger_service.schemas import (
    AccountRead, ActionLogPage, AdminActionRead, AdminCall, CallPage, CallStats, CallsToday,
    CallsWindow, CoinEconomy, CoinFlow, CoinStats, DailyFlow, LargeTransaction, LedgerCall,
    Overview, Pagination, PlatformIntegrity, ServiceStatus, SourceFlow, SystemHealth, TopActor,
    TransactionRead, TransactionUser, UserLedger, UserStats,
)
from coin_ledger_service.transaction_log import TransactionLog

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
TOP_ACTORS = 10
RECENT_ROWS = 20
LEDGER_CALLS = 200

def format_duration(seconds: int) -> str:
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}m {secs}s" if minutes else f"{secs}s"

def _pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit) if total else 0)

def _page_args(page: int, limit: int):
    return max(page, 1), min(max(limit, 1), MAX_PAGE_SIZE)

class LedgerViews:

    def __init__(self, session_factory, log: TransactionLog, checker: ReconciliationChecker,
                 started_at: Optional[float] = None):
        self.session_factory = session_factory
        self.log = log
        self.checker = checker
        self.started_at = started_at or time.time()
        self.large_threshold = settings.large_transaction_threshold
        self.short_call_seconds = settings.short_call_seconds

    def _names(self, db, account_ids) -> Dict[str, Optional[str]]:
        if not account_ids:
            return {}
        rows = db.execute(select(Account.id, Account.username).where(Account.id.in_(set(account_ids)))).all()
        return {acc_id: username for acc_id, username in rows}

    # ── Coin economy ──────────────────────────────────────────────────

    def coin_economy(self) -> CoinEconomy:
        now = utcnow()
        with self.session_factory() as db:
            circulation = select(func.coalesce(func.sum(Account.balance), 0)).scalar_subquery()
            row = db.execute(select(circulation, *self.log.mint_burn_columns())).one()
            total, minted, minted_count, burned, burned_count = (int(v) for v in row)

            return CoinEconomy(
                total_in_circulation=total,
                all_time_minted=minted,
                all_time_minted_count=minted_count,
                all_time_burned=burned,
                all_time_burned_count=burned_count,
                leak=total - (minted - burned),
                daily_flow=self._daily_flow(db, now - timedelta(days=30)),
                top_spenders=self._top_actors(db, CALL_SPEND),
                top_earners=self._top_actors(db, CALL_EARNING),
                recent_large_transactions=self._large_transactions(db),
                failed_transactions=[
                    TransactionRead.model_validate(tx)
                    for tx in db.execute(
                        select(LedgerTransaction)
                        .where(LedgerTransaction.status == FAILED)
                        .order_by(LedgerTransaction.id.desc())
                        .limit(RECENT_ROWS)
                    ).scalars()
                ],
            )

    def _daily_flow(self, db, since) -> List[DailyFlow]:
        day = func.date(LedgerTransaction.created_at)
        is_credit = LedgerTransaction.type == CREDIT
        rows = db.execute(
            select(
                day,
                func.sum(case((is_credit, LedgerTransaction.amount), else_=0)),
                func.sum(case((is_credit, 0), else_=LedgerTransaction.amount)),
                func.sum(case((is_credit, 1), else_=0)),
                func.sum(case((is_credit, 0), else_=1)),
            )
            .where(LedgerTransaction.status == COMPLETED, LedgerTransaction.created_at >= since)
            .group_by(day)
            .order_by(day)
        ).all()
        return [
            DailyFlow(date=str(d), credited=int(cr), debited=int(de), credit_count=int(crc), debit_count=int(dec))
            for d, cr, de, crc, dec in rows
        ]

    def _top_actors(self, db, source: str) -> List[TopActor]:
        total = func.sum(LedgerTransaction.amount).label("total")
        rows = db.execute(
            select(Account.id, Account.username, Account.email, Account.role, total, func.count(LedgerTransaction.id))
            .join(LedgerTransaction, LedgerTransaction.account_id == Account.id)
            .where(LedgerTransaction.source == source, LedgerTransaction.status == COMPLETED)
            .group_by(Account.id, Account.username, Account.email, Account.role)
            .order_by(total.desc())
            .limit(TOP_ACTORS)
        ).all()
        actors = []
        for acc_id, username, email, role, amount, count in rows:
            actor = TopActor(user_id=acc_id, username=username, email=email, role=role, tx_count=int(count))
            if source == CALL_SPEND:
                actor.total_spent = int(amount)
            else:
                actor.total_earned = int(amount)
            actors.append(actor)
        return actors

    def _large_transactions(self, db) -> List[LargeTransaction]:
        rows = db.execute(
            select(LedgerTransaction, Account)
            .outerjoin(Account, Account.id == LedgerTransaction.account_id)
            .where(LedgerTransaction.amount > self.large_threshold, LedgerTransaction.status == COMPLETED)
            .order_by(LedgerTransaction.id.desc())
            .limit(RECENT_ROWS)
        ).all()
        result = []
        for tx, acc in rows:
            item = LargeTransaction.model_validate(tx)
            if acc is not None:
                item.user = TransactionUser(username=acc.username, email=acc.email, role=acc.role)
            result.append(item)
        return result

    # ── Per-user ledger ───────────────────────────────────────────────

    def user_ledger(self, account_id: str) -> UserLedger:
        with self.session_factory() as db:
            acc = db.get(Account, account_id)
            if acc is None:
                raise AccountNotFound(f"Account {account_id} not found", context={"account_id": account_id})

            transactions = [
                TransactionRead.model_validate(tx)
                for tx in self.log.list_for_account(db, account_id, newest_first=True)
            ]
            calls = db.execute(
                select(Call)
                .where(or_(Call.payer_account_id == account_id, Call.earner_account_id == account_id))
                .order_by(Call.created_at.desc())
                .limit(LEDGER_CALLS)
            ).scalars().all()
            others = [c.earner_account_id if c.payer_account_id == account_id else c.payer_account_id for c in calls]
            names = self._names(db, others)

            ledger_calls = []
            for call, other in zip(calls, others):
                ledger_calls.append(LedgerCall(
                    call_id=call.call_id,
                    other_account_id=other,
                    other_name=names.get(other),
                    owner_role="payer" if call.payer_account_id == account_id else "earner",
                    duration_seconds=call.duration_seconds,
                    coins_deducted=call.coins_deducted,
                    coins_earned=call.coins_earned,
                    refund_status=call.refund_status,
                    created_at=call.created_at,
                ))

            return UserLedger(
                user=AccountRead.model_validate(acc),
                transactions=transactions,
                calls=ledger_calls,
                summary=self.checker.account_report(db, account_id),
            )

    # ── Calls ─────────────────────────────────────────────────────────

    def list_calls(self, page: int = 1, limit: int = 20, anomaly: bool = False) -> CallPage:
        page, limit = _page_args(page, limit)
        stmt = select(Call)
        count_stmt = select(func.count(Call.call_id))
        if anomaly:
            stmt = stmt.where(Call.duration_seconds < self.short_call_seconds)
            count_stmt = count_stmt.where(Call.duration_seconds < self.short_call_seconds)

        with self.session_factory() as db:
            total = db.execute(count_stmt).scalar_one()
            calls = db.execute(
                stmt.order_by(Call.created_at.desc(), Call.call_id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()
            names = self._names(db, [c.payer_account_id for c in calls] + [c.earner_account_id for c in calls])

        items = []
        for call in calls:
            zero = call.duration_seconds == 0
            very_short = 0 < call.duration_seconds < self.short_call_seconds
            items.append(AdminCall(
                call_id=call.call_id,
                owner_user_id=call.payer_account_id,
                owner_username=names.get(call.payer_account_id),
                other_user_id=call.earner_account_id,
                other_name=names.get(call.earner_account_id),
                duration_seconds=call.duration_seconds,
                duration_formatted=format_duration(call.duration_seconds),
                coins_deducted=call.coins_deducted,
                coins_earned=call.coins_earned,
                settlement_status=call.settlement_status,
                created_at=call.created_at,
                is_zero_duration=zero,
                is_very_short=very_short,
                is_suspicious=(zero or very_short) and call.coins_deducted > 0,
                is_refunded=call.refund_status == REFUNDED,
            ))
        return CallPage(calls=items, pagination=_pagination(page, limit, total))

    # ── Overview ──────────────────────────────────────────────────────

    def _flow(self, db, since) -> CoinFlow:
        is_credit = LedgerTransaction.type == CREDIT
        credited, credit_count, debited, debit_count = db.execute(
            select(
                func.coalesce(func.sum(case((is_credit, LedgerTransaction.amount), else_=0)), 0),
                func.coalesce(func.sum(case((is_credit, 1), else_=0)), 0),
                func.coalesce(func.sum(case((is_credit, 0), else_=LedgerTransaction.amount)), 0),
                func.coalesce(func.sum(case((is_credit, 0), else_=1)), 0),
            ).where(LedgerTransaction.status == COMPLETED, LedgerTransaction.created_at >= since)
        ).one()
        return CoinFlow(
            credited=int(credited), credit_count=int(credit_count),
            debited=int(debited), debit_count=int(debit_count),
            net=int(credited) - int(debited),
        )

    def overview(self) -> Overview:
        now = utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month_ago = now - timedelta(days=30)

        with self.session_factory() as db:
            by_role = {role: int(n) for role, n in db.execute(
                select(Account.role, func.count(Account.id)).group_by(Account.role)
            ).all()}
            disabled = db.execute(select(func.count(Account.id)).where(Account.is_disabled.is_(True))).scalar_one()
            signups = db.execute(
                select(func.count(Account.id)).where(Account.created_at >= now - timedelta(days=7))
            ).scalar_one()
            users = UserStats(
                total=sum(by_role.values()),
                creators=by_role.get("creator", 0),
                admins=by_role.get("admin", 0),
                disabled=int(disabled),
                recent_signups_7d=int(signups),
                by_role=by_role,
            )

            by_source: Dict[str, SourceFlow] = {}
            for source, type_, amount in db.execute(
                select(LedgerTransaction.source, LedgerTransaction.type, func.sum(LedgerTransaction.amount))
                .where(LedgerTransaction.status == COMPLETED, LedgerTransaction.created_at >= month_ago)
                .group_by(LedgerTransaction.source, LedgerTransaction.type)
            ).all():
                flow = by_source.setdefault(source, SourceFlow())
                if type_ == CREDIT:
                    flow.credited = int(amount)
                else:
                    flow.debited = int(amount)
            coins = CoinStats(
                total_in_circulation=int(db.execute(select(func.coalesce(func.sum(Account.balance), 0))).scalar_one()),
                today=self._flow(db, today),
                last_7d=self._flow(db, now - timedelta(days=7)),
                last_30d=self._flow(db, month_ago),
                by_source_30d=by_source,
            )

            total_calls = db.execute(select(func.count(Call.call_id))).scalar_one()
            today_count, today_duration, today_coins = db.execute(
                select(
                    func.count(Call.call_id),
                    func.coalesce(func.sum(Call.duration_seconds), 0),
                    func.coalesce(func.sum(Call.coins_deducted), 0),
                ).where(Call.created_at >= today)
            ).one()
            count, duration, spent, zero, short, review, refunded = db.execute(
                select(
                    func.count(Call.call_id),
                    func.coalesce(func.sum(Call.duration_seconds), 0),
                    func.coalesce(func.sum(Call.coins_deducted), 0),
                    func.coalesce(func.sum(case((Call.duration_seconds == 0, 1), else_=0)), 0),
                    func.coalesce(func.sum(case(
                        ((Call.duration_seconds > 0) & (Call.duration_seconds < self.short_call_seconds), 1),
                        else_=0,
                    )), 0),
                    func.coalesce(func.sum(case((Call.settlement_status == NEEDS_REVIEW, 1), else_=0)), 0),
                    func.coalesce(func.sum(case((Call.refund_status == REFUNDED, 1), else_=0)), 0),
                ).where(Call.created_at >= month_ago)
            ).one()

        count, duration, spent = int(count), int(duration), int(spent)
        calls = CallStats(
            total_all_time=int(total_calls),
            today=CallsToday(
                total_calls=int(today_count),
                total_duration_sec=int(today_duration),
                total_coins_spent=int(today_coins),
            ),
            last_30d=CallsWindow(
                total_calls=count,
                total_duration_min=round(duration / 60, 1),
                avg_duration_sec=round(duration / count, 1) if count else 0.0,
                total_coins_spent=spent,
                zero_duration_calls=int(zero),
                short_calls=int(short),
                needs_review_calls=int(review),
                refunded_calls=int(refunded),
                revenue_per_minute=round(spent / (duration / 60), 2) if duration else 0.0,
            ),
        )
        return Overview(users=users, coins=coins, calls=calls, generated_at=now)

    # ── System health ─────────────────────────────────────────────────

    def system_health(self) -> SystemHealth:
        now = utcnow()
        services: Dict[str, ServiceStatus] = {}
        platform = None

        start = time.time()
        try:
            with self.session_factory() as db:
                db.execute(select(1))
                services["database"] = ServiceStatus(status="healthy", latency_ms=round((time.time() - start) * 1000, 2))

                pending, failed_events = db.execute(
                    select(
                        func.coalesce(func.sum(case((Outbox.status == "new", 1), else_=0)), 0),
                        func.coalesce(func.sum(case((Outbox.status == "failed", 1), else_=0)), 0),
                    )
                ).one()
                services["outbox"] = ServiceStatus(
                    status="healthy" if not failed_events else "degraded",
                    details=f"{int(pending)} pending, {int(failed_events)} failed",
                )

                recent_tx = db.execute(
                    select(func.count(LedgerTransaction.id))
                    .where(LedgerTransaction.created_at >= now - timedelta(minutes=5))
                ).scalar_one()
                recent_calls = db.execute(
                    select(func.count(Call.call_id)).where(Call.created_at >= now - timedelta(hours=1))
                ).scalar_one()
                failed_tx = db.execute(
                    select(func.count(LedgerTransaction.id))
                    .where(LedgerTransaction.status == FAILED, LedgerTransaction.created_at >= now - timedelta(hours=1))
                ).scalar_one()

            report = self.checker.check_global()
            platform = PlatformIntegrity(
                recent_transactions_5m=int(recent_tx),
                recent_calls_1h=int(recent_calls),
                failed_transactions_1h=int(failed_tx),
                negative_balance_users=report.negative_balance_accounts,
                balance_discrepancies=f"{len(report.account_discrepancies)}/{report.sampled_accounts}",
                circulation_drift=report.drift,
            )
        except SQLAlchemyError as e:
            logger.error(f"❌ Health check database failure: {e}")
            services["database"] = ServiceStatus(status="unhealthy", details=str(e))

        return SystemHealth(
            services=services,
            platform=platform,
            server_time=now,
            uptime=round(time.time() - self.started_at, 1),
        )

    # ── Admin action log ──────────────────────────────────────────────

    def action_log(self, page: int = 1, limit: int = 20) -> ActionLogPage:
        page, limit = _page_args(page, limit)
        with self.session_factory() as db:
            total = db.execute(select(func.count(AdminAction.id))).scalar_one()
            rows = db.execute(
                select(AdminAction).order_by(AdminAction.id.desc()).offset((page - 1) * limit).limit(limit)
            ).scalars().all()
        return ActionLogPage(
            logs=[AdminActionRead.model_validate(r) for r in rows],
            pagination=_pagination(page, limit, total),
        )
