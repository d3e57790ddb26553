"""
Call settlement: posts the economic effect of a finished call.

A call is settled at most once per call_id. The payer debit, earner credit and
optional platform fee line commit together or not at all.
"""
import logging
from datetime import timezone
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.error_handling import AccountNotFound, InsufficientFunds, InvalidInput
from common.retry import retry_sync, LEDGER_RETRY_CONFIG
from common.schemas import CallEnded, LedgerEvent
from common.settings import settings
from common.tracing import ledger_tracer
from coin_ledger_service.audit import enqueue_event
from coin_ledger_service.balance_projector import BalanceProjector, atomic
from coin_ledger_service.models import (
    Account, Call, CREDIT, DEBIT, CALL_SPEND, CALL_EARNING, PLATFORM_FEE,
    SETTLED, NEEDS_REVIEW, utcnow,
)
from coin_ledger_service.schemas import SettlementResult

logger = logging.getLogger(__name__)

def compute_coins_deducted(duration_seconds: int, price_per_minute: int) -> int:
    """ceil(duration / 60 * price), rounded in the platform's favour."""
    if duration_seconds < 0 or price_per_minute < 0:
        raise InvalidInput("Duration and price must be non-negative")
    return (duration_seconds * price_per_minute + 59) // 60

def compute_platform_fee(coins_deducted: int, fee_percent: int) -> int:
    # Floor, so the earner is never charged more than the configured share
    return coins_deducted * fee_percent // 100

def _call_time(call: CallEnded):
    if call.ended_at is None:
        return utcnow()
    if call.ended_at.tzinfo is not None:
        return call.ended_at.astimezone(timezone.utc).replace(tzinfo=None)
    return call.ended_at

class CallSettlement:

    def __init__(self, session_factory, projector: BalanceProjector, fee_percent: Optional[int] = None):
        self.session_factory = session_factory
        self.projector = projector
        self.fee_percent = settings.platform_fee_percent if fee_percent is None else fee_percent

    def settle(self, call: CallEnded) -> SettlementResult:
        with ledger_tracer.start_span("call.settle") as span:
            span.add_tag("call.id", call.call_id)
            if call.payer_account_id == call.earner_account_id:
                raise InvalidInput("Payer and earner must be different accounts", field="earner_account_id")
            try:
                result = retry_sync(self._settle_once, LEDGER_RETRY_CONFIG, call)
            except IntegrityError:
                # A concurrent settle of the same call_id inserted first
                logger.info(f"Call {call.call_id} settled concurrently, returning existing settlement")
                result = self._existing_result(call.call_id)
            except InsufficientFunds:
                self._flag_for_review(call)
                raise
            span.add_tag("coins.deducted", result.coins_deducted)
            span.add_tag("replayed", result.replayed)
            return result

    def _settle_once(self, call: CallEnded) -> SettlementResult:
        coins = compute_coins_deducted(call.duration_seconds, call.price_per_minute)
        fee = compute_platform_fee(coins, self.fee_percent)

        with atomic(self.session_factory, "settle_call") as db:
            existing = db.get(Call, call.call_id)
            if existing is not None and existing.settlement_status == SETTLED:
                return self._result(db, existing, replayed=True)

            self._require_accounts(db, call)

            if existing is None:
                row = Call(
                    call_id=call.call_id,
                    payer_account_id=call.payer_account_id,
                    earner_account_id=call.earner_account_id,
                    duration_seconds=call.duration_seconds,
                    price_per_minute=call.price_per_minute,
                    created_at=_call_time(call),
                )
                db.add(row)
                db.flush()
            else:
                # Retry of a call parked for review; only one retry may win.
                # The row takes the resent call facts, which the charge is computed from.
                flipped = db.execute(
                    update(Call)
                    .where(Call.call_id == call.call_id, Call.settlement_status == NEEDS_REVIEW)
                    .values(
                        settlement_status=SETTLED,
                        payer_account_id=call.payer_account_id,
                        earner_account_id=call.earner_account_id,
                        duration_seconds=call.duration_seconds,
                        price_per_minute=call.price_per_minute,
                        created_at=_call_time(call),
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if flipped == 0:
                    db.expire(existing)
                    return self._result(db, db.get(Call, call.call_id), replayed=True)
                row = existing
                db.refresh(row)

            if coins > 0:
                self.projector.post(
                    db, call.payer_account_id, DEBIT, coins, CALL_SPEND,
                    related_call_id=call.call_id,
                    description=f"Call {call.call_id} ({call.duration_seconds}s)",
                )
                self.projector.post(
                    db, call.earner_account_id, CREDIT, coins, CALL_EARNING,
                    related_call_id=call.call_id,
                    description=f"Call {call.call_id} ({call.duration_seconds}s)",
                )
                if fee > 0:
                    self.projector.post(
                        db, call.earner_account_id, DEBIT, fee, PLATFORM_FEE,
                        related_call_id=call.call_id,
                        description=f"Platform fee {self.fee_percent}%",
                    )

            row.coins_deducted = coins
            row.coins_earned = coins - fee
            row.platform_fee = fee
            row.settlement_status = SETTLED
            row.settled_at = utcnow()
            db.flush()

            enqueue_event(db, LedgerEvent(
                type="CallSettled",
                account_id=call.payer_account_id,
                call_id=call.call_id,
                amount=coins,
                details={"earner_account_id": call.earner_account_id, "coins_earned": coins - fee, "platform_fee": fee},
            ))
            result = self._result(db, row)

        logger.info(f"✅ Settled call {call.call_id}: {coins} coins {call.payer_account_id} -> {call.earner_account_id}")
        return result

    def _require_accounts(self, db: Session, call: CallEnded):
        found = set(db.execute(
            select(Account.id).where(Account.id.in_([call.payer_account_id, call.earner_account_id]))
        ).scalars())
        for account_id in (call.payer_account_id, call.earner_account_id):
            if account_id not in found:
                raise AccountNotFound(f"Account {account_id} not found", context={"account_id": account_id})

    def _result(self, db: Session, row: Call, replayed: bool = False) -> SettlementResult:
        return SettlementResult(
            call_id=row.call_id,
            coins_deducted=row.coins_deducted,
            coins_earned=row.coins_earned,
            platform_fee=row.platform_fee,
            settlement_status=row.settlement_status,
            payer_balance_after=self.projector.get_balance(db, row.payer_account_id),
            earner_balance_after=self.projector.get_balance(db, row.earner_account_id),
            replayed=replayed,
        )

    def _existing_result(self, call_id: str) -> SettlementResult:
        with atomic(self.session_factory, "load_settlement") as db:
            return self._result(db, db.get(Call, call_id), replayed=True)

    def _flag_for_review(self, call: CallEnded):
        """Park an unpayable call for admin review. Nothing is posted."""
        try:
            with atomic(self.session_factory, "flag_call") as db:
                if db.get(Call, call.call_id) is None:
                    db.add(Call(
                        call_id=call.call_id,
                        payer_account_id=call.payer_account_id,
                        earner_account_id=call.earner_account_id,
                        duration_seconds=call.duration_seconds,
                        price_per_minute=call.price_per_minute,
                        settlement_status=NEEDS_REVIEW,
                        created_at=_call_time(call),
                    ))
                enqueue_event(db, LedgerEvent(
                    type="CallSettlementFailed",
                    account_id=call.payer_account_id,
                    call_id=call.call_id,
                    amount=compute_coins_deducted(call.duration_seconds, call.price_per_minute),
                    reason="insufficient_funds",
                ))
        except IntegrityError:
            logger.info(f"Call {call.call_id} was recorded concurrently while flagging for review")
            return
        logger.warning(f"⚠️ Call {call.call_id} flagged for review: payer {call.payer_account_id} has insufficient funds")
