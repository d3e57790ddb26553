"""
Refund & clawback engine.

Eligibility (first failure wins):
  1. the call exists and coins were deducted for it
  2. it has not been refunded yet
  3. it is not older than REFUND_MAX_AGE_DAYS (when configured)

The execute path re-checks eligibility with a conditional status flip inside
the same transaction as the credits, so a stale preview can never produce a
second refund.
"""
import uuid
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple
from sqlalchemy import select, update

from common.error_handling import (
    AlreadyRefunded, CallNotFound, CallNotRefundable, ErrorCodes, InvalidInput,
)
from common.retry import retry_sync, LEDGER_RETRY_CONFIG
from common.schemas import LedgerEvent
from common.settings import settings
from common.tracing import ledger_tracer
from coin_ledger_service.audit import enqueue_event, record_admin_action
from coin_ledger_service.balance_projector import BalanceProjector, atomic
from coin_ledger_service.models import (
    Account, Call, Refund, CREDIT, DEBIT, REFUND, CLAWBACK,
    SETTLED, REFUND_NONE, REFUNDED, utcnow,
)
from coin_ledger_service.schemas import (
    CreatorClawback, CreatorImpact, RefundCallFacts, RefundOutcome, RefundPreview, UserImpact,
)

logger = logging.getLogger(__name__)

NO_COINS_DEDUCTED = "No coins were deducted for this call"
ALREADY_REFUNDED = "Call already refunded"
TOO_OLD = "Call too old to refund"

def raise_for_block(outcome: RefundOutcome):
    """Turn a blocked refund outcome into the matching API error."""
    if outcome.success:
        return
    context = {"call_id": outcome.call_id}
    if outcome.block_code == ErrorCodes.ALREADY_REFUNDED:
        raise AlreadyRefunded(outcome.block_reason, context=context)
    raise CallNotRefundable(outcome.block_reason, context=context)

class RefundEngine:

    def __init__(self, session_factory, projector: BalanceProjector, max_age_days: Optional[int] = None):
        self.session_factory = session_factory
        self.projector = projector
        self.max_age_days = settings.refund_max_age_days if max_age_days is None else max_age_days

    def _eligibility(self, call: Call, now: datetime) -> Tuple[Optional[str], Optional[str]]:
        # Calls parked for review never moved coins
        if call.coins_deducted <= 0 or call.settlement_status != SETTLED:
            return ErrorCodes.CALL_NOT_REFUNDABLE, NO_COINS_DEDUCTED
        if call.refund_status != REFUND_NONE:
            return ErrorCodes.ALREADY_REFUNDED, ALREADY_REFUNDED
        if self.max_age_days and now - call.created_at > timedelta(days=self.max_age_days):
            return ErrorCodes.CALL_NOT_REFUNDABLE, TOO_OLD
        return None, None

    def preview_refund(self, call_id: str) -> RefundPreview:
        now = utcnow()
        with self.session_factory() as db:
            call = db.get(Call, call_id)
            if call is None:
                raise CallNotFound(f"Call {call_id} not found", context={"call_id": call_id})
            code, reason = self._eligibility(call, now)
            preview = RefundPreview(
                call_id=call.call_id,
                can_refund=code is None,
                block_code=code,
                block_reason=reason,
                call=RefundCallFacts(
                    duration_seconds=call.duration_seconds,
                    coins_deducted=call.coins_deducted,
                    created_at=call.created_at,
                    age_days=(now - call.created_at).days,
                ),
            )
            if code is not None:
                return preview

            payer = db.get(Account, call.payer_account_id)
            earner = db.get(Account, call.earner_account_id)
            preview.user_impact = UserImpact(
                user_id=payer.id,
                username=payer.username,
                current_balance=payer.balance,
                after_refund=payer.balance + call.coins_deducted,
            )
            skipped = earner.balance < call.coins_earned
            preview.creator_impact = CreatorImpact(
                user_id=earner.id,
                username=earner.username,
                current_balance=earner.balance,
                clawback_amount=call.coins_earned,
                after_clawback=earner.balance if skipped else earner.balance - call.coins_earned,
                clawback_skipped=skipped,
            )
            return preview

    def refund(self, call_id: str, reason: str, admin_id: str) -> RefundOutcome:
        reason = (reason or "").strip()
        if not reason:
            raise InvalidInput("A reason is required to refund a call", field="reason")
        with ledger_tracer.start_span("call.refund") as span:
            span.add_tag("call.id", call_id)
            span.add_tag("admin.id", admin_id)
            # One token per request, so a retry can recognise its own committed refund
            attempt_id = str(uuid.uuid4())
            outcome = retry_sync(self._refund_once, LEDGER_RETRY_CONFIG, call_id, reason, admin_id, attempt_id)
            span.add_tag("refund.success", outcome.success)
            return outcome

    def _refund_once(self, call_id: str, reason: str, admin_id: str, attempt_id: str) -> RefundOutcome:
        now = utcnow()
        with atomic(self.session_factory, "refund_call") as db:
            stmt = (
                update(Call)
                .where(
                    Call.call_id == call_id,
                    Call.refund_status == REFUND_NONE,
                    Call.settlement_status == SETTLED,
                    Call.coins_deducted > 0,
                )
                .values(refund_status=REFUNDED)
            )
            if self.max_age_days:
                stmt = stmt.where(Call.created_at >= now - timedelta(days=self.max_age_days))
            flipped = db.execute(stmt.execution_options(synchronize_session=False)).rowcount

            call = db.get(Call, call_id)
            if call is None:
                raise CallNotFound(f"Call {call_id} not found", context={"call_id": call_id})
            if flipped == 0:
                done = db.execute(
                    select(Refund).where(Refund.call_id == call_id, Refund.attempt_id == attempt_id)
                ).scalar_one_or_none()
                if done is not None:
                    logger.info(f"Refund of call {call_id} already committed by this request")
                    return self._outcome(call, done)
                code, block_reason = self._eligibility(call, now)
                logger.info(f"Refund of call {call_id} blocked: {block_reason}")
                return RefundOutcome(call_id=call_id, success=False, block_code=code, block_reason=block_reason)

            amount = call.coins_deducted
            payer_before = self.projector.get_balance(db, call.payer_account_id)
            self.projector.post(
                db, call.payer_account_id, CREDIT, amount, REFUND,
                related_call_id=call_id, description=f"Refund: {reason}",
            )
            payer_after = self.projector.get_balance(db, call.payer_account_id)

            # Best effort: the payer is refunded even when the earner already spent the coins
            clawback = None
            earner_before = self.projector.get_balance(db, call.earner_account_id)
            if call.coins_earned > 0:
                tx = self.projector.try_post(
                    db, call.earner_account_id, DEBIT, call.coins_earned, CLAWBACK,
                    related_call_id=call_id, description=f"Clawback: {reason}",
                )
                if tx is not None:
                    clawback = CreatorClawback(
                        creator_user_id=call.earner_account_id,
                        amount=call.coins_earned,
                        balance_before=earner_before,
                        balance_after=self.projector.get_balance(db, call.earner_account_id),
                    )
                else:
                    logger.warning(
                        f"⚠️ Clawback of {call.coins_earned} skipped for {call.earner_account_id}: "
                        f"balance {earner_before}"
                    )

            record = Refund(
                call_id=call_id,
                attempt_id=attempt_id,
                amount_refunded=amount,
                payer_balance_before=payer_before,
                payer_balance_after=payer_after,
                earner_clawback_amount=clawback.amount if clawback else None,
                earner_balance_before=clawback.balance_before if clawback else None,
                earner_balance_after=clawback.balance_after if clawback else None,
                reason=reason,
                admin_id=admin_id,
            )
            db.add(record)
            details = {
                "amount_refunded": amount,
                "payer_account_id": call.payer_account_id,
                "earner_account_id": call.earner_account_id,
                "clawback_amount": clawback.amount if clawback else None,
            }
            record_admin_action(db, admin_id, "refund_call", "call", call_id, reason, details)
            enqueue_event(db, LedgerEvent(
                type="CallRefunded",
                account_id=call.payer_account_id,
                call_id=call_id,
                amount=amount,
                reason=reason,
                details=details,
            ))
            outcome = self._outcome(call, record)

        logger.info(f"💸 Refunded call {call_id}: {amount} coins to {call.payer_account_id}")
        return outcome

    def _outcome(self, call: Call, record: Refund) -> RefundOutcome:
        clawback = None
        if record.earner_clawback_amount is not None:
            clawback = CreatorClawback(
                creator_user_id=call.earner_account_id,
                amount=record.earner_clawback_amount,
                balance_before=record.earner_balance_before,
                balance_after=record.earner_balance_after,
            )
        return RefundOutcome(
            call_id=call.call_id,
            success=True,
            refunded_amount=record.amount_refunded,
            user_balance_before=record.payer_balance_before,
            user_balance_after=record.payer_balance_after,
            creator_clawback=clawback,
        )
