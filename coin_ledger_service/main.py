"""
Coin Ledger Service

Admin dashboard API (/admin/*) plus the internal endpoints the calling and
payments services use to open accounts, mint coins and settle calls.
"""
import logging
from typing import Optional
import jwt
from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel

from common.error_handling import InvalidInput, add_error_handlers
from common.schemas import CallEnded
from common.security import verify_token, ADMIN_AUDIENCE, INTERNAL_AUDIENCE
from common.settings import settings
from common.tracing import ledger_tracer, tracing_middleware
from coin_ledger_service.db import SessionLocal, engine
from coin_ledger_service.engine import CoinLedger
from coin_ledger_service.models import Base
from coin_ledger_service.refunds import raise_for_block
from coin_ledger_service.schemas import (
    AdjustCoinsRequest, CreateAccountRequest, CreditRequest, RebuildRequest, RefundRequest,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Coin Ledger Service", version="1.0.0")
add_error_handlers(app)
Base.metadata.create_all(bind=engine)

ledger = CoinLedger(SessionLocal)

logger.info("🚀 Coin ledger service starting...")

# Add tracing middleware
@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, ledger_tracer)

def get_ledger() -> CoinLedger:
    return ledger

def _bearer_claims(authorization: Optional[str], audience: str) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        return verify_token(token, audience=audience)
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid token: {e}")

def admin_auth(authorization: Optional[str] = Header(None)) -> str:
    """Admin session token; the subject is the acting admin's id."""
    claims = _bearer_claims(authorization, ADMIN_AUDIENCE)
    if not claims.get("sub"):
        raise HTTPException(401, "admin token has no subject")
    return claims["sub"]

# Down-scoped token for service-to-service calls
def internal_auth(authorization: Optional[str] = Header(None)):
    _bearer_claims(authorization, INTERNAL_AUDIENCE)

def ok(data):
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    return {"success": True, "data": data}

def _require_reason(reason: str):
    if len(reason) < settings.min_reason_length:
        raise InvalidInput(
            f"Reason must be at least {settings.min_reason_length} characters",
            field="reason",
        )

# ── Admin: coins & overview ─────────────────────────────────────────────

@app.get("/admin/coins")
def coin_economy(admin_id: str = Depends(admin_auth), ledger: CoinLedger = Depends(get_ledger)):
    return ok(ledger.views.coin_economy())

@app.get("/admin/overview")
def overview(admin_id: str = Depends(admin_auth), ledger: CoinLedger = Depends(get_ledger)):
    return ok(ledger.views.overview())

# ── Admin: calls & refunds ──────────────────────────────────────────────

@app.get("/admin/calls")
def list_calls(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    anomaly: bool = False,
    admin_id: str = Depends(admin_auth),
    ledger: CoinLedger = Depends(get_ledger),
):
    return ok(ledger.views.list_calls(page=page, limit=limit, anomaly=anomaly))

@app.get("/admin/calls/{call_id}/refund-preview")
def refund_preview(call_id: str, admin_id: str = Depends(admin_auth), ledger: CoinLedger = Depends(get_ledger)):
    return ok(ledger.refunds.preview_refund(call_id))

@app.post("/admin/calls/{call_id}/refund")
def refund_call(call_id: str, body: RefundRequest, admin_id: str = Depends(admin_auth),
                ledger: CoinLedger = Depends(get_ledger)):
    _require_reason(body.reason)
    outcome = ledger.refunds.refund(call_id, body.reason, admin_id)
    raise_for_block(outcome)
    return ok(outcome)

# ── Admin: users ────────────────────────────────────────────────────────

@app.post("/admin/users/{user_id}/adjust-coins")
def adjust_coins(user_id: str, body: AdjustCoinsRequest, admin_id: str = Depends(admin_auth),
                 ledger: CoinLedger = Depends(get_ledger)):
    _require_reason(body.reason)
    return ok(ledger.accounts.adjust_coins(user_id, body.amount, body.reason, admin_id))

@app.get("/admin/users/{user_id}/ledger")
def user_ledger(user_id: str, admin_id: str = Depends(admin_auth), ledger: CoinLedger = Depends(get_ledger)):
    return ok(ledger.views.user_ledger(user_id))

# ── Admin: system ───────────────────────────────────────────────────────

@app.get("/admin/system/health")
def system_health(admin_id: str = Depends(admin_auth), ledger: CoinLedger = Depends(get_ledger)):
    return ok(ledger.views.system_health())

@app.get("/admin/system/reconciliation")
def reconciliation(sample_size: Optional[int] = Query(None, ge=0, le=1000), admin_id: str = Depends(admin_auth),
                   ledger: CoinLedger = Depends(get_ledger)):
    report = ledger.checker.check_global(sample_size)
    data = report.model_dump(mode="json", by_alias=True)
    data["healthy"] = report.healthy
    return ok(data)

@app.post("/admin/system/rebuild-balances")
def rebuild_balances(body: RebuildRequest, admin_id: str = Depends(admin_auth),
                     ledger: CoinLedger = Depends(get_ledger)):
    _require_reason(body.reason)
    corrections = ledger.rebuild_balances(admin_id, body.reason, account_id=body.account_id)
    return ok({
        "corrections": [c.model_dump(mode="json", by_alias=True) for c in corrections],
        "correctedAccounts": len(corrections),
    })

@app.get("/admin/actions/log")
def action_log(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin_id: str = Depends(admin_auth),
    ledger: CoinLedger = Depends(get_ledger),
):
    return ok(ledger.views.action_log(page=page, limit=limit))

# ── Internal ────────────────────────────────────────────────────────────

@app.post("/accounts", status_code=201, dependencies=[Depends(internal_auth)])
def create_account(body: CreateAccountRequest, ledger: CoinLedger = Depends(get_ledger)):
    return ok(ledger.accounts.create_account(body.account_id, body.username, body.email, body.role))

@app.post("/accounts/{account_id}/credit", dependencies=[Depends(internal_auth)])
def credit_account(account_id: str, body: CreditRequest, ledger: CoinLedger = Depends(get_ledger)):
    tx = ledger.accounts.credit_account(account_id, body.amount, body.source, body.description)
    return ok({
        "transaction": tx.model_dump(mode="json", by_alias=True),
        "balance": ledger.get_balance(account_id),
    })

@app.post("/calls/settle", dependencies=[Depends(internal_auth)])
def settle_call(call: CallEnded, ledger: CoinLedger = Depends(get_ledger)):
    """Call-ended hook. Safe to retry with the same call_id."""
    return ok(ledger.settlement.settle(call))

@app.get("/health")
def health():
    return {"ok": True, "service": "coin-ledger"}
