from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from coin_ledger_service.models import MAX_AMOUNT

class CamelModel(BaseModel):
    """Dashboard payloads are camelCase on the wire, snake_case in Python.

    to_camel turns "last_7d" into "last7D", so digit-suffixed fields set their alias by hand.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

# ── Requests ────────────────────────────────────────────────────────────

class ReasonRequest(CamelModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason is required")
        return v

class RefundRequest(ReasonRequest):
    pass

class AdjustCoinsRequest(ReasonRequest):
    amount: int = Field(ge=-MAX_AMOUNT, le=MAX_AMOUNT)

class RebuildRequest(ReasonRequest):
    account_id: Optional[str] = None

class CreateAccountRequest(CamelModel):
    account_id: str = Field(min_length=1, max_length=64)
    username: Optional[str] = None
    email: Optional[str] = None
    role: Literal["user", "creator", "admin"] = "user"

class CreditRequest(CamelModel):
    amount: int = Field(gt=0, le=MAX_AMOUNT)
    source: Literal["purchase", "bonus"] = "purchase"
    description: str = ""

# ── Ledger records ──────────────────────────────────────────────────────

class AccountRead(CamelModel):
    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    role: str
    balance: int
    is_disabled: bool = False
    created_at: datetime

class TransactionRead(CamelModel):
    id: int
    transaction_id: str
    account_id: str
    type: str
    amount: int
    source: str
    related_call_id: Optional[str] = None
    status: str
    description: str
    created_at: datetime

# ── Settlement / adjustments ────────────────────────────────────────────

class SettlementResult(CamelModel):
    call_id: str
    coins_deducted: int
    coins_earned: int
    platform_fee: int = 0
    settlement_status: str
    payer_balance_after: int
    earner_balance_after: int
    replayed: bool = False

class AdjustmentResult(CamelModel):
    transaction_id: str
    old_balance: int
    new_balance: int

# ── Refunds ─────────────────────────────────────────────────────────────

class RefundCallFacts(CamelModel):
    duration_seconds: int
    coins_deducted: int
    created_at: datetime
    age_days: int

class UserImpact(CamelModel):
    user_id: str
    username: Optional[str] = None
    current_balance: int
    after_refund: int

class CreatorImpact(CamelModel):
    user_id: str
    username: Optional[str] = None
    current_balance: int
    clawback_amount: int
    after_clawback: int
    clawback_skipped: bool

class RefundPreview(CamelModel):
    call_id: str
    can_refund: bool
    block_code: Optional[str] = None
    block_reason: Optional[str] = None
    call: RefundCallFacts
    user_impact: Optional[UserImpact] = None
    creator_impact: Optional[CreatorImpact] = None

class CreatorClawback(CamelModel):
    creator_user_id: str
    amount: int
    balance_before: int
    balance_after: int

class RefundOutcome(CamelModel):
    call_id: str
    success: bool
    block_code: Optional[str] = None
    block_reason: Optional[str] = None
    refunded_amount: int = 0
    user_balance_before: Optional[int] = None
    user_balance_after: Optional[int] = None
    creator_clawback: Optional[CreatorClawback] = None

# ── Reconciliation ──────────────────────────────────────────────────────

class AccountReconciliation(CamelModel):
    account_id: str
    total_credited: int
    total_debited: int
    expected_balance: int
    actual_balance: int
    discrepancy: int

class GlobalReconciliation(CamelModel):
    total_in_circulation: int
    all_time_minted: int
    all_time_minted_count: int
    all_time_burned: int
    all_time_burned_count: int
    drift: int
    sampled_accounts: int
    account_discrepancies: List[AccountReconciliation] = Field(default_factory=list)
    negative_balance_accounts: int = 0
    checked_at: datetime

    @property
    def healthy(self) -> bool:
        return self.drift == 0 and not self.account_discrepancies and self.negative_balance_accounts == 0

class BalanceCorrection(CamelModel):
    account_id: str
    old_balance: int
    new_balance: int

# ── Dashboard views ─────────────────────────────────────────────────────

class DailyFlow(CamelModel):
    date: str
    credited: int
    debited: int
    credit_count: int
    debit_count: int

class TopActor(CamelModel):
    user_id: str
    username: Optional[str] = None
    email: Optional[str] = None
    role: str
    total_spent: Optional[int] = None
    total_earned: Optional[int] = None
    tx_count: int

class TransactionUser(CamelModel):
    username: Optional[str] = None
    email: Optional[str] = None
    role: str

class LargeTransaction(TransactionRead):
    user: Optional[TransactionUser] = None

class CoinEconomy(CamelModel):
    total_in_circulation: int
    all_time_minted: int
    all_time_minted_count: int
    all_time_burned: int
    all_time_burned_count: int
    leak: int
    daily_flow: List[DailyFlow]
    top_spenders: List[TopActor]
    top_earners: List[TopActor]
    recent_large_transactions: List[LargeTransaction]
    failed_transactions: List[TransactionRead]

class LedgerCall(CamelModel):
    call_id: str
    other_account_id: str
    other_name: Optional[str] = None
    owner_role: Literal["payer", "earner"]
    duration_seconds: int
    coins_deducted: int
    coins_earned: int
    refund_status: str
    created_at: datetime

class UserLedger(CamelModel):
    user: AccountRead
    transactions: List[TransactionRead]
    calls: List[LedgerCall]
    summary: AccountReconciliation

class AdminCall(CamelModel):
    call_id: str
    owner_user_id: str
    owner_username: Optional[str] = None
    other_user_id: str
    other_name: Optional[str] = None
    duration_seconds: int
    duration_formatted: str
    coins_deducted: int
    coins_earned: int
    settlement_status: str
    created_at: datetime
    is_zero_duration: bool
    is_very_short: bool
    is_suspicious: bool
    is_refunded: bool

class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int

class CallPage(CamelModel):
    calls: List[AdminCall]
    pagination: Pagination

class CoinFlow(CamelModel):
    credited: int
    credit_count: int
    debited: int
    debit_count: int
    net: int

class SourceFlow(CamelModel):
    credited: int = 0
    debited: int = 0

class UserStats(CamelModel):
    total: int
    creators: int
    admins: int
    disabled: int
    recent_signups_7d: int = Field(alias="recentSignups7d")
    by_role: Dict[str, int]

class CoinStats(CamelModel):
    total_in_circulation: int
    today: CoinFlow
    last_7d: CoinFlow = Field(alias="last7d")
    last_30d: CoinFlow = Field(alias="last30d")
    by_source_30d: Dict[str, SourceFlow] = Field(alias="bySource30d")

class CallsToday(CamelModel):
    total_calls: int
    total_duration_sec: int
    total_coins_spent: int

class CallsWindow(CamelModel):
    total_calls: int
    total_duration_min: float
    avg_duration_sec: float
    total_coins_spent: int
    zero_duration_calls: int
    short_calls: int
    needs_review_calls: int
    refunded_calls: int
    revenue_per_minute: float

class CallStats(CamelModel):
    total_all_time: int
    today: CallsToday
    last_30d: CallsWindow = Field(alias="last30d")

class Overview(CamelModel):
    users: UserStats
    coins: CoinStats
    calls: CallStats
    generated_at: datetime

class AdminActionRead(CamelModel):
    id: int
    admin_id: str
    action: str
    target_type: str
    target_id: Optional[str] = None
    reason: str
    details: Dict[str, Any]
    created_at: datetime

class ActionLogPage(CamelModel):
    logs: List[AdminActionRead]
    pagination: Pagination

class ServiceStatus(CamelModel):
    status: str
    latency_ms: Optional[float] = None
    details: Optional[str] = None

class PlatformIntegrity(CamelModel):
    recent_transactions_5m: int = Field(alias="recentTransactions5m")
    recent_calls_1h: int = Field(alias="recentCalls1h")
    failed_transactions_1h: int = Field(alias="failedTransactions1h")
    negative_balance_users: int
    balance_discrepancies: str
    circulation_drift: int

class SystemHealth(CamelModel):
    services: Dict[str, ServiceStatus]
    platform: Optional[PlatformIntegrity] = None
    server_time: datetime
    uptime: float
