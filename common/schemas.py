from datetime import datetime, timezone
from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional

class LedgerEvent(BaseModel):
    type: Literal[
        "CallSettled",
        "CallSettlementFailed",
        "CallRefunded",
        "CoinsAdjusted",
        "CoinsCredited",
        "BalancesRebuilt",
        "ReconciliationDrift",
    ]
    account_id: Optional[str] = None
    call_id: Optional[str] = None
    amount: Optional[int] = None
    reason: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    trace_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class CallEnded(BaseModel):
    """Call-end notification from the calling service; input to settlement."""
    call_id: str = Field(min_length=1, max_length=64)
    payer_account_id: str = Field(min_length=1, max_length=64)
    earner_account_id: str = Field(min_length=1, max_length=64)
    # Stored in 32-bit INTEGER columns
    duration_seconds: int = Field(ge=0, le=2**31 - 1)
    price_per_minute: int = Field(ge=0, le=2**31 - 1)
    ended_at: Optional[datetime] = None
