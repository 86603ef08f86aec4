from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TokenType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BONUS = "bonus"
    REFERRAL_COMMISSION = "referral_commission"
    CASHBACK = "cashback"
    RAFFLE_ENTRY = "raffle_entry"


class TokenStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ReferralStats(CamelModel):
    total_referrals: int = 0
    total_commissions: float = 0
    pending_commissions: float = 0
    approved_commissions: float = 0
    last_referral_date: Optional[datetime] = None


class User(CamelModel):
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    balance: float = 0
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    referral_processed_at: Optional[datetime] = None
    referral_stats: ReferralStats = Field(default_factory=ReferralStats)
    deposit_total: float = 0
    withdrawal_total: float = 0
    bonus_total: float = 0
    referral_commission_total: float = Field(default=0, alias="referral_commissionTotal")
    cashback_total: float = 0


class UnifiedToken(CamelModel):
    id: str
    user_id: str
    type: TokenType
    amount: float
    status: TokenStatus
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    admin_notes: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    expired_at: Optional[datetime] = None

    def can_transition(self) -> bool:
        return self.status == TokenStatus.PENDING

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class LegacyTransaction(CamelModel):
    """Pre-unified transaction record, read only for migration."""

    model_config = ConfigDict(extra="allow")

    id: str
    user_id: str
    type: str
    amount: float
    status: str
    created_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    migrated_to_token: Optional[str] = None
    migrated_at: Optional[datetime] = None
    migrated_by: Optional[str] = None


# Requests

class CreateTokenRequest(CamelModel):
    user_id: str
    type: TokenType
    amount: float = Field(..., gt=0)
    metadata: dict = Field(default_factory=dict)
    expires_in_days: Optional[int] = Field(default=None, gt=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "userId": "u_550e8400",
            "type": "deposit",
            "amount": 250.0,
            "metadata": {"paymentMethod": "papara"},
            "expiresInDays": 7
        }
    })


class UpdateTokenRequest(CamelModel):
    amount: Optional[float] = Field(default=None, gt=0)
    metadata: Optional[dict] = None
    expires_at: Optional[datetime] = None
    admin_notes: Optional[str] = None


class ApproveTokenRequest(CamelModel):
    admin_user_id: str
    notes: Optional[str] = None


class RejectTokenRequest(CamelModel):
    admin_user_id: str
    reason: str = Field(..., min_length=1, description="Reason shown to the user")


class MigrateTransactionRequest(CamelModel):
    admin_user_id: str


class DepositReferralRequest(CamelModel):
    user_id: str
    deposit_amount: float = Field(..., gt=0)
    referral_code: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, description="Deposit key to prevent duplicate commissions")


class ApproveCommissionRequest(CamelModel):
    admin_user_id: str


# Results

class ActionResult(CamelModel):
    success: bool = True
    error: Optional[str] = None
    code: Optional[str] = None


class TokenCreatedResult(ActionResult):
    token_id: Optional[str] = None


class TokenResult(ActionResult):
    token: Optional[UnifiedToken] = None


class TokenListResult(ActionResult):
    tokens: list[UnifiedToken] = Field(default_factory=list)


class CleanupResult(ActionResult):
    expired_count: int = 0


class TokenStatistics(CamelModel):
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    total_amounts: dict[str, float]


class StatisticsResult(ActionResult):
    stats: Optional[TokenStatistics] = None


class ReferralResult(ActionResult):
    commission_amount: Optional[float] = None
    token_id: Optional[str] = None


class ReferralStatsResult(ActionResult):
    stats: Optional[ReferralStats] = None


class ReferredUser(CamelModel):
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    referral_processed_at: Optional[datetime] = None
    total_deposits: float = 0


class ReferralChainResult(ActionResult):
    referred_users: list[ReferredUser] = Field(default_factory=list)


class CommissionOwner(CamelModel):
    email: Optional[str] = None
    display_name: Optional[str] = None


class PendingCommission(UnifiedToken):
    user: Optional[CommissionOwner] = None


class PendingCommissionsResult(ActionResult):
    commissions: list[PendingCommission] = Field(default_factory=list)


class ReferralAnalysis(CamelModel):
    recent_referrals: int
    total_commission_tokens: int
    total_commission_amount: float
    approved_commissions: int
    approval_rate: float
    average_commission_amount: float


class ReferralAnalysisResult(ActionResult):
    analysis: Optional[ReferralAnalysis] = None
