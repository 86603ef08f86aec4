"""
Unified Token Ledger for a referral-driven lottery platform

This package provides:
- A unified token ledger for deposits, withdrawals, bonuses, referral
  commissions, cashback and raffle entries
- Admin approval workflow: pending → approved / rejected / expired
- Balance changes applied atomically with approvals
- Referral commissions with idempotent deposit processing
- Page cache revalidation after every write
"""

from .models import (
    TokenType,
    TokenStatus,
    UnifiedToken,
    ReferralStats,
    User,
)
from .referrals import ReferralService
from .storage import InMemoryStorage
from .tokens import TokenService

__all__ = [
    "TokenType",
    "TokenStatus",
    "UnifiedToken",
    "ReferralStats",
    "User",
    "InMemoryStorage",
    "TokenService",
    "ReferralService",
]
