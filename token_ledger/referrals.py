from datetime import timedelta
from typing import Optional

from loguru import logger

from .models import (
    ActionResult,
    CommissionOwner,
    PendingCommission,
    PendingCommissionsResult,
    ReferralAnalysis,
    ReferralAnalysisResult,
    ReferralChainResult,
    ReferralResult,
    ReferralStatsResult,
    ReferredUser,
    TokenListResult,
    TokenStatus,
    TokenType,
)
from .service import (
    TOKENS,
    USERS,
    BaseLedgerService,
    InvalidInputError,
    InvalidStateTransitionError,
    UserNotFoundError,
    action,
    to_token,
    to_user,
    utcnow,
)
from .storage import Increment, Transaction

REFERRAL_PAGES = ("/admin/referrals", "/dashboard/referrals")


class ReferralService(BaseLedgerService):
    """Referral commissions on top of the unified token ledger."""

    @action("Referral işlemi başarısız", ReferralResult)
    def process_deposit_referral(
        self,
        user_id: str,
        deposit_amount: float,
        referral_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ReferralResult:
        """Credit a pending commission to the owner of ``referral_code``.

        The commission is a fixed share of the deposit and stays pending until
        an admin approves it. Passing the deposit's idempotency key makes
        repeated calls for the same deposit return the first commission.
        """
        if not referral_code:
            return ReferralResult()
        if deposit_amount is None or deposit_amount <= 0:
            raise InvalidInputError("Geçersiz tutar")

        referrers = self.storage.query(USERS, [("referralCode", "==", referral_code)], limit=1)
        if not referrers:
            raise InvalidInputError("Geçersiz referral kodu")
        referrer_id = referrers[0].id
        if referrer_id == user_id:
            raise InvalidInputError("Kendi referral kodunuzu kullanamazsınız")

        rate = self.settings.referral_commission_rate
        commission = round(deposit_amount * rate, 2)
        if commission <= 0:
            logger.info("Deposit {} from user {} too small for a commission", deposit_amount, user_id)
            return ReferralResult()
        token_id = f"referral-{idempotency_key}" if idempotency_key else self.storage.new_id(TOKENS)

        def apply(txn: Transaction) -> tuple[float, bool]:
            if idempotency_key:
                existing = txn.get(TOKENS, token_id)
                if existing is not None:
                    return existing.get("amount"), False

            user = txn.get(USERS, user_id)
            if user is None:
                raise UserNotFoundError("Kullanıcı bulunamadı")
            referred_by = user.get("referredBy")
            if referred_by and referred_by != referrer_id:
                raise InvalidStateTransitionError("Kullanıcı başka bir referrer'a bağlı")
            first_referral = not referred_by

            now = utcnow()
            metadata = {
                "referredUserId": user_id,
                "originalDepositAmount": deposit_amount,
                "commissionRate": rate,
                "source": "deposit_referral",
            }
            if idempotency_key:
                metadata["depositKey"] = idempotency_key

            txn.create(TOKENS, token_id, {
                "userId": referrer_id,
                "type": TokenType.REFERRAL_COMMISSION.value,
                "amount": commission,
                "status": TokenStatus.PENDING.value,
                "metadata": metadata,
                "createdAt": now,
                "expiresAt": now + timedelta(days=self.settings.referral_token_expiry_days),
            })

            referrer_updates = {
                "referralStats.totalCommissions": Increment(commission),
                "referralStats.pendingCommissions": Increment(commission),
                "referralStats.lastReferralDate": now,
            }
            if first_referral:
                referrer_updates["referralStats.totalReferrals"] = Increment(1)
            txn.update(USERS, referrer_id, referrer_updates)

            if first_referral:
                txn.update(USERS, user_id, {
                    "referredBy": referrer_id,
                    "referralProcessedAt": now,
                })
            return commission, True

        amount, created = self.storage.run_transaction(apply)
        if not created:
            logger.info("Referral for deposit {} already processed as {}", idempotency_key, token_id)
            return ReferralResult(commission_amount=amount, token_id=token_id)

        logger.info(
            "Referral commission {} ({}) for referrer {} from user {}",
            token_id, amount, referrer_id, user_id,
        )
        self.cache.revalidate_path("/dashboard/referrals")
        return ReferralResult(commission_amount=amount, token_id=token_id)

    @action("Referral istatistikleri alınamadı", ReferralStatsResult)
    def get_user_referral_stats(self, user_id: str) -> ReferralStatsResult:
        user = self.storage.get(USERS, user_id)
        if user is None:
            raise UserNotFoundError("Kullanıcı bulunamadı")
        return ReferralStatsResult(stats=to_user(user).referral_stats)

    @action("Komisyon tokenları alınamadı", TokenListResult)
    def get_user_referral_commission_tokens(self, user_id: str) -> TokenListResult:
        docs = self.storage.query(
            TOKENS,
            [("userId", "==", user_id), ("type", "==", TokenType.REFERRAL_COMMISSION.value)],
            order_by="createdAt",
            descending=True,
            limit=self.settings.default_list_limit,
        )
        return TokenListResult(tokens=[to_token(d) for d in docs])

    @action("Komisyon onaylanamadı")
    def approve_referral_commission(self, token_id: str, admin_user_id: str) -> ActionResult:
        self._approve(token_id, admin_user_id, expected_type=TokenType.REFERRAL_COMMISSION)
        self.cache.revalidate_path(*REFERRAL_PAGES)
        return ActionResult()

    @action("Referral zinciri alınamadı", ReferralChainResult)
    def get_user_referral_chain(self, user_id: str) -> ReferralChainResult:
        docs = self.storage.query(
            USERS,
            [("referredBy", "==", user_id)],
            order_by="referralProcessedAt",
            descending=True,
            limit=self.settings.admin_list_limit,
        )
        referred = [
            ReferredUser(
                id=u.id,
                email=u.email,
                display_name=u.display_name,
                referral_processed_at=u.referral_processed_at,
                total_deposits=u.deposit_total,
            )
            for u in map(to_user, docs)
        ]
        return ReferralChainResult(referred_users=referred)

    @action("Bekleyen komisyonlar alınamadı", PendingCommissionsResult)
    def get_pending_referral_commissions(self) -> PendingCommissionsResult:
        docs = self.storage.query(
            TOKENS,
            [
                ("type", "==", TokenType.REFERRAL_COMMISSION.value),
                ("status", "==", TokenStatus.PENDING.value),
            ],
            order_by="createdAt",
            descending=True,
            limit=self.settings.admin_list_limit,
        )

        commissions = []
        for doc in docs:
            owner = self.storage.get(USERS, doc.get("userId"))
            commissions.append(PendingCommission.model_validate({
                "id": doc.id,
                **doc.data,
                "user": CommissionOwner(
                    email=owner.get("email"),
                    display_name=owner.get("displayName"),
                ) if owner else None,
            }))
        return PendingCommissionsResult(commissions=commissions)

    @action("Analiz yapılamadı", ReferralAnalysisResult)
    def analyze_referral_performance(self, user_id: str) -> ReferralAnalysisResult:
        since = utcnow() - timedelta(days=self.settings.referral_analysis_days)
        recent = self.storage.query(
            USERS,
            [("referredBy", "==", user_id), ("referralProcessedAt", ">=", since)],
        )

        commissions = self.storage.query(
            TOKENS,
            [("userId", "==", user_id), ("type", "==", TokenType.REFERRAL_COMMISSION.value)],
        )
        total_tokens = len(commissions)
        total_amount = sum(d.get("amount") or 0 for d in commissions)
        approved = sum(1 for d in commissions if d.get("status") == TokenStatus.APPROVED.value)

        analysis = ReferralAnalysis(
            recent_referrals=len(recent),
            total_commission_tokens=total_tokens,
            total_commission_amount=total_amount,
            approved_commissions=approved,
            approval_rate=(approved / total_tokens) * 100 if total_tokens else 0,
            average_commission_amount=total_amount / total_tokens if total_tokens else 0,
        )
        return ReferralAnalysisResult(analysis=analysis)
