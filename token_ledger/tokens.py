from datetime import timedelta
from typing import Optional

from loguru import logger
from pydantic import ValidationError

from .models import (
    ActionResult,
    CleanupResult,
    LegacyTransaction,
    StatisticsResult,
    TokenCreatedResult,
    TokenListResult,
    TokenResult,
    TokenStatistics,
    TokenStatus,
    TokenType,
    UpdateTokenRequest,
)
from .service import (
    TOKENS,
    TRANSACTIONS,
    USERS,
    BaseLedgerService,
    InvalidInputError,
    InvalidStateTransitionError,
    TransactionNotFoundError,
    action,
    as_utc,
    to_token,
    utcnow,
)
from .storage import Increment, Transaction

TOKEN_PAGES = ("/admin/tokens", "/dashboard")

# Older transaction records used payment-provider wording for their status
LEGACY_STATUSES = {
    "pending": TokenStatus.PENDING,
    "approved": TokenStatus.APPROVED,
    "completed": TokenStatus.APPROVED,
    "rejected": TokenStatus.REJECTED,
    "failed": TokenStatus.REJECTED,
    "cancelled": TokenStatus.REJECTED,
    "expired": TokenStatus.EXPIRED,
}


class TokenService(BaseLedgerService):
    """Unified token ledger: creation, approval workflow and expiry sweeps."""

    @action("Token oluşturulamadı", TokenCreatedResult)
    def create_token(
        self,
        user_id: str,
        token_type: TokenType,
        amount: float,
        metadata: Optional[dict] = None,
        expires_in_days: Optional[int] = None,
    ) -> TokenCreatedResult:
        try:
            token_type = TokenType(token_type)
        except ValueError:
            raise InvalidInputError("Geçersiz token türü")
        if not user_id:
            raise InvalidInputError("Kullanıcı gerekli")
        if amount is None or amount <= 0:
            raise InvalidInputError("Geçersiz tutar")
        if expires_in_days is not None and expires_in_days <= 0:
            raise InvalidInputError("Geçersiz süre")

        now = utcnow()
        token_data = {
            "userId": user_id,
            "type": token_type.value,
            "amount": amount,
            "status": TokenStatus.PENDING.value,
            "metadata": metadata or {},
            "createdAt": now,
        }
        if expires_in_days:
            token_data["expiresAt"] = now + timedelta(days=expires_in_days)

        token_id = self.storage.add(TOKENS, token_data)
        logger.info("Created {} token {} for user {} ({})", token_type.value, token_id, user_id, amount)

        self.cache.revalidate_path(*TOKEN_PAGES)
        return TokenCreatedResult(token_id=token_id)

    @action("Token güncellenemedi")
    def update_token(self, token_id: str, updates: UpdateTokenRequest) -> ActionResult:
        changes = updates.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
        if not changes:
            raise InvalidInputError("Güncellenecek alan yok")
        if "expiresAt" in changes:
            changes["expiresAt"] = as_utc(changes["expiresAt"])
        changes["updatedAt"] = utcnow()

        def apply(txn: Transaction) -> None:
            token = self._load_token(txn, token_id)
            self._ensure_pending(token)
            # Commission amounts are fixed by the deposit and mirrored in referralStats
            if token.type == TokenType.REFERRAL_COMMISSION and "amount" in changes:
                raise InvalidInputError("Geçersiz token türü")
            txn.update(TOKENS, token_id, changes)

        self.storage.run_transaction(apply)

        self.cache.revalidate_path(*TOKEN_PAGES)
        return ActionResult()

    @action("Token alınamadı", TokenResult)
    def get_token(self, token_id: str) -> TokenResult:
        return TokenResult(token=self._load_token(self.storage, token_id))

    @action("Tokenlar alınamadı", TokenListResult)
    def get_user_tokens(
        self,
        user_id: str,
        token_type: Optional[TokenType] = None,
        status: Optional[TokenStatus] = None,
        limit: Optional[int] = None,
    ) -> TokenListResult:
        filters = [("userId", "==", user_id)]
        if token_type:
            filters.append(("type", "==", TokenType(token_type).value))
        if status:
            filters.append(("status", "==", TokenStatus(status).value))

        docs = self.storage.query(
            TOKENS,
            filters,
            order_by="createdAt",
            descending=True,
            limit=limit or self.settings.default_list_limit,
        )
        return TokenListResult(tokens=[to_token(d) for d in docs])

    @action("Token onaylanamadı")
    def approve_token(self, token_id: str, admin_user_id: str, notes: Optional[str] = None) -> ActionResult:
        self._approve(token_id, admin_user_id, notes)
        self.cache.revalidate_path(*TOKEN_PAGES)
        return ActionResult()

    @action("Token reddedilemedi")
    def reject_token(self, token_id: str, admin_user_id: str, reason: str) -> ActionResult:
        self._reject(token_id, admin_user_id, reason)
        self.cache.revalidate_path(*TOKEN_PAGES)
        return ActionResult()

    @action("Süresi dolmuş tokenlar temizlenemedi", CleanupResult)
    def cleanup_expired_tokens(self) -> CleanupResult:
        now = utcnow()
        expired = self.storage.query(
            TOKENS,
            [("expiresAt", "<=", now), ("status", "==", TokenStatus.PENDING.value)],
            limit=self.settings.cleanup_batch_size,
        )
        if not expired:
            return CleanupResult(expired_count=0)

        batch = self.storage.batch()
        released: dict[str, float] = {}
        for doc in expired:
            batch.update(TOKENS, doc.id, {
                "status": TokenStatus.EXPIRED.value,
                "expiredAt": now,
            })
            if doc.get("type") == TokenType.REFERRAL_COMMISSION.value:
                owner = doc.get("userId")
                released[owner] = released.get(owner, 0) + (doc.get("amount") or 0)

        for owner, amount in released.items():
            if self.storage.get(USERS, owner) is not None:
                batch.update(USERS, owner, {"referralStats.pendingCommissions": Increment(-amount)})
        batch.commit()

        logger.info("Expired {} pending tokens", len(expired))
        self.cache.revalidate_path("/admin/tokens")
        return CleanupResult(expired_count=len(expired))

    @action("İstatistikler alınamadı", StatisticsResult)
    def get_token_statistics(self) -> StatisticsResult:
        tokens = [d.data for d in self.storage.query(TOKENS)]

        by_status = {s.value: 0 for s in TokenStatus}
        by_type = {t.value: 0 for t in TokenType}
        total_amounts = {s.value: 0.0 for s in TokenStatus}
        for t in tokens:
            status, token_type = t.get("status"), t.get("type")
            if status in by_status:
                by_status[status] += 1
                total_amounts[status] += t.get("amount") or 0
            if token_type in by_type:
                by_type[token_type] += 1

        stats = TokenStatistics(
            total=len(tokens),
            by_status=by_status,
            by_type=by_type,
            total_amounts=total_amounts,
        )
        return StatisticsResult(stats=stats)

    @action("Migration başarısız", TokenCreatedResult)
    def migrate_transaction_to_token(self, transaction_id: str, admin_user_id: str) -> TokenCreatedResult:
        self._require_admin(admin_user_id)
        token_id = self.storage.new_id(TOKENS)

        def apply(txn: Transaction) -> None:
            doc = txn.get(TRANSACTIONS, transaction_id)
            if doc is None:
                raise TransactionNotFoundError("Transaction bulunamadı")
            try:
                legacy = LegacyTransaction.model_validate({"id": doc.id, **doc.data})
            except ValidationError:
                raise InvalidInputError("Geçersiz transaction verisi")
            if legacy.migrated_to_token:
                raise InvalidStateTransitionError("Transaction zaten taşınmış")

            try:
                token_type = TokenType(legacy.type)
                status = LEGACY_STATUSES[legacy.status.lower()]
            except (ValueError, KeyError):
                raise InvalidInputError("Geçersiz transaction verisi")
            if not legacy.user_id or legacy.amount <= 0:
                raise InvalidInputError("Geçersiz transaction verisi")

            now = utcnow()
            token_data = {
                "userId": legacy.user_id,
                "type": token_type.value,
                "amount": legacy.amount,
                "status": status.value,
                "metadata": {
                    "migratedFrom": "transaction",
                    "originalTransactionId": transaction_id,
                    "migratedBy": admin_user_id,
                    "originalData": doc.data,
                },
                "createdAt": as_utc(legacy.created_at) or now,
            }
            if legacy.approved_at is not None:
                token_data["approvedAt"] = as_utc(legacy.approved_at)
            if legacy.approved_by is not None:
                token_data["approvedBy"] = legacy.approved_by

            txn.create(TOKENS, token_id, token_data)
            txn.update(TRANSACTIONS, transaction_id, {
                "migratedToToken": token_id,
                "migratedAt": now,
                "migratedBy": admin_user_id,
            })

        self.storage.run_transaction(apply)
        logger.info("Migrated transaction {} to token {} by {}", transaction_id, token_id, admin_user_id)

        self.cache.revalidate_path("/admin/tokens", "/admin/transactions")
        return TokenCreatedResult(token_id=token_id)
