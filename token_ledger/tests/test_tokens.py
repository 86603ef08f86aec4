"""
Unit Tests for the Unified Token Service

Tests cover:
1. Token creation and updates
2. Approval per token type (balance effects)
3. Rejection and double-processing refusal
4. Expiry sweep
5. Statistics and legacy transaction migration
"""

from datetime import datetime, timedelta, timezone

import pytest

from token_ledger.config import Settings
from token_ledger.models import TokenStatus, TokenType, UpdateTokenRequest
from token_ledger.tokens import TokenService

from .conftest import ADMIN_ID, REFERRAL_CODE, REFERRED_ID, REFERRER_ID


def _balance(storage, user_id):
    return storage.get("users", user_id).get("balance")


class TestCreateToken:
    """Tests for token creation."""

    def test_create_token_success(self, token_service, storage, cache):
        """A new token starts pending and revalidates the token pages."""
        result = token_service.create_token(
            REFERRED_ID, TokenType.DEPOSIT, 250.0, {"paymentMethod": "papara"}, expires_in_days=7,
        )

        assert result.success
        assert result.token_id

        token = token_service.get_token(result.token_id).token
        assert token.status == TokenStatus.PENDING
        assert token.type == TokenType.DEPOSIT
        assert token.amount == 250.0
        assert token.metadata == {"paymentMethod": "papara"}
        assert token.expires_at - token.created_at == timedelta(days=7)

        assert "/admin/tokens" in cache.revalidated
        assert "/dashboard" in cache.revalidated

    def test_create_without_expiry(self, token_service):
        result = token_service.create_token(REFERRED_ID, "bonus", 10)

        token = token_service.get_token(result.token_id).token
        assert token.type == TokenType.BONUS
        assert token.expires_at is None

    def test_rejects_non_positive_amount(self, token_service):
        result = token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 0)

        assert not result.success
        assert result.error == "Geçersiz tutar"
        assert result.code == "invalid_input"

    def test_rejects_unknown_type(self, token_service):
        result = token_service.create_token(REFERRED_ID, "jackpot", 10)

        assert not result.success
        assert result.error == "Geçersiz token türü"

    def test_storage_failure_returns_fallback_message(self, token_service, monkeypatch):
        """Unexpected failures are logged and reported with the action's message."""
        def broken_add(collection, data):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(token_service.storage, "add", broken_add)
        result = token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 10)

        assert not result.success
        assert result.error == "Token oluşturulamadı"
        assert result.code == "internal"


class TestGetTokens:
    def test_get_missing_token(self, token_service):
        result = token_service.get_token("does-not-exist")

        assert not result.success
        assert result.error == "Token bulunamadı"
        assert result.code == "not_found"

    def test_user_tokens_combine_filters(self, token_service):
        """Type and status filters apply together."""
        deposit = token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 100).token_id
        token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 200)
        token_service.create_token(REFERRED_ID, TokenType.BONUS, 5)
        token_service.create_token(REFERRER_ID, TokenType.DEPOSIT, 300)
        token_service.approve_token(deposit, ADMIN_ID)

        all_tokens = token_service.get_user_tokens(REFERRED_ID).tokens
        assert len(all_tokens) == 3

        pending_deposits = token_service.get_user_tokens(
            REFERRED_ID, TokenType.DEPOSIT, TokenStatus.PENDING,
        ).tokens
        assert [t.amount for t in pending_deposits] == [200]

    def test_user_tokens_newest_first_with_limit(self, token_service, storage):
        now = datetime.now(timezone.utc)
        for i in range(3):
            storage.set("unifiedTokens", f"t{i}", {
                "userId": REFERRED_ID, "type": "bonus", "amount": i + 1,
                "status": "pending", "metadata": {}, "createdAt": now - timedelta(hours=i),
            })

        tokens = token_service.get_user_tokens(REFERRED_ID, limit=2).tokens
        assert [t.id for t in tokens] == ["t0", "t1"]


class TestUpdateToken:
    def test_update_pending_token(self, token_service):
        token_id = token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 100).token_id

        result = token_service.update_token(
            token_id, UpdateTokenRequest(amount=150, admin_notes="Dekont kontrol edildi"),
        )

        assert result.success
        token = token_service.get_token(token_id).token
        assert token.amount == 150
        assert token.admin_notes == "Dekont kontrol edildi"
        assert token.updated_at is not None
        assert token.status == TokenStatus.PENDING

    def test_cannot_update_processed_token(self, token_service):
        token_id = token_service.create_token(REFERRED_ID, TokenType.BONUS, 10).token_id
        token_service.approve_token(token_id, ADMIN_ID)

        result = token_service.update_token(token_id, UpdateTokenRequest(amount=999))

        assert not result.success
        assert result.error == "Token zaten işlenmiş"
        assert token_service.get_token(token_id).token.amount == 10

    def test_empty_update_refused(self, token_service):
        token_id = token_service.create_token(REFERRED_ID, TokenType.BONUS, 10).token_id

        result = token_service.update_token(token_id, UpdateTokenRequest())
        assert not result.success

    def test_commission_amount_is_fixed(self, token_service, referral_service, storage):
        """Commission amounts mirror referralStats, so they cannot be edited."""
        token_id = referral_service.process_deposit_referral(REFERRED_ID, 1000, REFERRAL_CODE).token_id

        result = token_service.update_token(token_id, UpdateTokenRequest(amount=80))

        assert not result.success
        assert result.error == "Geçersiz token türü"
        assert token_service.get_token(token_id).token.amount == 50

        token_service.approve_token(token_id, ADMIN_ID)
        referrer = storage.get("users", REFERRER_ID)
        assert referrer.get("referralStats.pendingCommissions") == 0
        assert referrer.get("referralStats.approvedCommissions") == 50

    def test_commission_notes_still_editable(self, token_service, referral_service):
        token_id = referral_service.process_deposit_referral(REFERRED_ID, 1000, REFERRAL_CODE).token_id

        result = token_service.update_token(token_id, UpdateTokenRequest(admin_notes="Kontrol"))

        assert result.success
        assert token_service.get_token(token_id).token.admin_notes == "Kontrol"


class TestApproveToken:
    """Tests for the approval workflow."""

    @pytest.mark.parametrize("token_type", ["deposit", "bonus", "referral_commission", "cashback"])
    def test_credit_types_increase_balance(self, token_service, storage, token_type):
        token_id = token_service.create_token(REFERRED_ID, token_type, 100).token_id

        result = token_service.approve_token(token_id, ADMIN_ID, notes="ok")

        assert result.success
        user = storage.get("users", REFERRED_ID)
        assert user.get("balance") == 100
        assert user.get(f"{token_type}Total") == 100

        token = token_service.get_token(token_id).token
        assert token.status == TokenStatus.APPROVED
        assert token.approved_by == ADMIN_ID
        assert token.approved_at is not None
        assert token.admin_notes == "ok"

    def test_withdrawal_decreases_balance(self, token_service, storage):
        storage.update("users", REFERRED_ID, {"balance": 500})
        token_id = token_service.create_token(REFERRED_ID, TokenType.WITHDRAWAL, 200).token_id

        result = token_service.approve_token(token_id, ADMIN_ID)

        assert result.success
        user = storage.get("users", REFERRED_ID)
        assert user.get("balance") == 300
        assert user.get("withdrawalTotal") == 200

    def test_withdrawal_requires_balance(self, token_service, storage):
        storage.update("users", REFERRED_ID, {"balance": 50})
        token_id = token_service.create_token(REFERRED_ID, TokenType.WITHDRAWAL, 200).token_id

        result = token_service.approve_token(token_id, ADMIN_ID)

        assert not result.success
        assert result.error == "Yetersiz bakiye"
        assert _balance(storage, REFERRED_ID) == 50
        assert token_service.get_token(token_id).token.status == TokenStatus.PENDING

    def test_raffle_entry_leaves_balance(self, token_service, storage):
        token_id = token_service.create_token(REFERRED_ID, TokenType.RAFFLE_ENTRY, 3).token_id

        assert token_service.approve_token(token_id, ADMIN_ID).success
        assert _balance(storage, REFERRED_ID) == 0
        assert token_service.get_token(token_id).token.status == TokenStatus.APPROVED

    def test_double_approval_refused(self, token_service, storage):
        """Approving twice must not credit the balance twice."""
        token_id = token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 100).token_id

        assert token_service.approve_token(token_id, ADMIN_ID).success
        second = token_service.approve_token(token_id, ADMIN_ID)

        assert not second.success
        assert second.error == "Token zaten işlenmiş"
        assert second.code == "invalid_state"
        assert _balance(storage, REFERRED_ID) == 100

    def test_expired_token_cannot_be_approved(self, token_service, storage):
        storage.set("unifiedTokens", "old", {
            "userId": REFERRED_ID, "type": "deposit", "amount": 100, "status": "pending",
            "metadata": {}, "createdAt": datetime.now(timezone.utc) - timedelta(days=10),
            "expiresAt": datetime.now(timezone.utc) - timedelta(days=1),
        })

        result = token_service.approve_token("old", ADMIN_ID)

        assert not result.success
        assert result.error == "Token süresi dolmuş"
        assert _balance(storage, REFERRED_ID) == 0

    def test_missing_user_aborts_approval(self, token_service):
        token_id = token_service.create_token("ghost", TokenType.DEPOSIT, 100).token_id

        result = token_service.approve_token(token_id, ADMIN_ID)

        assert not result.success
        assert result.error == "Kullanıcı bulunamadı"
        assert token_service.get_token(token_id).token.status == TokenStatus.PENDING

    def test_admin_list_restricts_approvers(self, storage, cache):
        service = TokenService(storage, cache, Settings(_env_file=None, admin_user_ids="admin-1, admin-2"))
        token_id = service.create_token(REFERRED_ID, TokenType.DEPOSIT, 100).token_id

        refused = service.approve_token(token_id, "someone-else")
        assert not refused.success
        assert refused.error == "Yetkisiz işlem"
        assert refused.code == "forbidden"

        assert service.approve_token(token_id, "admin-2").success


class TestRejectToken:
    def test_reject_pending_token(self, token_service, storage):
        token_id = token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 100).token_id

        result = token_service.reject_token(token_id, ADMIN_ID, "Dekont eksik")

        assert result.success
        token = token_service.get_token(token_id).token
        assert token.status == TokenStatus.REJECTED
        assert token.rejection_reason == "Dekont eksik"
        assert token.rejected_by == ADMIN_ID
        assert _balance(storage, REFERRED_ID) == 0

    def test_cannot_reject_approved_token(self, token_service):
        token_id = token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 100).token_id
        token_service.approve_token(token_id, ADMIN_ID)

        result = token_service.reject_token(token_id, ADMIN_ID, "Late")

        assert not result.success
        assert result.error == "Token zaten işlenmiş"
        assert token_service.get_token(token_id).token.status == TokenStatus.APPROVED

    def test_cannot_approve_rejected_token(self, token_service, storage):
        token_id = token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 100).token_id
        token_service.reject_token(token_id, ADMIN_ID, "Fraud")

        result = token_service.approve_token(token_id, ADMIN_ID)

        assert not result.success
        assert _balance(storage, REFERRED_ID) == 0

    def test_reason_required(self, token_service):
        token_id = token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 100).token_id

        result = token_service.reject_token(token_id, ADMIN_ID, "  ")

        assert not result.success
        assert token_service.get_token(token_id).token.status == TokenStatus.PENDING

    def test_reject_missing_token(self, token_service):
        result = token_service.reject_token("nope", ADMIN_ID, "x")

        assert not result.success
        assert result.code == "not_found"


class TestCleanupExpiredTokens:
    def _seed(self, storage, token_id, expires_in, status="pending", token_type="deposit", user=REFERRED_ID):
        now = datetime.now(timezone.utc)
        storage.set("unifiedTokens", token_id, {
            "userId": user, "type": token_type, "amount": 20, "status": status,
            "metadata": {}, "createdAt": now - timedelta(days=40),
            "expiresAt": now + expires_in,
        })

    def test_marks_only_expired_pending_tokens(self, token_service, storage, cache):
        self._seed(storage, "expired-1", timedelta(days=-1))
        self._seed(storage, "expired-2", timedelta(seconds=-1))
        self._seed(storage, "future", timedelta(days=1))
        self._seed(storage, "already-approved", timedelta(days=-1), status="approved")
        token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 5)

        result = token_service.cleanup_expired_tokens()

        assert result.success
        assert result.expired_count == 2
        for token_id in ("expired-1", "expired-2"):
            token = token_service.get_token(token_id).token
            assert token.status == TokenStatus.EXPIRED
            assert token.expired_at is not None
        assert token_service.get_token("future").token.status == TokenStatus.PENDING
        assert token_service.get_token("already-approved").token.status == TokenStatus.APPROVED

    def test_nothing_to_sweep(self, token_service, cache):
        cache.revalidated.clear()

        result = token_service.cleanup_expired_tokens()

        assert result.success
        assert result.expired_count == 0
        assert not cache.revalidated

    def test_batch_size_limits_sweep(self, storage, cache):
        service = TokenService(storage, cache, Settings(_env_file=None, cleanup_batch_size=2))
        for i in range(3):
            self._seed(storage, f"e{i}", timedelta(days=-1))

        assert service.cleanup_expired_tokens().expired_count == 2
        assert service.cleanup_expired_tokens().expired_count == 1
        assert service.cleanup_expired_tokens().expired_count == 0

    def test_expired_commission_releases_pending_stats(self, token_service, storage):
        storage.update("users", REFERRER_ID, {"referralStats.pendingCommissions": 20})
        self._seed(storage, "c1", timedelta(days=-1), token_type="referral_commission", user=REFERRER_ID)

        token_service.cleanup_expired_tokens()

        assert storage.get("users", REFERRER_ID).get("referralStats.pendingCommissions") == 0


class TestStatistics:
    def test_counts_and_amounts(self, token_service):
        a = token_service.create_token(REFERRED_ID, TokenType.DEPOSIT, 100).token_id
        b = token_service.create_token(REFERRED_ID, TokenType.BONUS, 10).token_id
        token_service.create_token(REFERRED_ID, TokenType.CASHBACK, 5)
        token_service.approve_token(a, ADMIN_ID)
        token_service.reject_token(b, ADMIN_ID, "no")

        stats = token_service.get_token_statistics().stats

        assert stats.total == 3
        assert stats.by_status == {"pending": 1, "approved": 1, "rejected": 1, "expired": 0}
        assert stats.by_type["deposit"] == 1
        assert stats.by_type["raffle_entry"] == 0
        assert stats.total_amounts["approved"] == 100
        assert stats.total_amounts["rejected"] == 10
        assert stats.total_amounts["pending"] == 5


class TestMigration:
    def _seed_legacy(self, storage, tx_id="tx-1", **overrides):
        data = {
            "userId": REFERRED_ID,
            "type": "deposit",
            "amount": 75,
            "status": "completed",
            "createdAt": datetime(2024, 1, 5, tzinfo=timezone.utc),
            "approvedBy": "old-admin",
        }
        data.update(overrides)
        storage.set("transactions", tx_id, data)

    def test_migrate_legacy_transaction(self, token_service, storage, cache):
        self._seed_legacy(storage)

        result = token_service.migrate_transaction_to_token("tx-1", ADMIN_ID)

        assert result.success
        token = token_service.get_token(result.token_id).token
        assert token.type == TokenType.DEPOSIT
        assert token.status == TokenStatus.APPROVED
        assert token.amount == 75
        assert token.created_at == datetime(2024, 1, 5, tzinfo=timezone.utc)
        assert token.approved_by == "old-admin"
        assert token.metadata["originalTransactionId"] == "tx-1"
        assert token.metadata["migratedBy"] == ADMIN_ID

        legacy = storage.get("transactions", "tx-1")
        assert legacy.get("migratedToToken") == result.token_id
        assert legacy.get("migratedBy") == ADMIN_ID
        assert "/admin/transactions" in cache.revalidated

    def test_migration_is_one_time(self, token_service, storage):
        self._seed_legacy(storage)
        token_service.migrate_transaction_to_token("tx-1", ADMIN_ID)

        second = token_service.migrate_transaction_to_token("tx-1", ADMIN_ID)

        assert not second.success
        assert second.error == "Transaction zaten taşınmış"
        assert token_service.get_token_statistics().stats.total == 1

    def test_missing_transaction(self, token_service):
        result = token_service.migrate_transaction_to_token("nope", ADMIN_ID)

        assert not result.success
        assert result.error == "Transaction bulunamadı"

    def test_unknown_legacy_type(self, token_service, storage):
        self._seed_legacy(storage, type="lottery_ticket")

        result = token_service.migrate_transaction_to_token("tx-1", ADMIN_ID)

        assert not result.success
        assert result.error == "Geçersiz transaction verisi"
        assert storage.get("transactions", "tx-1").get("migratedToToken") is None

    def test_legacy_record_without_amount(self, token_service, storage):
        storage.set("transactions", "tx-1", {"userId": REFERRED_ID, "type": "deposit", "status": "pending"})

        result = token_service.migrate_transaction_to_token("tx-1", ADMIN_ID)

        assert not result.success
        assert result.error == "Geçersiz transaction verisi"
        assert storage.query("unifiedTokens") == []

    def test_naive_timestamps_stored_as_utc(self, token_service, storage):
        """Migrated tokens still sort next to tokens created with aware timestamps."""
        self._seed_legacy(storage, createdAt=datetime(2024, 1, 5), approvedAt=datetime(2024, 1, 6))
        token_service.create_token(REFERRED_ID, TokenType.BONUS, 5)

        migrated_id = token_service.migrate_transaction_to_token("tx-1", ADMIN_ID).token_id
        result = token_service.get_user_tokens(REFERRED_ID)

        assert result.success
        assert [t.id for t in result.tokens][-1] == migrated_id
        migrated = result.tokens[-1]
        assert migrated.created_at == datetime(2024, 1, 5, tzinfo=timezone.utc)
        assert migrated.approved_at.tzinfo is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
