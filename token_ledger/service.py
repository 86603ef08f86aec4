from datetime import datetime, timezone
from functools import wraps
from typing import Callable, Optional, TypeVar

from loguru import logger

from .cache import PageCache
from .config import Settings, get_settings
from .models import ActionResult, TokenStatus, TokenType, UnifiedToken, User
from .storage import Document, DocumentStore, Increment, Transaction, create_storage

TOKENS = "unifiedTokens"
USERS = "users"
TRANSACTIONS = "transactions"

CREDIT_TYPES = (
    TokenType.DEPOSIT,
    TokenType.BONUS,
    TokenType.REFERRAL_COMMISSION,
    TokenType.CASHBACK,
)

R = TypeVar("R", bound=ActionResult)


class LedgerServiceError(Exception):
    code = "invalid_input"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(LedgerServiceError):
    pass


class TokenNotFoundError(LedgerServiceError):
    code = "not_found"


class UserNotFoundError(LedgerServiceError):
    code = "not_found"


class TransactionNotFoundError(LedgerServiceError):
    code = "not_found"


class InvalidStateTransitionError(LedgerServiceError):
    code = "invalid_state"


class InsufficientBalanceError(LedgerServiceError):
    code = "invalid_state"


class UnauthorizedError(LedgerServiceError):
    code = "forbidden"


def action(fallback: str, result_type: type[R] = ActionResult) -> Callable[[Callable[..., R]], Callable[..., R]]:
    """Turn a service method into an action returning a uniform result.

    Domain errors surface with their own message; anything else is logged
    with its traceback and reported with the action's fallback message.
    """
    def decorator(func: Callable[..., R]) -> Callable[..., R]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> R:
            try:
                return func(*args, **kwargs)
            except LedgerServiceError as e:
                logger.warning("{} refused: {}", func.__name__, e.message)
                return result_type(success=False, error=e.message, code=e.code)
            except Exception:
                logger.exception("{} failed", func.__name__)
                return result_type(success=False, error=fallback, code="internal")
        return wrapper
    return decorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC so they order against stored aware ones."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_token(doc: Document) -> UnifiedToken:
    return UnifiedToken.model_validate({"id": doc.id, **doc.data})


def to_user(doc: Document) -> User:
    return User.model_validate({"id": doc.id, **doc.data})


class BaseLedgerService:
    def __init__(
        self,
        storage: Optional[DocumentStore] = None,
        cache: Optional[PageCache] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or create_storage(self.settings)
        self.cache = cache or PageCache(self.settings.cache_ttl_seconds)

    def _require_admin(self, admin_user_id: str) -> None:
        if not admin_user_id:
            raise UnauthorizedError("Yetkisiz işlem")
        admins = self.settings.admin_ids
        if admins and admin_user_id not in admins:
            raise UnauthorizedError("Yetkisiz işlem")

    def _load_token(self, source: Transaction | DocumentStore, token_id: str) -> UnifiedToken:
        doc = source.get(TOKENS, token_id)
        if doc is None:
            raise TokenNotFoundError("Token bulunamadı")
        return to_token(doc)

    def _ensure_pending(self, token: UnifiedToken) -> None:
        if not token.can_transition():
            raise InvalidStateTransitionError("Token zaten işlenmiş")

    def _balance_updates(self, token: UnifiedToken) -> Optional[dict]:
        amount = token.amount
        if token.type in CREDIT_TYPES:
            updates = {
                "balance": Increment(amount),
                f"{token.type.value}Total": Increment(amount),
            }
            if token.type == TokenType.REFERRAL_COMMISSION:
                updates["referralStats.approvedCommissions"] = Increment(amount)
                updates["referralStats.pendingCommissions"] = Increment(-amount)
            return updates
        if token.type == TokenType.WITHDRAWAL:
            return {
                "balance": Increment(-amount),
                "withdrawalTotal": Increment(amount),
            }
        # raffle_entry carries no balance effect
        return None

    def _approve(
        self,
        token_id: str,
        admin_user_id: str,
        notes: Optional[str] = None,
        expected_type: Optional[TokenType] = None,
    ) -> UnifiedToken:
        self._require_admin(admin_user_id)

        def apply(txn: Transaction) -> UnifiedToken:
            token = self._load_token(txn, token_id)
            if expected_type is not None and token.type != expected_type:
                raise InvalidInputError("Geçersiz token türü")
            self._ensure_pending(token)

            now = utcnow()
            if token.is_expired(now):
                raise InvalidStateTransitionError("Token süresi dolmuş")

            user_updates = self._balance_updates(token)
            if user_updates is not None:
                user = txn.get(USERS, token.user_id)
                if user is None:
                    raise UserNotFoundError("Kullanıcı bulunamadı")
                if token.type == TokenType.WITHDRAWAL and (user.get("balance") or 0) < token.amount:
                    raise InsufficientBalanceError("Yetersiz bakiye")

            txn.update(TOKENS, token.id, {
                "status": TokenStatus.APPROVED.value,
                "approvedAt": now,
                "approvedBy": admin_user_id,
                "adminNotes": notes or "",
            })
            if user_updates is not None:
                txn.update(USERS, token.user_id, user_updates)
            return token

        token = self.storage.run_transaction(apply)
        logger.info(
            "Approved {} token {} for user {} ({}) by {}",
            token.type.value, token.id, token.user_id, token.amount, admin_user_id,
        )
        return token

    def _reject(self, token_id: str, admin_user_id: str, reason: str) -> UnifiedToken:
        self._require_admin(admin_user_id)
        if not reason or not reason.strip():
            raise InvalidInputError("Red sebebi gerekli")

        def apply(txn: Transaction) -> UnifiedToken:
            token = self._load_token(txn, token_id)
            self._ensure_pending(token)

            release = (
                token.type == TokenType.REFERRAL_COMMISSION
                and txn.get(USERS, token.user_id) is not None
            )

            txn.update(TOKENS, token.id, {
                "status": TokenStatus.REJECTED.value,
                "rejectedAt": utcnow(),
                "rejectedBy": admin_user_id,
                "rejectionReason": reason.strip(),
            })
            if release:
                txn.update(USERS, token.user_id, {
                    "referralStats.pendingCommissions": Increment(-token.amount),
                })
            return token

        token = self.storage.run_transaction(apply)
        logger.info("Rejected token {} by {}: {}", token.id, admin_user_id, reason)
        return token
