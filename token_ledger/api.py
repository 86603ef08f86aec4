from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .cache import PageCache
from .config import get_settings
from .log import setup_logging
from .models import (
    ActionResult,
    ApproveCommissionRequest,
    ApproveTokenRequest,
    CleanupResult,
    CreateTokenRequest,
    DepositReferralRequest,
    MigrateTransactionRequest,
    PendingCommissionsResult,
    ReferralAnalysisResult,
    ReferralChainResult,
    ReferralResult,
    ReferralStatsResult,
    RejectTokenRequest,
    StatisticsResult,
    TokenCreatedResult,
    TokenListResult,
    TokenResult,
    TokenStatus,
    TokenType,
    UpdateTokenRequest,
)
from .referrals import ReferralService
from .storage import create_storage
from .tokens import TokenService

STATUS_BY_CODE = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_409_CONFLICT,
    "invalid_input": status.HTTP_400_BAD_REQUEST,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "internal": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

settings = get_settings()
storage = create_storage(settings)
cache = PageCache(settings.cache_ttl_seconds)

token_service = TokenService(storage, cache, settings)
referral_service = ReferralService(storage, cache, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings)
    yield


app = FastAPI(
    title="Unified Token Ledger API",
    description="Balances, unified tokens, referral commissions and admin approvals",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def respond(result: ActionResult, response: Response, success_status: int = status.HTTP_200_OK):
    if result.success:
        response.status_code = success_status
    else:
        response.status_code = STATUS_BY_CODE.get(result.code, status.HTTP_400_BAD_REQUEST)
    return result


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "unified-token-ledger"}


@app.post("/tokens", response_model=TokenCreatedResult, status_code=status.HTTP_201_CREATED, tags=["Tokens"])
def create_token(request: CreateTokenRequest, response: Response) -> TokenCreatedResult:
    result = token_service.create_token(
        request.user_id, request.type, request.amount, request.metadata, request.expires_in_days,
    )
    return respond(result, response, status.HTTP_201_CREATED)


@app.get("/tokens/statistics", response_model=StatisticsResult, tags=["Tokens"])
def get_token_statistics(response: Response) -> StatisticsResult:
    return respond(token_service.get_token_statistics(), response)


@app.post("/tokens/cleanup-expired", response_model=CleanupResult, tags=["Tokens"])
def cleanup_expired_tokens(response: Response) -> CleanupResult:
    return respond(token_service.cleanup_expired_tokens(), response)


@app.get("/tokens/{token_id}", response_model=TokenResult, tags=["Tokens"])
def get_token(token_id: str, response: Response) -> TokenResult:
    return respond(token_service.get_token(token_id), response)


@app.patch("/tokens/{token_id}", response_model=ActionResult, tags=["Tokens"])
def update_token(token_id: str, request: UpdateTokenRequest, response: Response) -> ActionResult:
    return respond(token_service.update_token(token_id, request), response)


@app.post("/tokens/{token_id}/approve", response_model=ActionResult, tags=["Tokens"])
def approve_token(token_id: str, request: ApproveTokenRequest, response: Response) -> ActionResult:
    result = token_service.approve_token(token_id, request.admin_user_id, request.notes)
    return respond(result, response)


@app.post("/tokens/{token_id}/reject", response_model=ActionResult, tags=["Tokens"])
def reject_token(token_id: str, request: RejectTokenRequest, response: Response) -> ActionResult:
    result = token_service.reject_token(token_id, request.admin_user_id, request.reason)
    return respond(result, response)


@app.get("/users/{user_id}/tokens", response_model=TokenListResult, tags=["Users"])
def get_user_tokens(
    user_id: str,
    response: Response,
    token_type: Optional[TokenType] = Query(default=None, alias="type"),
    token_status: Optional[TokenStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, gt=0, le=500),
) -> TokenListResult:
    result = token_service.get_user_tokens(user_id, token_type, token_status, limit)
    return respond(result, response)


@app.post("/transactions/{transaction_id}/migrate", response_model=TokenCreatedResult, tags=["Tokens"])
def migrate_transaction(transaction_id: str, request: MigrateTransactionRequest, response: Response) -> TokenCreatedResult:
    result = token_service.migrate_transaction_to_token(transaction_id, request.admin_user_id)
    return respond(result, response, status.HTTP_201_CREATED)


@app.post("/referrals/deposits", response_model=ReferralResult, tags=["Referrals"])
def process_deposit_referral(request: DepositReferralRequest, response: Response) -> ReferralResult:
    result = referral_service.process_deposit_referral(
        request.user_id, request.deposit_amount, request.referral_code, request.idempotency_key,
    )
    return respond(result, response)


@app.get("/referrals/commissions/pending", response_model=PendingCommissionsResult, tags=["Referrals"])
def get_pending_referral_commissions(response: Response) -> PendingCommissionsResult:
    return respond(referral_service.get_pending_referral_commissions(), response)


@app.post("/referrals/commissions/{token_id}/approve", response_model=ActionResult, tags=["Referrals"])
def approve_referral_commission(token_id: str, request: ApproveCommissionRequest, response: Response) -> ActionResult:
    result = referral_service.approve_referral_commission(token_id, request.admin_user_id)
    return respond(result, response)


@app.get("/users/{user_id}/referral-stats", response_model=ReferralStatsResult, tags=["Users"])
def get_user_referral_stats(user_id: str, response: Response) -> ReferralStatsResult:
    return respond(referral_service.get_user_referral_stats(user_id), response)


@app.get("/users/{user_id}/referral-commissions", response_model=TokenListResult, tags=["Users"])
def get_user_referral_commissions(user_id: str, response: Response) -> TokenListResult:
    return respond(referral_service.get_user_referral_commission_tokens(user_id), response)


@app.get("/users/{user_id}/referrals", response_model=ReferralChainResult, tags=["Users"])
def get_user_referral_chain(user_id: str, response: Response) -> ReferralChainResult:
    return respond(referral_service.get_user_referral_chain(user_id), response)


@app.get("/users/{user_id}/referral-analysis", response_model=ReferralAnalysisResult, tags=["Users"])
def analyze_referral_performance(user_id: str, response: Response) -> ReferralAnalysisResult:
    return respond(referral_service.analyze_referral_performance(user_id), response)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
