from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import structlog

from smartcoach import NextTarget, PlanItem, SessionData, next_target

from .challenges import ChallengeTracker
from .config import Settings, get_settings
from .errors import (
    AccountInactiveError,
    DuplicateApplicationError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidTransitionError,
    LedgerServiceError,
    NotFoundError,
    OutOfStockError,
    RewardNotFoundError,
    TransientFailureError,
    UnavailableError,
)
from .logging import configure_logging
from .models import (
    Account,
    ActiveChallenge,
    ApplyRequest,
    AuditReport,
    BalanceSummary,
    CancelRedemptionRequest,
    ChallengeStats,
    CompletionResult,
    ConfirmRedemptionRequest,
    CreateRedemptionRequest,
    RecordMinutesRequest,
    Redemption,
    RedemptionStatus,
    Transaction,
    TransactionHistory,
)
from .redemptions import RedemptionService
from .service import LedgerService
from .storage import InMemoryStorage

logger = structlog.get_logger("ledger.api")

ERROR_STATUS = {
    InsufficientBalanceError: status.HTTP_409_CONFLICT,
    DuplicateApplicationError: status.HTTP_409_CONFLICT,
    OutOfStockError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    RewardNotFoundError: status.HTTP_404_NOT_FOUND,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    AccountInactiveError: status.HTTP_403_FORBIDDEN,
    InvalidAmountError: status.HTTP_400_BAD_REQUEST,
    TransientFailureError: status.HTTP_503_SERVICE_UNAVAILABLE,
    UnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@dataclass
class Services:
    ledger: LedgerService
    redemptions: RedemptionService
    challenges: ChallengeTracker

    @property
    def storage(self) -> InMemoryStorage:
        return self.ledger.storage


class NextTargetRequest(BaseModel):
    session: SessionData
    plan_item: PlanItem


def build_services(settings: Settings, storage: Optional[InMemoryStorage] = None) -> Services:
    storage = storage or InMemoryStorage(lock_timeout=settings.lock_timeout_seconds)
    ledger = LedgerService(storage)
    return Services(
        ledger=ledger,
        redemptions=RedemptionService(ledger, settings),
        challenges=ChallengeTracker(ledger),
    )


def status_for(exc: LedgerServiceError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return status.HTTP_400_BAD_REQUEST


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    services = services or build_services(settings)

    app = FastAPI(
        title="Drops Ledger API",
        description="Drops currency ledger, reward redemptions and challenge bounties for gym members",
        version="1.0.0",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.warning("request_failed", path=request.url.path, error=exc.code, detail=str(exc))
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.code, "detail": str(exc), "retryable": isinstance(exc, TransientFailureError)},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        healthy = services.storage.available
        return {"status": "healthy" if healthy else "degraded", "service": "drops-ledger"}

    @app.post("/accounts/{account_id}", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
    def open_account(account_id: UUID) -> Account:
        return services.ledger.open_account(account_id)

    @app.get("/accounts/{account_id}/balance", response_model=BalanceSummary, tags=["Accounts"])
    def get_balance(account_id: UUID) -> BalanceSummary:
        return services.ledger.get_balance(account_id)

    @app.get("/accounts/{account_id}/transactions", response_model=TransactionHistory, tags=["Accounts"])
    def get_transactions(
        account_id: UUID, limit: int = 50, offset: int = 0, gym_id: Optional[UUID] = None
    ) -> TransactionHistory:
        return services.ledger.get_history(account_id, limit, offset, gym_id)

    @app.get("/accounts/{account_id}/audit", response_model=AuditReport, tags=["Accounts"])
    def audit_account(account_id: UUID) -> AuditReport:
        return services.ledger.audit(account_id)

    @app.get("/accounts/{account_id}/redemptions", response_model=list[Redemption], tags=["Redemptions"])
    def list_account_redemptions(account_id: UUID) -> list[Redemption]:
        return services.redemptions.list_for_account(account_id)

    @app.post("/ledger/apply", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Ledger"])
    def apply(request: ApplyRequest) -> Transaction:
        return services.ledger.apply(
            request.account_id,
            request.amount,
            request.kind,
            reference_id=request.reference_id,
            gym_id=request.gym_id,
            description=request.description,
        )

    @app.post("/redemptions", response_model=Redemption, status_code=status.HTTP_201_CREATED, tags=["Redemptions"])
    def create_redemption(request: CreateRedemptionRequest) -> Redemption:
        return services.redemptions.create(request.account_id, request.reward_id, request.gym_id)

    @app.post("/redemptions/{redemption_id}/confirm", response_model=Redemption, tags=["Redemptions"])
    def confirm_redemption(redemption_id: UUID, request: ConfirmRedemptionRequest) -> Redemption:
        return services.redemptions.confirm(redemption_id, request.staff_id)

    @app.post("/redemptions/{redemption_id}/cancel", response_model=Redemption, tags=["Redemptions"])
    def cancel_redemption(redemption_id: UUID, request: CancelRedemptionRequest) -> Redemption:
        return services.redemptions.cancel(redemption_id, request.staff_id, request.reason)

    @app.get("/gyms/{gym_id}/redemptions/validate", response_model=Redemption, tags=["Redemptions"])
    def validate_redemption(gym_id: UUID, code: str) -> Redemption:
        return services.redemptions.validate(code, gym_id)

    @app.get("/gyms/{gym_id}/redemptions", response_model=list[Redemption], tags=["Redemptions"])
    def list_gym_redemptions(
        gym_id: UUID, status_filter: Optional[RedemptionStatus] = Query(default=None, alias="status")
    ) -> list[Redemption]:
        return services.redemptions.list_for_gym(gym_id, status_filter)

    @app.post("/challenges/progress", response_model=list[CompletionResult], tags=["Challenges"])
    def record_minutes(request: RecordMinutesRequest) -> list[CompletionResult]:
        return services.challenges.record_minutes(
            request.account_id, request.gym_id, request.machine_type, request.minutes
        )

    @app.get("/gyms/{gym_id}/challenges/active", response_model=list[ActiveChallenge], tags=["Challenges"])
    def active_challenges(gym_id: UUID, account_id: UUID, machine_type: Optional[str] = None) -> list[ActiveChallenge]:
        return services.challenges.active_challenges(account_id, gym_id, machine_type)

    @app.get("/gyms/{gym_id}/challenges/stats", response_model=list[ChallengeStats], tags=["Challenges"])
    def challenge_stats(gym_id: UUID) -> list[ChallengeStats]:
        return services.challenges.completion_stats(gym_id)

    @app.post("/smartcoach/next-target", response_model=NextTarget, tags=["SmartCoach"])
    def smartcoach_next_target(request: NextTargetRequest) -> NextTarget:
        return next_target(request.session, request.plan_item)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.app_host, port=settings.app_port)
