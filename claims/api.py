import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .exceptions import ClaimServiceError
from .logging_config import configure_logging
from .models import (
    ActivityPage,
    ActivityRequest,
    ActivityResponse,
    ActivityStats,
    ClaimFilters,
    ClaimHistoryResponse,
    ClaimListResponse,
    ClaimMethod,
    ClaimRequest,
    ClaimResponse,
    ClaimStatus,
    ClientInfo,
    LeaderboardPage,
    LeaderboardPeriod,
    LeaderboardStats,
    PointsSummaryResponse,
    QRBatchResponse,
    QRCodeDetails,
    QRCodeSummary,
    QRStatusResponse,
    RankingUpdateResult,
    RecentActivity,
    ReconciliationReport,
    ReversalResponse,
    ReverseClaimRequest,
    RewardCategory,
    RewardClaim,
    ScanResponse,
    SyncResult,
    TopUsersResponse,
    UserRankResponse,
    UserRole,
)
from .service import ClaimService
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class Caller:
    def __init__(self, user_id: UUID, role: UserRole):
        self.user_id = user_id
        self.role = role


def get_service(request: Request) -> ClaimService:
    return request.app.state.claim_service


def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Caller:
    """Identity asserted by the upstream auth gateway; trusted as-is."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        user_id = UUID(x_user_id)
        role = UserRole(x_user_role or UserRole.USER.value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid identity headers")
    return Caller(user_id, role)


def get_optional_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Optional[Caller]:
    if not x_user_id:
        return None
    return get_caller(x_user_id, x_user_role)


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if caller.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return caller


def get_client_info(request: Request) -> ClientInfo:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return ClientInfo(ip_address=ip, user_agent=request.headers.get("User-Agent"))


def _http_error(exc: ClaimServiceError) -> HTTPException:
    if exc.retryable:
        logger.warning("Retryable failure: %s", exc)
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


def create_app(claim_service: Optional[ClaimService] = None) -> FastAPI:
    settings = claim_service.settings if claim_service else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Claim service starting (%s)", settings.environment.value)
        yield
        app.state.claim_service.close()

    app = FastAPI(
        title="Eco Rewards Claim API",
        description="QR-code reward claims, reversals and leaderboard for eco actions",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.claim_service = claim_service or ClaimService(
        storage=InMemoryStorage(
            timeout=settings.storage_timeout_seconds,
            seed=settings.seed_demo_data,
        ),
        settings=settings,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "eco-rewards-claims"}

    @app.get("/scan/{qr_code}", response_model=ScanResponse, tags=["Claims"])
    def scan_qr_code(
        qr_code: str,
        caller: Optional[Caller] = Depends(get_optional_caller),
        service: ClaimService = Depends(get_service),
    ) -> ScanResponse:
        try:
            return service.scan_qr_code(qr_code, caller.user_id if caller else None)
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.post("/claims", response_model=ClaimResponse, status_code=status.HTTP_201_CREATED, tags=["Claims"])
    def claim_reward(
        request: ClaimRequest,
        caller: Caller = Depends(get_caller),
        client: ClientInfo = Depends(get_client_info),
        service: ClaimService = Depends(get_service),
    ) -> ClaimResponse:
        try:
            return service.claim_reward(caller.user_id, request, client)
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.get("/claims", response_model=ClaimListResponse, tags=["Claims"])
    def list_claims(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        claim_status: Optional[ClaimStatus] = Query(None, alias="status"),
        partner_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
        reward_id: Optional[UUID] = None,
        claim_method: Optional[ClaimMethod] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        sort_by: str = Query("claimed_at", pattern=r"^(claimed_at|points_awarded)$"),
        sort_order: str = Query("desc", pattern=r"^(asc|desc)$"),
        _: Caller = Depends(require_admin),
        service: ClaimService = Depends(get_service),
    ) -> ClaimListResponse:
        filters = ClaimFilters(
            page=page, limit=limit, status=claim_status, partner_id=partner_id,
            user_id=user_id, reward_id=reward_id, claim_method=claim_method,
            start_date=start_date, end_date=end_date, sort_by=sort_by, sort_order=sort_order,
        )
        if filters.start_date and filters.end_date and filters.end_date <= filters.start_date:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End date must be after start date")
        return service.list_claims(filters)

    @app.get("/claims/history", response_model=ClaimHistoryResponse, tags=["Claims"])
    def get_claim_history(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        category: Optional[RewardCategory] = None,
        partner_id: Optional[UUID] = None,
        caller: Caller = Depends(get_caller),
        service: ClaimService = Depends(get_service),
    ) -> ClaimHistoryResponse:
        return service.get_claim_history(caller.user_id, page, limit, category, partner_id)

    @app.get("/claims/points-summary", response_model=PointsSummaryResponse, tags=["Claims"])
    def get_points_summary(
        caller: Caller = Depends(get_caller),
        service: ClaimService = Depends(get_service),
    ) -> PointsSummaryResponse:
        try:
            return service.get_points_summary(caller.user_id)
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.get("/claims/leaderboard", response_model=TopUsersResponse, tags=["Claims"])
    def get_top_users(
        limit: int = Query(10, ge=1, le=100),
        period: LeaderboardPeriod = LeaderboardPeriod.ALL_TIME,
        category: Optional[RewardCategory] = None,
        service: ClaimService = Depends(get_service),
    ) -> TopUsersResponse:
        return service.get_top_users(period, category, limit)

    @app.get("/claims/{claim_id}", response_model=RewardClaim, tags=["Claims"])
    def get_claim(
        claim_id: UUID,
        caller: Caller = Depends(get_caller),
        service: ClaimService = Depends(get_service),
    ) -> RewardClaim:
        try:
            claim = service.get_claim(claim_id)
        except ClaimServiceError as e:
            raise _http_error(e)
        if claim.user_id != caller.user_id and caller.role != UserRole.ADMIN:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Claim {claim_id} not found")
        return claim

    @app.put("/claims/{claim_id}/reverse", response_model=ReversalResponse, tags=["Claims"])
    def reverse_claim(
        claim_id: UUID,
        request: ReverseClaimRequest,
        admin: Caller = Depends(require_admin),
        service: ClaimService = Depends(get_service),
    ) -> ReversalResponse:
        if request.performed_by is None:
            request = request.model_copy(update={"performed_by": admin.user_id})
        try:
            return service.reverse_claim(claim_id, request)
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.post("/activities", response_model=ActivityResponse, status_code=status.HTTP_201_CREATED,
              tags=["Activities"])
    def log_activity(
        request: ActivityRequest,
        caller: Caller = Depends(get_caller),
        service: ClaimService = Depends(get_service),
    ) -> ActivityResponse:
        try:
            return service.log_activity(caller.user_id, request)
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.get("/activities/recent", response_model=list[RecentActivity], tags=["Activities"])
    def get_recent_activities(
        limit: int = Query(5, ge=1, le=50),
        caller: Caller = Depends(get_caller),
        service: ClaimService = Depends(get_service),
    ) -> list[RecentActivity]:
        return service.get_recent_activities(caller.user_id, limit)

    @app.get("/activities/stats", response_model=ActivityStats, tags=["Activities"])
    def get_activity_stats(
        caller: Caller = Depends(get_caller),
        service: ClaimService = Depends(get_service),
    ) -> ActivityStats:
        return service.get_activity_stats(caller.user_id)

    @app.get("/activities/users/{user_id}", response_model=ActivityPage, tags=["Activities"])
    def get_user_activities(
        user_id: UUID,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        caller: Caller = Depends(get_caller),
        service: ClaimService = Depends(get_service),
    ) -> ActivityPage:
        if caller.user_id != user_id and caller.role != UserRole.ADMIN:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to view these activities")
        return service.get_user_activities(user_id, page, limit)

    @app.get("/qr/top-performing", response_model=list[QRCodeSummary], tags=["QR Codes"])
    def get_top_performing_qr_codes(
        limit: int = Query(10, ge=1, le=100),
        _: Caller = Depends(require_admin),
        service: ClaimService = Depends(get_service),
    ) -> list[QRCodeSummary]:
        return service.get_top_performing_qr_codes(limit)

    @app.get("/qr/batch/{batch_id}", response_model=QRBatchResponse, tags=["QR Codes"])
    def get_qr_codes_by_batch(
        batch_id: str,
        _: Caller = Depends(require_admin),
        service: ClaimService = Depends(get_service),
    ) -> QRBatchResponse:
        try:
            return service.get_qr_codes_by_batch(batch_id)
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.get("/qr/details/{qr_code}", response_model=QRCodeDetails, tags=["QR Codes"])
    def get_qr_code_details(
        qr_code: str,
        _: Caller = Depends(require_admin),
        service: ClaimService = Depends(get_service),
    ) -> QRCodeDetails:
        try:
            return service.get_qr_code_details(qr_code)
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.put("/qr/{qr_code}/toggle-status", response_model=QRStatusResponse, tags=["QR Codes"])
    def toggle_qr_code_status(
        qr_code: str,
        _: Caller = Depends(require_admin),
        service: ClaimService = Depends(get_service),
    ) -> QRStatusResponse:
        try:
            return service.toggle_qr_code_status(qr_code)
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.get("/leaderboard", response_model=LeaderboardPage, tags=["Leaderboard"])
    def get_leaderboard(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        service: ClaimService = Depends(get_service),
    ) -> LeaderboardPage:
        return service.leaderboard.get_leaderboard(page, limit)

    @app.get("/leaderboard/stats", response_model=LeaderboardStats, tags=["Leaderboard"])
    def get_leaderboard_stats(service: ClaimService = Depends(get_service)) -> LeaderboardStats:
        return service.leaderboard.get_stats()

    @app.get("/leaderboard/users/{user_id}", response_model=UserRankResponse, tags=["Leaderboard"])
    def get_user_rank(user_id: UUID, service: ClaimService = Depends(get_service)) -> UserRankResponse:
        try:
            return service.leaderboard.get_user_rank(user_id)
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.put("/leaderboard/recalculate", response_model=RankingUpdateResult, tags=["Leaderboard"])
    def recalculate_rankings(
        _: Caller = Depends(require_admin),
        service: ClaimService = Depends(get_service),
    ) -> RankingUpdateResult:
        try:
            return service.leaderboard.update_all_rankings()
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.post("/leaderboard/sync", response_model=SyncResult, tags=["Leaderboard"])
    def sync_leaderboard(
        _: Caller = Depends(require_admin),
        service: ClaimService = Depends(get_service),
    ) -> SyncResult:
        try:
            return service.leaderboard.sync_all_users()
        except ClaimServiceError as e:
            raise _http_error(e)

    @app.post("/admin/reconcile", response_model=ReconciliationReport, tags=["Admin"])
    def reconcile_counters(
        _: Caller = Depends(require_admin),
        service: ClaimService = Depends(get_service),
    ) -> ReconciliationReport:
        try:
            return service.reconcile_counters()
        except ClaimServiceError as e:
            raise _http_error(e)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
