import logging
import math
import secrets
import string
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID, uuid4

from .availability import check_availability
from .config import Settings, get_settings
from .exceptions import (
    AlreadyReversedError,
    ConsistencyRepairNeeded,
    DuplicateClaimError,
    IneligibleError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from .leaderboard import LeaderboardService
from .levels import level_for, level_progress
from .models import (
    ACTIVITY_POINTS,
    Activity,
    ActivityPage,
    ActivityRequest,
    ActivityResponse,
    ActivityStats,
    ActivityType,
    ActivityTypeBreakdown,
    CategoryBreakdown,
    ClaimedRewardRecord,
    ClaimFilters,
    ClaimHistoryResponse,
    ClaimHistorySummary,
    ClaimListResponse,
    ClaimListSummary,
    ClaimMetadata,
    ClaimMethod,
    ClaimRequest,
    ClaimResponse,
    ClaimStatus,
    ClaimSummary,
    ClientInfo,
    CounterDrift,
    CreateRewardRequest,
    GenerateQRCodesRequest,
    LeaderboardPeriod,
    Partner,
    PartnerInfo,
    PointsSummaryResponse,
    QRBatchResponse,
    QRBatchStatistics,
    QRClaimStatistics,
    QRCode,
    QRCodeDetails,
    QRCodeSummary,
    QRStatusResponse,
    RecentActivity,
    RecentClaim,
    ReconciliationReport,
    ReversalResponse,
    ReverseClaimRequest,
    Reward,
    RewardCategory,
    RewardClaim,
    RewardInfo,
    ScanResponse,
    TopUser,
    TopUsersResponse,
    User,
    UserPointsInfo,
    utcnow,
)
from .storage import DuplicateKeyError, InMemoryStorage

logger = logging.getLogger(__name__)

LIVE_STATUSES = (ClaimStatus.COMPLETED, ClaimStatus.PENDING)

SideEffect = tuple[str, Callable[[], object]]


class ClaimService:
    """
    Claim and reversal protocol for QR-code rewards.

    Claims are the source of truth. Reward ``current_claims``, QR code
    ``successful_claims`` and user ``points`` are caches over the claim and
    activity ledgers, updated here and nowhere else.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        leaderboard: Optional[LeaderboardService] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage(timeout=self.settings.storage_timeout_seconds)
        self.leaderboard = leaderboard or LeaderboardService(self.storage)

    def close(self) -> None:
        self.storage.close()

    # ------------------------------------------------------------------
    # partner-side setup
    # ------------------------------------------------------------------

    def create_reward(self, partner_id: UUID, request: CreateRewardRequest) -> Reward:
        with self.storage.transaction():
            self._get_partner(partner_id)
            reward_data = {
                "id": uuid4(),
                "partner_id": partner_id,
                "current_claims": 0,
                "created_at": utcnow(),
                **request.model_dump(),
            }
            self.storage.insert("rewards", reward_data)
            self.storage.increment("partners", partner_id, "total_rewards", 1)

        logger.info("Reward %s created for partner %s", reward_data["id"], partner_id)
        return Reward(**reward_data)

    def generate_qr_codes(self, partner_id: UUID, request: GenerateQRCodesRequest) -> list[QRCode]:
        batch_id = request.batch_id or self._new_batch_id()
        location = request.location.model_dump() if request.location else None
        now = utcnow()

        created = []
        with self.storage.transaction():
            self._get_partner(partner_id)
            reward = self._get_reward(request.reward_id)
            if reward.partner_id != partner_id:
                raise ValidationError(
                    "Reward does not belong to this partner",
                    {"reward_id": str(reward.id), "partner_id": str(partner_id)},
                )
            for _ in range(request.quantity):
                created.append(self.storage.insert("qr_codes", {
                    "id": uuid4(),
                    "qr_code": f"qr_{uuid4()}",
                    "partner_id": partner_id,
                    "reward_id": reward.id,
                    "batch_id": batch_id,
                    "scan_count": 0,
                    "unique_scans": 0,
                    "successful_claims": 0,
                    "is_active": True,
                    "location": location,
                    "last_scanned_at": None,
                    "last_scanned_by": None,
                    "created_at": now,
                }))

        logger.info("Generated %d QR codes in %s", len(created), batch_id)
        return [QRCode(**data) for data in created]

    @staticmethod
    def _new_batch_id() -> str:
        suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
        return f"batch_{utcnow():%Y_%m_%d}_{suffix}"

    # ------------------------------------------------------------------
    # scan
    # ------------------------------------------------------------------

    def scan_qr_code(self, qr_token: str, user_id: Optional[UUID] = None,
                     now: Optional[datetime] = None) -> ScanResponse:
        now = now or utcnow()
        with self.storage.transaction():
            qr_code, reward, partner = self._resolve_qr(qr_token)
            self._ensure_available(qr_code, reward, partner, now)

            changes = {"last_scanned_at": now}
            if user_id is not None:
                changes["last_scanned_by"] = user_id
                seen_before = self.storage.find_one(
                    "claims",
                    lambda c: c["user_id"] == user_id and c["qr_code_id"] == qr_code.id,
                )
                if seen_before is None:
                    self.storage.increment("qr_codes", qr_code.id, "unique_scans", 1)

            self.storage.increment("qr_codes", qr_code.id, "scan_count", 1)
            updated = self.storage.update("qr_codes", qr_code.id, changes)
            self.storage.increment("partners", partner.id, "total_scans", 1)

            already_claimed = (
                user_id is not None
                and self.storage.get_live_claim(user_id, qr_code.id) is not None
            )

        return ScanResponse(
            qr_code=QRCode(**updated),
            reward=reward,
            partner=self._partner_info(partner),
            already_claimed=already_claimed,
            message="You have already claimed this reward" if already_claimed else "QR code is valid",
        )

    # ------------------------------------------------------------------
    # claim
    # ------------------------------------------------------------------

    def claim_reward(self, user_id: UUID, request: ClaimRequest,
                     client: Optional[ClientInfo] = None,
                     now: Optional[datetime] = None) -> ClaimResponse:
        client = client or ClientInfo()
        now = now or utcnow()

        with self.storage.transaction():
            self._get_user(user_id)
            qr_code, reward, partner = self._resolve_qr(request.qr_code_id)
            self._ensure_available(qr_code, reward, partner, now)

            existing = self.storage.get_live_claim(user_id, qr_code.id)
            if existing:
                raise self._duplicate_error(existing)

            user_claim_count = self._user_claim_count(user_id, reward.id)
            if user_claim_count >= reward.max_claims_per_user:
                raise QuotaExceededError(
                    f"You have reached the maximum number of claims "
                    f"({reward.max_claims_per_user}) for this reward",
                    {"user_claim_count": user_claim_count, "max_allowed": reward.max_claims_per_user},
                )

            metadata = ClaimMetadata(
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                location=request.metadata.location,
                device_info=request.metadata.device_info,
            )
            claim_data = {
                "id": uuid4(),
                "user_id": user_id,
                "qr_code_id": qr_code.id,
                "partner_id": partner.id,
                "reward_id": reward.id,
                "points_awarded": reward.points,
                "status": ClaimStatus.COMPLETED,
                "claim_method": ClaimMethod.QR_SCAN,
                "metadata": metadata.model_dump(),
                "verification_data": request.verification_data.model_dump(),
                "claimed_at": now,
                "processed_at": now,
                "reversed_at": None,
                "notes": None,
            }
            try:
                self.storage.insert("claims", claim_data)
            except DuplicateKeyError as exc:
                raise self._duplicate_error(self.storage.get("claims", exc.existing_id)) from exc

            claim = RewardClaim(**claim_data)
            effects = self._claim_effects(claim)
            if self.settings.atomic_side_effects:
                for _, apply in effects:
                    apply()

        if not self.settings.atomic_side_effects:
            self._apply_best_effort(claim, effects)

        logger.info(
            "Claim %s: user %s earned %d points on %s",
            claim.id, user_id, claim.points_awarded, qr_code.qr_code,
        )

        user = self._get_user(user_id)
        self._sync_leaderboard(user.id)

        return ClaimResponse(
            claim=ClaimSummary(
                id=claim.id,
                points_awarded=claim.points_awarded,
                claimed_at=claim.claimed_at,
                status=claim.status,
            ),
            partner=self._partner_info(partner),
            reward=RewardInfo(
                title=reward.title,
                description=reward.description,
                points=reward.points,
                category=reward.category,
            ),
            user=UserPointsInfo(
                name=user.name,
                total_points=user.points,
                eco_level=user.eco_level,
                points_earned=claim.points_awarded,
            ),
        )

    def _claim_effects(self, claim: RewardClaim) -> list[SideEffect]:
        record = ClaimedRewardRecord(
            reward_id=claim.reward_id,
            qr_code_id=claim.qr_code_id,
            points_awarded=claim.points_awarded,
            claimed_at=claim.claimed_at,
        )
        return [
            ("qr_code.successful_claims",
             lambda: self.storage.increment("qr_codes", claim.qr_code_id, "successful_claims", 1)),
            ("reward.current_claims",
             lambda: self.storage.increment("rewards", claim.reward_id, "current_claims", 1)),
            ("user.points",
             lambda: self._credit_user(claim.user_id, claim.points_awarded, record)),
        ]

    def _credit_user(self, user_id: UUID, points: int,
                     record: Optional[ClaimedRewardRecord] = None) -> int:
        with self.storage.transaction():
            if record is not None:
                self.storage.push("users", user_id, "claimed_rewards", record.model_dump())
            total = self.storage.increment("users", user_id, "points", points, minimum=0)
            self.storage.update("users", user_id, {"eco_level": level_for(total)})
        return total

    def _duplicate_error(self, existing: dict) -> DuplicateClaimError:
        return DuplicateClaimError(
            "You have already claimed this reward",
            {
                "existing_claim": {
                    "id": str(existing["id"]),
                    "claimed_at": existing["claimed_at"].isoformat(),
                    "points_awarded": existing["points_awarded"],
                }
            },
        )

    # ------------------------------------------------------------------
    # reversal
    # ------------------------------------------------------------------

    def reverse_claim(self, claim_id: UUID, request: ReverseClaimRequest,
                      now: Optional[datetime] = None) -> ReversalResponse:
        now = now or utcnow()
        with self.storage.transaction():
            claim = self._get_claim(claim_id)
            if not claim.can_reverse():
                raise AlreadyReversedError("Claim is already reversed", {"claim_id": str(claim_id)})

            notes = f"Reversed: {request.reason}"
            self.storage.update("claims", claim_id, {
                "status": ClaimStatus.REVERSED,
                "notes": notes,
                "reversed_at": now,
            })

            effects = self._reversal_effects(claim)
            if self.settings.atomic_side_effects:
                for _, apply in effects:
                    apply()

        if not self.settings.atomic_side_effects:
            self._apply_best_effort(claim, effects)

        logger.info(
            "Claim %s reversed by %s, %d points withdrawn from user %s",
            claim_id, request.performed_by or "admin", claim.points_awarded, claim.user_id,
        )

        user = self._get_user(claim.user_id)
        self._sync_leaderboard(user.id)

        return ReversalResponse(
            claim_id=claim_id,
            status=ClaimStatus.REVERSED,
            points_deducted=claim.points_awarded,
            reason=notes,
            user_points=user.points,
            eco_level=user.eco_level,
        )

    def _reversal_effects(self, claim: RewardClaim) -> list[SideEffect]:
        return [
            ("user.points", lambda: self._recompute_user_points(claim.user_id)),
            ("qr_code.successful_claims",
             lambda: self.storage.increment("qr_codes", claim.qr_code_id, "successful_claims", -1, minimum=0)),
            ("reward.current_claims",
             lambda: self.storage.increment("rewards", claim.reward_id, "current_claims", -1, minimum=0)),
        ]

    def _recompute_user_points(self, user_id: UUID) -> int:
        with self.storage.transaction():
            total = self.ledger_points(user_id)
            self.storage.update("users", user_id, {"points": total, "eco_level": level_for(total)})
        return total

    def ledger_points(self, user_id: UUID) -> int:
        """Points a user should hold according to the claim and activity ledgers."""
        claim_points = sum(
            c["points_awarded"] for c in self.storage.find(
                "claims", lambda c: c["user_id"] == user_id and c["status"] in LIVE_STATUSES
            )
        )
        activity_points = sum(
            a["points_earned"] for a in self.storage.find("activities", lambda a: a["user_id"] == user_id)
        )
        return claim_points + activity_points

    # ------------------------------------------------------------------
    # manual activities
    # ------------------------------------------------------------------

    def log_activity(self, user_id: UUID, request: ActivityRequest) -> ActivityResponse:
        if request.activity_type in (ActivityType.QR_SCAN, ActivityType.REWARD_CLAIM):
            raise ValidationError("Use QR scan endpoint for QR-related activities")

        points = ACTIVITY_POINTS.get(request.activity_type, 0)
        activity_data = {
            "id": uuid4(),
            "user_id": user_id,
            "activity_type": request.activity_type,
            "title": request.title,
            "description": request.description,
            "points_earned": points,
            "qr_code_id": None,
            "reward_id": None,
            "partner_id": None,
            "location": request.location,
            "created_at": utcnow(),
        }

        with self.storage.transaction():
            self._get_user(user_id)
            self.storage.insert("activities", activity_data)
            self._credit_user(user_id, points)

        user = self._get_user(user_id)
        self._sync_leaderboard(user.id)

        return ActivityResponse(
            activity=Activity(**activity_data),
            points_earned=points,
            new_total_points=user.points,
            new_eco_level=user.eco_level,
            message=f"Activity completed! You earned {points} points.",
        )

    # ------------------------------------------------------------------
    # best-effort side effects and reconciliation
    # ------------------------------------------------------------------

    def _apply_best_effort(self, claim: RewardClaim, effects: list[SideEffect]) -> None:
        for step, apply in effects:
            try:
                apply()
            except Exception as exc:
                repair = ConsistencyRepairNeeded(
                    f"Side effect {step} failed after claim {claim.id} was committed",
                    claim_id=claim.id,
                    step=step,
                    details={"error": str(exc)},
                )
                logger.error("%s", repair, exc_info=True, extra=repair.details)
                self.storage.record_repair({**repair.details, "recorded_at": utcnow()})

    def _sync_leaderboard(self, user_id: UUID) -> None:
        if not self.settings.leaderboard_sync_enabled:
            return
        try:
            self.leaderboard.sync_user(user_id)
            self.leaderboard.update_all_rankings()
        except Exception:
            logger.exception("Leaderboard update failed for user %s", user_id)

    def _resync_leaderboard(self) -> None:
        if not self.settings.leaderboard_sync_enabled:
            return
        try:
            self.leaderboard.sync_all_users()
        except Exception:
            logger.exception("Leaderboard resync failed")

    def reconcile_counters(self) -> ReconciliationReport:
        """
        Recompute every derived counter from the claim and activity ledgers.

        Repairs drift left by failed best-effort side effects and clears the
        pending-repair queue. The leaderboard is re-synced afterwards.
        """
        repairs: list[CounterDrift] = []

        with self.storage.transaction():
            live = self.storage.find("claims", lambda c: c["status"] in LIVE_STATUSES)
            reward_counts = Counter(c["reward_id"] for c in live)
            qr_counts = Counter(c["qr_code_id"] for c in live)

            rewards = self.storage.find("rewards")
            for reward in rewards:
                expected = reward_counts.get(reward["id"], 0)
                if reward["current_claims"] != expected:
                    repairs.append(CounterDrift(
                        entity="reward", entity_id=reward["id"], field="current_claims",
                        expected=expected, actual=reward["current_claims"],
                    ))
                    self.storage.update("rewards", reward["id"], {"current_claims": expected})

            qr_codes = self.storage.find("qr_codes")
            for qr in qr_codes:
                expected = qr_counts.get(qr["id"], 0)
                if qr["successful_claims"] != expected:
                    repairs.append(CounterDrift(
                        entity="qr_code", entity_id=qr["id"], field="successful_claims",
                        expected=expected, actual=qr["successful_claims"],
                    ))
                    self.storage.update("qr_codes", qr["id"], {"successful_claims": expected})

            users = self.storage.find("users")
            for user in users:
                expected = self.ledger_points(user["id"])
                if user["points"] != expected:
                    repairs.append(CounterDrift(
                        entity="user", entity_id=user["id"], field="points",
                        expected=expected, actual=user["points"],
                    ))
                self.storage.update("users", user["id"], {
                    "points": expected,
                    "eco_level": level_for(expected),
                })

            cleared = len(self.storage.drain_repairs())

        if repairs:
            logger.warning("Reconciliation repaired %d counters", len(repairs))
        else:
            logger.info("Reconciliation found no drift")

        self._resync_leaderboard()

        return ReconciliationReport(
            checked_rewards=len(rewards),
            checked_qr_codes=len(qr_codes),
            checked_users=len(users),
            repairs=repairs,
            cleared_pending=cleared,
            completed_at=utcnow(),
        )

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_claim(self, claim_id: UUID) -> RewardClaim:
        return self._get_claim(claim_id)

    def get_user(self, user_id: UUID) -> User:
        return self._get_user(user_id)

    def get_claim_history(self, user_id: UUID, page: int = 1, limit: int = 20,
                          category: Optional[str] = None,
                          partner_id: Optional[UUID] = None) -> ClaimHistoryResponse:
        claims = [
            RewardClaim(**c) for c in self.storage.find(
                "claims",
                lambda c: c["user_id"] == user_id and c["status"] == ClaimStatus.COMPLETED,
            )
            if partner_id is None or c["partner_id"] == partner_id
        ]
        categories = self._reward_categories()
        if category:
            claims = [c for c in claims if categories.get(c.reward_id) == category]
        claims.sort(key=lambda c: c.claimed_at, reverse=True)

        category_summary: dict[str, int] = defaultdict(int)
        for claim in claims:
            reward_category = RewardCategory(categories.get(claim.reward_id, RewardCategory.OTHER))
            category_summary[reward_category.value] += claim.points_awarded

        skip = (page - 1) * limit
        return ClaimHistoryResponse(
            user_id=user_id,
            page=page,
            limit=limit,
            claims=claims[skip:skip + limit],
            summary=ClaimHistorySummary(
                total_points_earned=sum(c.points_awarded for c in claims),
                total_claims=len(claims),
                category_summary=dict(category_summary),
            ),
        )

    def get_points_summary(self, user_id: UUID, now: Optional[datetime] = None) -> PointsSummaryResponse:
        now = now or utcnow()
        user = self._get_user(user_id)
        window = self.settings.points_summary_window_days
        since = now - timedelta(days=window)

        completed = [
            RewardClaim(**c) for c in self.storage.find(
                "claims",
                lambda c: c["user_id"] == user_id and c["status"] == ClaimStatus.COMPLETED,
            )
        ]
        recent = sorted(
            (c for c in completed if c.claimed_at >= since),
            key=lambda c: c.claimed_at,
            reverse=True,
        )

        rewards = {r["id"]: Reward(**r) for r in self.storage.find("rewards")}
        totals: dict = defaultdict(lambda: [0, 0])
        for claim in completed:
            reward = rewards.get(claim.reward_id)
            if reward is None:
                continue
            totals[reward.category][0] += claim.points_awarded
            totals[reward.category][1] += 1
        breakdown = sorted(
            (CategoryBreakdown(category=cat, total_points=pts, total_claims=n) for cat, (pts, n) in totals.items()),
            key=lambda b: b.total_points,
            reverse=True,
        )

        recent_claims = []
        for claim in recent[:5]:
            reward = rewards.get(claim.reward_id)
            if reward is None:
                continue
            recent_claims.append(RecentClaim(
                title=reward.title,
                category=reward.category,
                points=claim.points_awarded,
                claimed_at=claim.claimed_at,
            ))

        return PointsSummaryResponse(
            name=user.name,
            current_points=user.points,
            eco_level=user.eco_level,
            total_claims=len(user.claimed_rewards),
            progression=level_progress(user.points),
            points_earned_recently=sum(c.points_awarded for c in recent),
            claims_recently=len(recent),
            window_days=window,
            recent_claims=recent_claims,
            category_breakdown=breakdown,
        )

    def list_claims(self, filters: Optional[ClaimFilters] = None) -> ClaimListResponse:
        filters = filters or ClaimFilters()

        def matches(c: dict) -> bool:
            if filters.status and c["status"] != filters.status:
                return False
            if filters.partner_id and c["partner_id"] != filters.partner_id:
                return False
            if filters.user_id and c["user_id"] != filters.user_id:
                return False
            if filters.reward_id and c["reward_id"] != filters.reward_id:
                return False
            if filters.claim_method and c["claim_method"] != filters.claim_method:
                return False
            if filters.start_date and c["claimed_at"] < filters.start_date:
                return False
            if filters.end_date and c["claimed_at"] > filters.end_date:
                return False
            return True

        claims = [RewardClaim(**c) for c in self.storage.find("claims", matches)]
        claims.sort(key=lambda c: getattr(c, filters.sort_by), reverse=filters.sort_order == "desc")

        total = len(claims)
        summary = ClaimListSummary()
        if claims:
            awarded = sum(c.points_awarded for c in claims)
            summary = ClaimListSummary(
                total_claims=total,
                total_points_awarded=awarded,
                unique_users=len({c.user_id for c in claims}),
                avg_points_per_claim=round(awarded / total, 2),
            )

        skip = (filters.page - 1) * filters.limit
        return ClaimListResponse(
            claims=claims[skip:skip + filters.limit],
            total=total,
            page=filters.page,
            limit=filters.limit,
            pages=math.ceil(total / filters.limit),
            summary=summary,
        )

    def get_top_users(self, period: LeaderboardPeriod = LeaderboardPeriod.ALL_TIME,
                      category: Optional[RewardCategory] = None, limit: int = 10,
                      now: Optional[datetime] = None) -> TopUsersResponse:
        """Rank users by points earned from completed claims, straight from the claim ledger."""
        now = now or utcnow()
        since = None
        if period == LeaderboardPeriod.MONTHLY:
            since = now - timedelta(days=30)
        elif period == LeaderboardPeriod.WEEKLY:
            since = now - timedelta(days=7)

        categories = self._reward_categories()
        totals: dict = defaultdict(lambda: [0, 0])
        for claim in self.storage.find("claims", lambda c: c["status"] == ClaimStatus.COMPLETED):
            if since is not None and not since <= claim["claimed_at"] <= now:
                continue
            if category is not None and categories.get(claim["reward_id"]) != category:
                continue
            totals[claim["user_id"]][0] += claim["points_awarded"]
            totals[claim["user_id"]][1] += 1

        users = []
        for user_id, (points, claims) in sorted(totals.items(), key=lambda item: -item[1][0]):
            user = self.storage.get("users", user_id)
            if not user:
                continue
            users.append(TopUser(
                user_id=user_id, name=user["name"], email=user["email"],
                total_points=points, total_claims=claims,
            ))
        return TopUsersResponse(period=period, category=category, users=users[:limit])

    # ------------------------------------------------------------------
    # activity queries
    # ------------------------------------------------------------------

    def _user_activities(self, user_id: UUID) -> list[Activity]:
        activities = [Activity(**a) for a in self.storage.find("activities", lambda a: a["user_id"] == user_id)]
        # Newest first; equal timestamps fall back to reverse insertion order
        return sorted(reversed(activities), key=lambda a: a.created_at, reverse=True)

    def get_recent_activities(self, user_id: UUID, limit: int = 5) -> list[RecentActivity]:
        recent = []
        for activity in self._user_activities(user_id)[:limit]:
            partner = self.storage.get("partners", activity.partner_id) if activity.partner_id else None
            recent.append(RecentActivity(
                activity=activity.title,
                points=activity.points_earned,
                activity_type=activity.activity_type,
                description=activity.description,
                partner=partner["name"] if partner else None,
                created_at=activity.created_at,
            ))
        return recent

    def get_user_activities(self, user_id: UUID, page: int = 1, limit: int = 10) -> ActivityPage:
        activities = self._user_activities(user_id)
        total = len(activities)
        skip = (page - 1) * limit
        return ActivityPage(
            user_id=user_id,
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit),
            has_next=skip + limit < total,
            has_prev=page > 1,
            activities=activities[skip:skip + limit],
        )

    def get_activity_stats(self, user_id: UUID) -> ActivityStats:
        activities = self._user_activities(user_id)
        breakdown: dict = defaultdict(lambda: [0, 0])
        for activity in activities:
            breakdown[activity.activity_type][0] += 1
            breakdown[activity.activity_type][1] += activity.points_earned

        return ActivityStats(
            total_activities=len(activities),
            total_points_from_activities=sum(a.points_earned for a in activities),
            activity_breakdown=[
                ActivityTypeBreakdown(activity_type=kind, count=count, total_points=points)
                for kind, (count, points) in breakdown.items()
            ],
        )

    # ------------------------------------------------------------------
    # QR analytics
    # ------------------------------------------------------------------

    def _qr_summary(self, qr_code: QRCode) -> QRCodeSummary:
        return QRCodeSummary(
            qr_code=qr_code,
            conversion_rate=qr_code.conversion_rate,
            scan_url=f"{self.settings.frontend_url.rstrip('/')}/scan/{qr_code.qr_code}",
        )

    def get_qr_code_details(self, qr_token: str) -> QRCodeDetails:
        qr_code, reward, partner = self._resolve_qr(qr_token)

        claims = self.storage.find(
            "claims",
            lambda c: c["qr_code_id"] == qr_code.id and c["status"] == ClaimStatus.COMPLETED,
        )
        statistics = QRClaimStatistics()
        if claims:
            statistics = QRClaimStatistics(
                total_claims=len(claims),
                total_points_awarded=sum(c["points_awarded"] for c in claims),
                unique_users=len({c["user_id"] for c in claims}),
                last_claim_date=max(c["claimed_at"] for c in claims),
            )

        summary = self._qr_summary(qr_code)
        return QRCodeDetails(
            **summary.model_dump(),
            partner=self._partner_info(partner) if partner else None,
            reward=RewardInfo(
                title=reward.title,
                description=reward.description,
                points=reward.points,
                category=reward.category,
            ) if reward else None,
            statistics=statistics,
        )

    def get_qr_codes_by_batch(self, batch_id: str) -> QRBatchResponse:
        qr_codes = [QRCode(**q) for q in self.storage.find("qr_codes", lambda q: q["batch_id"] == batch_id)]
        if not qr_codes:
            raise NotFoundError("No QR codes found for this batch", {"batch_id": batch_id})
        qr_codes.sort(key=lambda q: q.created_at, reverse=True)

        total_scans = sum(q.scan_count for q in qr_codes)
        return QRBatchResponse(
            batch_id=batch_id,
            statistics=QRBatchStatistics(
                total_qr_codes=len(qr_codes),
                total_scans=total_scans,
                total_successful_claims=sum(q.successful_claims for q in qr_codes),
                active_qr_codes=sum(1 for q in qr_codes if q.is_active),
                average_scans_per_qr=round(total_scans / len(qr_codes), 2),
            ),
            qr_codes=[self._qr_summary(q) for q in qr_codes],
        )

    def get_top_performing_qr_codes(self, limit: int = 10) -> list[QRCodeSummary]:
        qr_codes = [QRCode(**q) for q in self.storage.find("qr_codes", lambda q: q["is_active"])]
        qr_codes.sort(key=lambda q: (q.successful_claims, q.scan_count), reverse=True)
        return [self._qr_summary(q) for q in qr_codes[:limit]]

    def toggle_qr_code_status(self, qr_token: str) -> QRStatusResponse:
        with self.storage.transaction():
            qr_data = self.storage.get_qr_code_by_token(qr_token)
            if not qr_data:
                raise NotFoundError("QR code not found", {"qr_code_id": qr_token})
            updated = self.storage.update("qr_codes", qr_data["id"], {"is_active": not qr_data["is_active"]})

        state = "activated" if updated["is_active"] else "deactivated"
        logger.info("QR code %s %s", qr_token, state)
        return QRStatusResponse(
            qr_code=qr_token,
            is_active=updated["is_active"],
            message=f"QR code {state} successfully",
        )

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def _resolve_qr(self, qr_token: str) -> tuple[QRCode, Optional[Reward], Optional[Partner]]:
        qr_data = self.storage.get_qr_code_by_token(qr_token)
        if not qr_data:
            raise NotFoundError("QR code not found", {"qr_code_id": qr_token})

        qr_code = QRCode(**qr_data)
        reward_data = self.storage.get("rewards", qr_code.reward_id)
        partner_data = self.storage.get("partners", qr_code.partner_id)
        return (
            qr_code,
            Reward(**reward_data) if reward_data else None,
            Partner(**partner_data) if partner_data else None,
        )

    def _ensure_available(self, qr_code: QRCode, reward: Optional[Reward],
                          partner: Optional[Partner], now: datetime) -> None:
        result = check_availability(qr_code, reward, partner, now)
        if not result.valid:
            raise IneligibleError(result.reason, {"qr_code_id": qr_code.qr_code})

    def _user_claim_count(self, user_id: UUID, reward_id: UUID) -> int:
        return self.storage.count(
            "claims",
            lambda c: c["user_id"] == user_id and c["reward_id"] == reward_id and c["status"] in LIVE_STATUSES,
        )

    def _reward_categories(self) -> dict:
        return {r["id"]: r["category"] for r in self.storage.find("rewards")}

    def _partner_info(self, partner: Partner) -> PartnerInfo:
        return PartnerInfo(name=partner.name, logo=partner.logo, category=partner.category)

    def _get_user(self, user_id: UUID) -> User:
        data = self.storage.get("users", user_id)
        if not data:
            raise NotFoundError("User not found", {"user_id": str(user_id)})
        return User(**data)

    def _get_partner(self, partner_id: UUID) -> Partner:
        data = self.storage.get("partners", partner_id)
        if not data:
            raise NotFoundError("Partner not found", {"partner_id": str(partner_id)})
        return Partner(**data)

    def _get_reward(self, reward_id: UUID) -> Reward:
        data = self.storage.get("rewards", reward_id)
        if not data:
            raise NotFoundError("Reward not found", {"reward_id": str(reward_id)})
        return Reward(**data)

    def _get_claim(self, claim_id: UUID) -> RewardClaim:
        data = self.storage.get("claims", claim_id)
        if not data:
            raise NotFoundError("Claim not found", {"claim_id": str(claim_id)})
        return RewardClaim(**data)
