from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator


QR_CODE_PATTERN = r"^qr_[a-zA-Z0-9\-]{36}$"


class UserRole(str, Enum):
    USER = "user"
    PARTNER = "partner"
    ADMIN = "admin"


class EcoLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"
    LEADER = "leader"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class RewardCategory(str, Enum):
    RECYCLING = "recycling"
    ENERGY_SAVING = "energy-saving"
    WASTE_REDUCTION = "waste-reduction"
    SUSTAINABLE_TRANSPORT = "sustainable-transport"
    WATER_CONSERVATION = "water-conservation"
    CARBON_OFFSET = "carbon-offset"
    ECO_PURCHASE = "eco-purchase"
    OTHER = "other"


class ClaimStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class ClaimMethod(str, Enum):
    QR_SCAN = "qr-scan"
    MANUAL = "manual"
    BULK_IMPORT = "bulk-import"
    REFERRAL = "referral"


class ProofType(str, Enum):
    PHOTO = "photo"
    RECEIPT = "receipt"
    SURVEY = "survey"
    NONE = "none"


class RankMovement(str, Enum):
    UP = "up"
    DOWN = "down"
    NONE = "none"
    NEW = "new"


class LeaderboardPeriod(str, Enum):
    ALL_TIME = "all-time"
    MONTHLY = "monthly"
    WEEKLY = "weekly"


class ActivityType(str, Enum):
    QR_SCAN = "qr_scan"
    REWARD_CLAIM = "reward_claim"
    TREE_PLANTING = "tree_planting"
    REUSABLE_BAGS = "reusable_bags"
    REFURBISHED_ELECTRONICS = "refurbished_electronics"
    RENEWABLE_ENERGY = "renewable_energy"
    RECYCLING = "recycling"
    ENERGY_SAVING = "energy_saving"
    TRANSPORT = "transport"
    EDUCATION = "education"
    CHALLENGE_COMPLETION = "challenge_completion"
    DAILY_LOGIN = "daily_login"


# qr_scan and reward_claim earn the reward's points, never a flat amount
ACTIVITY_POINTS = {
    ActivityType.QR_SCAN: 0,
    ActivityType.REWARD_CLAIM: 0,
    ActivityType.TREE_PLANTING: 100,
    ActivityType.REUSABLE_BAGS: 30,
    ActivityType.REFURBISHED_ELECTRONICS: 75,
    ActivityType.RENEWABLE_ENERGY: 80,
    ActivityType.RECYCLING: 40,
    ActivityType.ENERGY_SAVING: 60,
    ActivityType.TRANSPORT: 35,
    ActivityType.EDUCATION: 90,
    ActivityType.CHALLENGE_COMPLETION: 150,
    ActivityType.DAILY_LOGIN: 10,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat timestamps without a timezone as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Claim metadata
# ---------------------------------------------------------------------------

class Coordinates(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class Location(Coordinates):
    address: Optional[str] = Field(default=None, max_length=200)


class DeviceInfo(BaseModel):
    platform: Optional[str] = Field(default=None, max_length=50)
    browser: Optional[str] = Field(default=None, max_length=50)


class ClaimRequestMetadata(BaseModel):
    location: Optional[Location] = None
    device_info: Optional[DeviceInfo] = None


class ClaimMetadata(ClaimRequestMetadata):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, max_length=500)


class VerificationData(BaseModel):
    requires_proof: bool = False
    proof_type: ProofType = ProofType.NONE
    proof_url: Optional[str] = Field(default=None, pattern=r"^https?://.+")
    verified_by: Optional[UUID] = None
    verified_at: Optional[datetime] = None


class ClientInfo(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class ClaimedRewardRecord(BaseModel):
    reward_id: UUID
    qr_code_id: UUID
    points_awarded: int
    claimed_at: datetime


class User(BaseModel):
    id: UUID
    name: str
    email: str
    role: UserRole = UserRole.USER
    points: int = Field(default=0, ge=0)
    eco_level: EcoLevel = EcoLevel.BEGINNER
    claimed_rewards: list[ClaimedRewardRecord] = Field(default_factory=list)
    referral_code: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Partner(BaseModel):
    id: UUID
    name: str
    category: Optional[str] = None
    logo: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    is_active: bool = True
    total_rewards: int = 0
    total_scans: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_eligible_for_rewards(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED and self.is_active


class Reward(BaseModel):
    id: UUID
    partner_id: UUID
    title: str = Field(..., max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    category: RewardCategory = RewardCategory.OTHER
    points: int = Field(..., ge=1, le=1000)
    max_claims_per_user: int = Field(default=1, ge=1, le=100)
    total_max_claims: Optional[int] = Field(default=None, ge=1)
    current_claims: int = Field(default=0, ge=0)
    expiry_date: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("expiry_date")
    @classmethod
    def expiry_as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiry_date is None:
            return False
        return as_utc(now or utcnow()) > self.expiry_date

    def is_maxed_out(self) -> bool:
        if self.total_max_claims is None:
            return False
        return self.current_claims >= self.total_max_claims

    def is_available(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now) and not self.is_maxed_out()


class QRLocation(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    address: Optional[str] = Field(default=None, max_length=500)
    coordinates: Optional[Coordinates] = None


class QRCode(BaseModel):
    id: UUID
    qr_code: str = Field(..., pattern=QR_CODE_PATTERN)
    partner_id: UUID
    reward_id: UUID
    batch_id: Optional[str] = Field(default=None, max_length=100)
    scan_count: int = Field(default=0, ge=0)
    unique_scans: int = Field(default=0, ge=0)
    successful_claims: int = Field(default=0, ge=0)
    is_active: bool = True
    location: Optional[QRLocation] = None
    last_scanned_at: Optional[datetime] = None
    last_scanned_by: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def conversion_rate(self) -> float:
        if self.scan_count == 0:
            return 0.0
        return round(self.successful_claims / self.scan_count * 100, 2)


class RewardClaim(BaseModel):
    id: UUID
    user_id: UUID
    qr_code_id: UUID
    partner_id: UUID
    reward_id: UUID
    points_awarded: int = Field(..., ge=1)
    status: ClaimStatus = ClaimStatus.COMPLETED
    claim_method: ClaimMethod = ClaimMethod.QR_SCAN
    metadata: ClaimMetadata = Field(default_factory=ClaimMetadata)
    verification_data: VerificationData = Field(default_factory=VerificationData)
    claimed_at: datetime
    processed_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=1000)

    model_config = ConfigDict(from_attributes=True)

    def can_reverse(self) -> bool:
        return self.status != ClaimStatus.REVERSED


class Activity(BaseModel):
    id: UUID
    user_id: UUID
    activity_type: ActivityType
    title: str
    description: Optional[str] = None
    points_earned: int = Field(..., ge=0)
    qr_code_id: Optional[UUID] = None
    reward_id: Optional[UUID] = None
    partner_id: Optional[UUID] = None
    location: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeaderboardEntry(BaseModel):
    id: UUID
    user_id: UUID
    total_points: int = Field(default=0, ge=0)
    current_rank: Optional[int] = None
    previous_rank: Optional[int] = None
    rank_movement: RankMovement = RankMovement.NEW
    last_points_update: datetime
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class ClaimRequest(BaseModel):
    qr_code_id: str = Field(..., pattern=QR_CODE_PATTERN, description="Public QR code token")
    metadata: ClaimRequestMetadata = Field(default_factory=ClaimRequestMetadata)
    verification_data: VerificationData = Field(default_factory=VerificationData)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "qr_code_id": "qr_3f1c9a6e-6f0b-4b3e-9d55-7c1a2b3c4d5e",
            "metadata": {
                "location": {"latitude": 12.97, "longitude": 77.59},
                "device_info": {"platform": "android", "browser": "chrome"}
            }
        }
    })


class ReverseClaimRequest(BaseModel):
    reason: str = Field(..., min_length=10, max_length=500, description="Reason for reversal")
    performed_by: Optional[UUID] = None

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 10:
            raise ValueError("Reason must be at least 10 characters long")
        return value


class ActivityRequest(BaseModel):
    activity_type: ActivityType
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    location: Optional[str] = Field(default=None, max_length=200)


class CreateRewardRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    category: RewardCategory = RewardCategory.OTHER
    points: int = Field(..., ge=1, le=1000)
    max_claims_per_user: int = Field(default=1, ge=1, le=100)
    total_max_claims: Optional[int] = Field(default=None, ge=1)
    expiry_date: Optional[datetime] = None
    is_active: bool = True

    @field_validator("expiry_date")
    @classmethod
    def expiry_in_future(cls, value: Optional[datetime]) -> Optional[datetime]:
        value = as_utc(value)
        if value is not None and value <= utcnow():
            raise ValueError("Expiry date must be in the future")
        return value


class GenerateQRCodesRequest(BaseModel):
    reward_id: UUID
    quantity: int = Field(..., ge=1, le=100)
    batch_id: Optional[str] = Field(default=None, max_length=100)
    location: Optional[QRLocation] = None


class ClaimFilters(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    status: Optional[ClaimStatus] = None
    partner_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    reward_id: Optional[UUID] = None
    claim_method: Optional[ClaimMethod] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sort_by: str = Field(default="claimed_at", pattern=r"^(claimed_at|points_awarded)$")
    sort_order: str = Field(default="desc", pattern=r"^(asc|desc)$")

    @field_validator("start_date", "end_date")
    @classmethod
    def dates_as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class AvailabilityResult(BaseModel):
    valid: bool
    reason: str


class ClaimSummary(BaseModel):
    id: UUID
    points_awarded: int
    claimed_at: datetime
    status: ClaimStatus


class PartnerInfo(BaseModel):
    name: str
    logo: Optional[str] = None
    category: Optional[str] = None


class RewardInfo(BaseModel):
    title: str
    description: Optional[str] = None
    points: int
    category: RewardCategory


class UserPointsInfo(BaseModel):
    name: str
    total_points: int
    eco_level: EcoLevel
    points_earned: int


class ClaimResponse(BaseModel):
    claim: ClaimSummary
    partner: PartnerInfo
    reward: RewardInfo
    user: UserPointsInfo
    message: str = "Reward claimed successfully!"


class ScanResponse(BaseModel):
    qr_code: QRCode
    reward: Reward
    partner: PartnerInfo
    already_claimed: bool
    message: str


class ReversalResponse(BaseModel):
    claim_id: UUID
    status: ClaimStatus
    points_deducted: int
    reason: Optional[str] = None
    user_points: int
    eco_level: EcoLevel
    message: str = "Claim reversed successfully"


class ActivityResponse(BaseModel):
    activity: Activity
    points_earned: int
    new_total_points: int
    new_eco_level: EcoLevel
    message: str


class ClaimHistorySummary(BaseModel):
    total_points_earned: int
    total_claims: int
    category_summary: dict[str, int]


class ClaimHistoryResponse(BaseModel):
    user_id: UUID
    page: int
    limit: int
    claims: list[RewardClaim]
    summary: ClaimHistorySummary


class LevelProgress(BaseModel):
    next_level: Optional[EcoLevel] = None
    points_to_next_level: Optional[int] = None
    progress_percentage: float


class RecentClaim(BaseModel):
    title: str
    category: RewardCategory
    points: int
    claimed_at: datetime


class CategoryBreakdown(BaseModel):
    category: RewardCategory
    total_points: int
    total_claims: int


class PointsSummaryResponse(BaseModel):
    name: str
    current_points: int
    eco_level: EcoLevel
    total_claims: int
    progression: LevelProgress
    points_earned_recently: int
    claims_recently: int
    window_days: int
    recent_claims: list[RecentClaim]
    category_breakdown: list[CategoryBreakdown]


class ClaimListSummary(BaseModel):
    total_claims: int = 0
    total_points_awarded: int = 0
    unique_users: int = 0
    avg_points_per_claim: float = 0.0


class ClaimListResponse(BaseModel):
    claims: list[RewardClaim]
    total: int
    page: int
    limit: int
    pages: int
    summary: ClaimListSummary


class LeaderboardRow(BaseModel):
    rank: int
    user_id: UUID
    username: str
    points: int
    eco_level: EcoLevel
    movement: RankMovement


class LeaderboardPage(BaseModel):
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool
    entries: list[LeaderboardRow]


class UserRankResponse(BaseModel):
    user_id: UUID
    rank: Optional[int] = None
    username: str
    points: int
    movement: RankMovement
    eco_level: EcoLevel


class RankingUpdateResult(BaseModel):
    success: bool = True
    updated_count: int


class SyncResult(BaseModel):
    count: int
    synced_user_ids: list[UUID]


class LeaderboardStats(BaseModel):
    total_users: int
    top_user: Optional[UserRankResponse] = None
    average_points: float


class CounterDrift(BaseModel):
    entity: str
    entity_id: UUID
    field: str
    expected: int
    actual: int


class ReconciliationReport(BaseModel):
    checked_rewards: int
    checked_qr_codes: int
    checked_users: int
    repairs: list[CounterDrift]
    cleared_pending: int
    completed_at: datetime


class TopUser(BaseModel):
    user_id: UUID
    name: str
    email: str
    total_points: int
    total_claims: int


class TopUsersResponse(BaseModel):
    period: LeaderboardPeriod
    category: Optional[RewardCategory] = None
    users: list[TopUser]


class RecentActivity(BaseModel):
    activity: str
    points: int
    activity_type: ActivityType
    description: Optional[str] = None
    partner: Optional[str] = None
    created_at: datetime


class ActivityPage(BaseModel):
    user_id: UUID
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool
    activities: list[Activity]


class ActivityTypeBreakdown(BaseModel):
    activity_type: ActivityType
    count: int
    total_points: int


class ActivityStats(BaseModel):
    total_activities: int
    total_points_from_activities: int
    activity_breakdown: list[ActivityTypeBreakdown]


class QRClaimStatistics(BaseModel):
    total_claims: int = 0
    total_points_awarded: int = 0
    unique_users: int = 0
    last_claim_date: Optional[datetime] = None


class QRCodeSummary(BaseModel):
    qr_code: QRCode
    conversion_rate: float
    scan_url: str


class QRCodeDetails(QRCodeSummary):
    partner: Optional[PartnerInfo] = None
    reward: Optional[RewardInfo] = None
    statistics: QRClaimStatistics


class QRBatchStatistics(BaseModel):
    total_qr_codes: int
    total_scans: int
    total_successful_claims: int
    active_qr_codes: int
    average_scans_per_qr: float


class QRBatchResponse(BaseModel):
    batch_id: str
    statistics: QRBatchStatistics
    qr_codes: list[QRCodeSummary]


class QRStatusResponse(BaseModel):
    qr_code: str
    is_active: bool
    message: str
