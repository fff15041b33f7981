"""
Eco Rewards Claim Service

This module provides:
- QR-code reward claims with duplicate and per-user quota guards
- Admin claim reversal (terminal, never double-deducts)
- Eco level tracking derived from point totals
- Leaderboard sync and full re-ranking
- Counter reconciliation from the claim ledger
"""

from .availability import check_availability
from .exceptions import (
    ClaimServiceError,
    NotFoundError,
    ValidationError,
    IneligibleError,
    DuplicateClaimError,
    QuotaExceededError,
    AlreadyReversedError,
    ConsistencyRepairNeeded,
    StorageUnavailableError,
)
from .leaderboard import LeaderboardService
from .levels import level_for, level_progress
from .models import (
    ClaimStatus,
    EcoLevel,
    RankMovement,
    User,
    Partner,
    Reward,
    QRCode,
    RewardClaim,
    LeaderboardEntry,
)
from .service import ClaimService
from .storage import InMemoryStorage

__all__ = [
    "check_availability",
    "ClaimServiceError",
    "NotFoundError",
    "ValidationError",
    "IneligibleError",
    "DuplicateClaimError",
    "QuotaExceededError",
    "AlreadyReversedError",
    "ConsistencyRepairNeeded",
    "StorageUnavailableError",
    "LeaderboardService",
    "level_for",
    "level_progress",
    "ClaimStatus",
    "EcoLevel",
    "RankMovement",
    "User",
    "Partner",
    "Reward",
    "QRCode",
    "RewardClaim",
    "LeaderboardEntry",
    "ClaimService",
    "InMemoryStorage",
]
