import logging
import math
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .exceptions import NotFoundError
from .models import (
    EcoLevel,
    LeaderboardEntry,
    LeaderboardPage,
    LeaderboardRow,
    LeaderboardStats,
    RankingUpdateResult,
    RankMovement,
    SyncResult,
    UserRankResponse,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


def _ranking_key(entry: dict):
    return (-entry["total_points"], entry["created_at"])


def movement_for(current_rank: int, previous_rank: Optional[int]) -> RankMovement:
    if previous_rank is None:
        return RankMovement.NEW
    if current_rank < previous_rank:
        return RankMovement.UP
    if current_rank > previous_rank:
        return RankMovement.DOWN
    return RankMovement.NONE


class LeaderboardService:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def sync_user_points(self, user_id: UUID, points: int) -> LeaderboardEntry:
        now = datetime.now(timezone.utc)
        with self.storage.transaction():
            existing = self.storage.get_leaderboard_entry(user_id)
            if existing:
                entry = self.storage.update("leaderboard", existing["id"], {
                    "total_points": points,
                    "last_points_update": now,
                })
            else:
                entry = self.storage.insert("leaderboard", {
                    "id": uuid4(),
                    "user_id": user_id,
                    "total_points": points,
                    "current_rank": None,
                    "previous_rank": None,
                    "rank_movement": RankMovement.NEW,
                    "last_points_update": now,
                    "created_at": now,
                })
        return LeaderboardEntry(**entry)

    def sync_user(self, user_id: UUID) -> LeaderboardEntry:
        # Points are read under the lock so a late sync cannot write a stale total
        with self.storage.transaction():
            user = self.storage.get("users", user_id)
            if not user:
                raise NotFoundError("User not found", {"user_id": str(user_id)})
            return self.sync_user_points(user_id, user["points"])

    def update_all_rankings(self) -> RankingUpdateResult:
        with self.storage.transaction():
            # sorted() is stable, so equal keys keep stored order
            entries = sorted(self.storage.find("leaderboard"), key=_ranking_key)
            updates = []
            for index, entry in enumerate(entries):
                new_rank = index + 1
                previous = entry["current_rank"]
                updates.append((entry["id"], {
                    "previous_rank": previous,
                    "current_rank": new_rank,
                    "rank_movement": movement_for(new_rank, previous),
                }))
            if updates:
                self.storage.bulk_update("leaderboard", updates)

        logger.debug("Re-ranked %d leaderboard entries", len(updates))
        return RankingUpdateResult(success=True, updated_count=len(updates))

    def get_leaderboard(self, page: int = 1, limit: int = 10) -> LeaderboardPage:
        entries = sorted(self.storage.find("leaderboard"), key=_ranking_key)
        total = len(entries)
        skip = (page - 1) * limit

        rows = []
        for index, entry in enumerate(entries[skip:skip + limit]):
            user = self.storage.get("users", entry["user_id"]) or {}
            rows.append(LeaderboardRow(
                rank=skip + index + 1,
                user_id=entry["user_id"],
                username=user.get("name", "Unknown User"),
                points=entry["total_points"],
                eco_level=user.get("eco_level", EcoLevel.BEGINNER),
                movement=entry["rank_movement"],
            ))

        return LeaderboardPage(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
            has_next=skip + limit < total,
            has_prev=page > 1,
            entries=rows,
        )

    def get_user_rank(self, user_id: UUID) -> UserRankResponse:
        entry = self.storage.get_leaderboard_entry(user_id)
        if not entry:
            raise NotFoundError("User not found in leaderboard", {"user_id": str(user_id)})
        return self._rank_response(entry)

    def sync_all_users(self) -> SyncResult:
        with self.storage.transaction():
            users = self.storage.find("users")
            if not users:
                raise NotFoundError("No users found to sync")

            for user in users:
                self.sync_user_points(user["id"], user["points"])
            self.update_all_rankings()

        logger.info("Synced %d users to leaderboard", len(users))
        return SyncResult(count=len(users), synced_user_ids=[u["id"] for u in users])

    def get_stats(self) -> LeaderboardStats:
        entries = self.storage.find("leaderboard")
        if not entries:
            return LeaderboardStats(total_users=0, top_user=None, average_points=0.0)

        top = min(entries, key=_ranking_key)
        average = sum(e["total_points"] for e in entries) / len(entries)
        return LeaderboardStats(
            total_users=len(entries),
            top_user=self._rank_response(top),
            average_points=round(average, 2),
        )

    def _rank_response(self, entry: dict) -> UserRankResponse:
        user = self.storage.get("users", entry["user_id"]) or {}
        return UserRankResponse(
            user_id=entry["user_id"],
            rank=entry["current_rank"],
            username=user.get("name", "Unknown User"),
            points=entry["total_points"],
            movement=entry["rank_movement"],
            eco_level=user.get("eco_level", EcoLevel.BEGINNER),
        )
