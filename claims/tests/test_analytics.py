"""
Read-side Tests: claim-ledger leaderboard, activity queries and QR analytics
"""

from datetime import timedelta

import pytest

from claims.exceptions import IneligibleError, NotFoundError
from claims.models import (
    ActivityRequest,
    ActivityType,
    ClaimRequest,
    LeaderboardPeriod,
    ReverseClaimRequest,
    RewardCategory,
    utcnow,
)
from claims.storage import (
    DEMO_QR_CODE,
    DEMO_SECOND_QR_CODE,
    DEMO_SECOND_USER_ID,
    DEMO_USER_ID,
)


class TestTopUsers:
    """Tests for the leaderboard computed from completed claims."""

    def test_all_time_ranking(self, service, make_reward):
        _, qr_codes = make_reward(points=60, quantity=1)
        service.claim_reward(DEMO_USER_ID, ClaimRequest(qr_code_id=DEMO_QR_CODE))
        service.claim_reward(DEMO_SECOND_USER_ID, ClaimRequest(qr_code_id=qr_codes[0].qr_code))

        result = service.get_top_users()

        assert result.period == LeaderboardPeriod.ALL_TIME
        assert [(u.user_id, u.total_points, u.total_claims) for u in result.users] == [
            (DEMO_SECOND_USER_ID, 60, 1),
            (DEMO_USER_ID, 25, 1),
        ]

    def test_reversed_claims_do_not_count(self, service):
        response = service.claim_reward(DEMO_USER_ID, ClaimRequest(qr_code_id=DEMO_QR_CODE))
        service.reverse_claim(response.claim.id, ReverseClaimRequest(reason="Duplicate submission"))

        assert service.get_top_users().users == []

    def test_period_window(self, service):
        service.claim_reward(DEMO_USER_ID, ClaimRequest(qr_code_id=DEMO_QR_CODE))

        later = utcnow() + timedelta(days=10)

        assert service.get_top_users(LeaderboardPeriod.MONTHLY, now=later).users
        assert service.get_top_users(LeaderboardPeriod.WEEKLY, now=later).users == []

    def test_category_filter(self, service):
        service.claim_reward(DEMO_USER_ID, ClaimRequest(qr_code_id=DEMO_QR_CODE))

        recycling = service.get_top_users(category=RewardCategory.RECYCLING)
        transport = service.get_top_users(category=RewardCategory.SUSTAINABLE_TRANSPORT)

        assert len(recycling.users) == 1
        assert transport.users == []

    def test_limit(self, service):
        service.claim_reward(DEMO_USER_ID, ClaimRequest(qr_code_id=DEMO_QR_CODE))
        service.claim_reward(DEMO_SECOND_USER_ID, ClaimRequest(qr_code_id=DEMO_SECOND_QR_CODE))

        assert len(service.get_top_users(limit=1).users) == 1


class TestActivityQueries:

    @pytest.fixture
    def logged(self, service):
        for activity_type, title in (
            (ActivityType.TREE_PLANTING, "Planted a sapling"),
            (ActivityType.DAILY_LOGIN, "Login"),
            (ActivityType.DAILY_LOGIN, "Login again"),
        ):
            service.log_activity(DEMO_USER_ID, ActivityRequest(activity_type=activity_type, title=title))
        return service

    def test_recent_activities_newest_first(self, logged):
        recent = logged.get_recent_activities(DEMO_USER_ID, limit=2)

        assert [a.activity for a in recent] == ["Login again", "Login"]
        assert recent[0].points == 10

    def test_user_activities_paged(self, logged):
        page = logged.get_user_activities(DEMO_USER_ID, page=2, limit=2)

        assert page.total == 3
        assert page.pages == 2
        assert page.has_prev and not page.has_next
        assert [a.title for a in page.activities] == ["Planted a sapling"]

    def test_activity_stats(self, logged):
        stats = logged.get_activity_stats(DEMO_USER_ID)

        assert stats.total_activities == 3
        assert stats.total_points_from_activities == 120
        breakdown = {b.activity_type: (b.count, b.total_points) for b in stats.activity_breakdown}
        assert breakdown == {
            ActivityType.TREE_PLANTING: (1, 100),
            ActivityType.DAILY_LOGIN: (2, 20),
        }

    def test_no_activities(self, service):
        stats = service.get_activity_stats(DEMO_SECOND_USER_ID)

        assert stats.total_activities == 0
        assert stats.activity_breakdown == []


class TestQRAnalytics:
    """Tests for the counters exposed per QR code and per batch."""

    def test_details_with_claim_statistics(self, service):
        service.scan_qr_code(DEMO_QR_CODE, DEMO_USER_ID)
        service.scan_qr_code(DEMO_QR_CODE, DEMO_SECOND_USER_ID)
        service.claim_reward(DEMO_USER_ID, ClaimRequest(qr_code_id=DEMO_QR_CODE))

        details = service.get_qr_code_details(DEMO_QR_CODE)

        assert details.qr_code.scan_count == 2
        assert details.conversion_rate == 50.0
        assert details.scan_url.endswith(f"/scan/{DEMO_QR_CODE}")
        assert details.statistics.total_claims == 1
        assert details.statistics.total_points_awarded == 25
        assert details.statistics.unique_users == 1
        assert details.reward.title == "Recycle 5 Plastic Bottles"

    def test_details_unknown_code(self, service):
        with pytest.raises(NotFoundError):
            service.get_qr_code_details("qr_00000000-0000-0000-0000-000000000000")

    def test_batch_statistics(self, service):
        service.scan_qr_code(DEMO_QR_CODE, DEMO_USER_ID)
        service.claim_reward(DEMO_USER_ID, ClaimRequest(qr_code_id=DEMO_QR_CODE))

        batch = service.get_qr_codes_by_batch("batch_demo")

        assert batch.statistics.total_qr_codes == 2
        assert batch.statistics.total_scans == 1
        assert batch.statistics.total_successful_claims == 1
        assert batch.statistics.active_qr_codes == 2
        assert batch.statistics.average_scans_per_qr == 0.5

    def test_unknown_batch(self, service):
        with pytest.raises(NotFoundError):
            service.get_qr_codes_by_batch("batch_missing")

    def test_top_performing_skips_inactive(self, service):
        service.claim_reward(DEMO_USER_ID, ClaimRequest(qr_code_id=DEMO_SECOND_QR_CODE))

        top = service.get_top_performing_qr_codes()
        assert top[0].qr_code.qr_code == DEMO_SECOND_QR_CODE

        service.toggle_qr_code_status(DEMO_SECOND_QR_CODE)
        assert [s.qr_code.qr_code for s in service.get_top_performing_qr_codes()] == [DEMO_QR_CODE]

    def test_toggle_blocks_claims(self, service):
        result = service.toggle_qr_code_status(DEMO_QR_CODE)

        assert result.is_active is False
        assert result.message == "QR code deactivated successfully"
        with pytest.raises(IneligibleError, match="QR code is inactive"):
            service.claim_reward(DEMO_USER_ID, ClaimRequest(qr_code_id=DEMO_QR_CODE))
        assert service.toggle_qr_code_status(DEMO_QR_CODE).is_active is True
