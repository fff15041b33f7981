"""
Unit Tests for the Claim Service

Tests cover:
1. Claim creation and its counter/point side effects
2. Duplicate and per-user quota guards
3. Availability rejections
4. Reversal flow
5. Scanning
6. Manual activities
"""

from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from claims.exceptions import (
    AlreadyReversedError,
    DuplicateClaimError,
    IneligibleError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from claims.models import (
    ActivityRequest,
    ClaimFilters,
    ClaimRequest,
    ClaimStatus,
    ClientInfo,
    EcoLevel,
    ReverseClaimRequest,
    VerificationStatus,
    utcnow,
)
from claims.storage import (
    DEMO_PARTNER_ID,
    DEMO_QR_CODE,
    DEMO_QR_ID,
    DEMO_REWARD_ID,
    DEMO_SECOND_QR_CODE,
    DEMO_SECOND_USER_ID,
    DEMO_USER_ID,
)


# Test constants
USER_ID = DEMO_USER_ID
OTHER_USER_ID = DEMO_SECOND_USER_ID
MISSING_ID = UUID("00000000-0000-0000-0000-000000000000")


def claim(service, qr_code, user_id=USER_ID, **kwargs):
    return service.claim_reward(user_id, ClaimRequest(qr_code_id=qr_code), **kwargs)


class TestClaimCreation:
    """Tests for the claim creation protocol."""

    def test_claim_awards_points_and_updates_counters(self, service):
        """Test the 25-point demo reward claim end to end."""
        response = claim(service, DEMO_QR_CODE)

        # Verify response
        assert response.claim.points_awarded == 25
        assert response.claim.status == ClaimStatus.COMPLETED
        assert response.user.total_points == 25
        assert response.user.points_earned == 25
        assert response.user.eco_level == EcoLevel.BEGINNER
        assert response.reward.title == "Recycle 5 Plastic Bottles"
        assert response.partner.name == "GreenTech Recycling"

        # Verify counters
        assert service.storage.get("rewards", DEMO_REWARD_ID)["current_claims"] == 1
        assert service.storage.get("qr_codes", DEMO_QR_ID)["successful_claims"] == 1

        # Verify user history
        user = service.get_user(USER_ID)
        assert user.points == 25
        assert len(user.claimed_rewards) == 1
        assert user.claimed_rewards[0].qr_code_id == DEMO_QR_ID

    def test_claim_captures_request_metadata(self, service):
        """Test that client and request metadata are stored verbatim."""
        request = ClaimRequest(
            qr_code_id=DEMO_QR_CODE,
            metadata={
                "location": {"latitude": 12.97, "longitude": 77.59, "address": "MG Road"},
                "device_info": {"platform": "android", "browser": "chrome"},
            },
        )
        response = service.claim_reward(
            USER_ID, request, ClientInfo(ip_address="10.0.0.7", user_agent="pytest-agent")
        )

        stored = service.get_claim(response.claim.id)
        assert stored.metadata.ip_address == "10.0.0.7"
        assert stored.metadata.user_agent == "pytest-agent"
        assert stored.metadata.location.address == "MG Road"
        assert stored.metadata.device_info.platform == "android"

    def test_unknown_qr_code_is_not_found(self, service):
        """Test that an unknown token fails before anything is written."""
        with pytest.raises(NotFoundError):
            claim(service, "qr_00000000-0000-0000-0000-000000000000")

        assert service.storage.count("claims") == 0

    def test_unknown_user_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            claim(service, DEMO_QR_CODE, user_id=MISSING_ID)

    def test_level_transition_on_claim(self, service, make_reward):
        """Test a user at 90 points crossing into intermediate."""
        # 90 points from an education activity
        service.log_activity(USER_ID, ActivityRequest(activity_type="education", title="Workshop"))
        reward, qr_codes = make_reward(points=15)

        response = claim(service, qr_codes[0].qr_code)

        assert response.user.total_points == 105
        assert response.user.eco_level == EcoLevel.INTERMEDIATE


class TestClaimGuards:
    """Tests for duplicate, quota and availability guards."""

    def test_duplicate_claim_rejected(self, service):
        """Test that re-claiming the same QR code is rejected without re-awarding."""
        first = claim(service, DEMO_QR_CODE)

        with pytest.raises(DuplicateClaimError) as exc_info:
            claim(service, DEMO_QR_CODE)

        # Existing claim info is returned
        existing = exc_info.value.details["existing_claim"]
        assert existing["points_awarded"] == 25
        assert existing["id"] == str(first.claim.id)

        # Counters unchanged
        assert service.get_user(USER_ID).points == 25
        assert service.storage.get("rewards", DEMO_REWARD_ID)["current_claims"] == 1
        assert service.storage.get("qr_codes", DEMO_QR_ID)["successful_claims"] == 1

    def test_second_qr_for_same_reward_hits_quota(self, service):
        """Test the per-user cap across distinct QR codes of one reward."""
        claim(service, DEMO_QR_CODE)

        with pytest.raises(QuotaExceededError) as exc_info:
            claim(service, DEMO_SECOND_QR_CODE)

        assert exc_info.value.details == {"user_claim_count": 1, "max_allowed": 1}
        assert service.storage.get("rewards", DEMO_REWARD_ID)["current_claims"] == 1
        assert service.get_user(USER_ID).points == 25

    def test_quota_allows_up_to_max_claims(self, service, make_reward):
        reward, qr_codes = make_reward(points=10, max_claims_per_user=2, quantity=3)

        claim(service, qr_codes[0].qr_code)
        claim(service, qr_codes[1].qr_code)
        with pytest.raises(QuotaExceededError):
            claim(service, qr_codes[2].qr_code)

        assert service.get_user(USER_ID).points == 20

    def test_maxed_out_reward_rejected_for_everyone(self, service, make_reward):
        """Test that a reward at its total cap rejects any requester."""
        reward, qr_codes = make_reward(total_max_claims=1)
        claim(service, qr_codes[0].qr_code, user_id=OTHER_USER_ID)

        with pytest.raises(IneligibleError) as exc_info:
            claim(service, qr_codes[1].qr_code)

        assert str(exc_info.value) == "Reward has reached maximum claims"
        assert service.storage.get("rewards", reward.id)["current_claims"] == 1

    def test_expired_reward_rejected(self, service, make_reward):
        reward, qr_codes = make_reward(expiry_date=utcnow() + timedelta(days=1))

        with pytest.raises(IneligibleError) as exc_info:
            claim(service, qr_codes[0].qr_code, now=utcnow() + timedelta(days=2))

        assert str(exc_info.value) == "Reward has expired"

    def test_ineligible_partner_rejected(self, service):
        service.storage.update("partners", DEMO_PARTNER_ID, {"verification_status": VerificationStatus.PENDING})

        with pytest.raises(IneligibleError) as exc_info:
            claim(service, DEMO_QR_CODE)

        assert str(exc_info.value) == "Partner is not eligible"
        assert service.storage.count("claims") == 0

    def test_inactive_qr_code_rejected(self, service):
        service.storage.update("qr_codes", DEMO_QR_ID, {"is_active": False})

        with pytest.raises(IneligibleError) as exc_info:
            claim(service, DEMO_QR_CODE)

        assert str(exc_info.value) == "QR code is inactive"


class TestReverseClaimFlow:
    """Tests for the claim reversal protocol."""

    def test_reverse_claim_undoes_effects(self, service):
        """Test reversing the demo claim with a short admin reason."""
        response = claim(service, DEMO_QR_CODE)

        reversal = service.reverse_claim(response.claim.id, ReverseClaimRequest(reason="fraudulent"))

        assert reversal.status == ClaimStatus.REVERSED
        assert reversal.points_deducted == 25
        assert reversal.reason == "Reversed: fraudulent"
        assert reversal.user_points == 0

        stored = service.get_claim(response.claim.id)
        assert stored.status == ClaimStatus.REVERSED
        assert stored.reversed_at is not None
        assert service.storage.get("rewards", DEMO_REWARD_ID)["current_claims"] == 0
        assert service.storage.get("qr_codes", DEMO_QR_ID)["successful_claims"] == 0

        # History is append-only
        assert len(service.get_user(USER_ID).claimed_rewards) == 1

    def test_cannot_reverse_already_reversed(self, service):
        """Test that a second reversal fails and deducts nothing."""
        service.log_activity(USER_ID, ActivityRequest(activity_type="daily_login", title="Login"))
        response = claim(service, DEMO_QR_CODE)
        service.reverse_claim(response.claim.id, ReverseClaimRequest(reason="First reversal"))
        points_after_first = service.get_user(USER_ID).points

        with pytest.raises(AlreadyReversedError):
            service.reverse_claim(response.claim.id, ReverseClaimRequest(reason="Second reversal"))

        assert points_after_first == 10
        assert service.get_user(USER_ID).points == 10
        assert service.storage.get("rewards", DEMO_REWARD_ID)["current_claims"] == 0

    def test_reverse_nonexistent_claim_fails(self, service):
        with pytest.raises(NotFoundError):
            service.reverse_claim(MISSING_ID, ReverseClaimRequest(reason="Does not exist"))

    def test_reversal_keeps_other_points(self, service, make_reward):
        """Test that reversal deducts only the reversed claim's award."""
        reward, qr_codes = make_reward(points=40)
        first = claim(service, DEMO_QR_CODE)
        claim(service, qr_codes[0].qr_code)

        service.reverse_claim(first.claim.id, ReverseClaimRequest(reason="Duplicate receipt"))

        user = service.get_user(USER_ID)
        assert user.points == 40
        assert user.eco_level == EcoLevel.BEGINNER

    def test_reversal_lowers_eco_level(self, service, make_reward):
        reward, qr_codes = make_reward(points=100)
        response = claim(service, qr_codes[0].qr_code)
        assert response.user.eco_level == EcoLevel.INTERMEDIATE

        reversal = service.reverse_claim(response.claim.id, ReverseClaimRequest(reason="Receipt was fake"))

        assert reversal.eco_level == EcoLevel.BEGINNER

    def test_code_is_claimable_again_after_reversal(self, service):
        """Test that only live claims count toward uniqueness and quota."""
        response = claim(service, DEMO_QR_CODE)
        service.reverse_claim(response.claim.id, ReverseClaimRequest(reason="Scanned by mistake"))

        again = claim(service, DEMO_QR_CODE)

        assert again.claim.id != response.claim.id
        assert service.storage.get("qr_codes", DEMO_QR_ID)["successful_claims"] == 1


class TestScanFlow:
    """Tests for QR code scanning."""

    def test_scan_records_counters(self, service):
        result = service.scan_qr_code(DEMO_QR_CODE, USER_ID)

        assert result.qr_code.scan_count == 1
        assert result.qr_code.unique_scans == 1
        assert result.qr_code.last_scanned_by == USER_ID
        assert result.already_claimed is False
        assert service.storage.get("partners", DEMO_PARTNER_ID)["total_scans"] == 1

    def test_scan_does_not_award_points(self, service):
        service.scan_qr_code(DEMO_QR_CODE, USER_ID)

        assert service.get_user(USER_ID).points == 0
        assert service.storage.count("claims") == 0

    def test_rescan_after_claim_is_not_unique(self, service):
        claim(service, DEMO_QR_CODE)

        result = service.scan_qr_code(DEMO_QR_CODE, USER_ID)

        assert result.qr_code.scan_count == 1
        assert result.qr_code.unique_scans == 0
        assert result.already_claimed is True
        assert result.qr_code.conversion_rate == 100.0

    def test_anonymous_scan(self, service):
        result = service.scan_qr_code(DEMO_QR_CODE)

        assert result.qr_code.scan_count == 1
        assert result.qr_code.unique_scans == 0

    def test_scan_of_unavailable_reward_rejected(self, service):
        service.storage.update("rewards", DEMO_REWARD_ID, {"is_active": False})

        with pytest.raises(IneligibleError):
            service.scan_qr_code(DEMO_QR_CODE, USER_ID)

        assert service.storage.get("qr_codes", DEMO_QR_ID)["scan_count"] == 0


class TestActivities:
    """Tests for manually logged activities."""

    def test_activity_credits_mapped_points(self, service):
        response = service.log_activity(
            USER_ID, ActivityRequest(activity_type="challenge_completion", title="30-day challenge")
        )

        assert response.points_earned == 150
        assert response.new_total_points == 150
        assert response.new_eco_level == EcoLevel.INTERMEDIATE

    def test_qr_activity_types_rejected(self, service):
        with pytest.raises(ValidationError):
            service.log_activity(USER_ID, ActivityRequest(activity_type="qr_scan", title="Sneaky"))

        assert service.get_user(USER_ID).points == 0


class TestClaimQueries:
    """Tests for history, summaries and admin listing."""

    def test_history_excludes_reversed(self, service, make_reward):
        reward, qr_codes = make_reward(points=40)
        first = claim(service, DEMO_QR_CODE)
        claim(service, qr_codes[0].qr_code)
        service.reverse_claim(first.claim.id, ReverseClaimRequest(reason="Reversed in test"))

        history = service.get_claim_history(USER_ID)

        assert history.summary.total_claims == 1
        assert history.summary.total_points_earned == 40
        assert history.summary.category_summary == {"recycling": 40}

    def test_points_summary(self, service):
        claim(service, DEMO_QR_CODE)

        summary = service.get_points_summary(USER_ID)

        assert summary.current_points == 25
        assert summary.claims_recently == 1
        assert summary.points_earned_recently == 25
        assert summary.progression.next_level == EcoLevel.INTERMEDIATE
        assert summary.progression.points_to_next_level == 75
        assert summary.recent_claims[0].title == "Recycle 5 Plastic Bottles"
        assert summary.category_breakdown[0].total_points == 25

    def test_points_summary_window(self, service):
        claim(service, DEMO_QR_CODE, now=utcnow() - timedelta(days=45))

        summary = service.get_points_summary(USER_ID)

        assert summary.current_points == 25
        assert summary.claims_recently == 0

    def test_list_claims_filters_and_summary(self, service):
        claim(service, DEMO_QR_CODE)
        claim(service, DEMO_QR_CODE, user_id=OTHER_USER_ID)

        listing = service.list_claims(ClaimFilters(user_id=OTHER_USER_ID))
        assert listing.total == 1
        assert listing.claims[0].user_id == OTHER_USER_ID

        everything = service.list_claims()
        assert everything.summary.total_claims == 2
        assert everything.summary.unique_users == 2
        assert everything.summary.avg_points_per_claim == 25.0

    def test_list_claims_with_dates_without_timezone(self, service):
        claim(service, DEMO_QR_CODE)

        filters = ClaimFilters(start_date=datetime(2024, 1, 1), end_date=datetime(2999, 1, 1))

        assert filters.start_date.tzinfo == timezone.utc
        assert service.list_claims(filters).total == 1
        assert service.list_claims(ClaimFilters(start_date=datetime(2999, 1, 1))).total == 0
