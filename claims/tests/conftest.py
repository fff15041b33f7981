import pytest

from claims.config import Settings
from claims.models import CreateRewardRequest, GenerateQRCodesRequest
from claims.service import ClaimService
from claims.storage import DEMO_PARTNER_ID, InMemoryStorage


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def service(settings):
    return ClaimService(storage=InMemoryStorage(timeout=settings.storage_timeout_seconds), settings=settings)


@pytest.fixture
def make_reward(service):
    """Create a reward for the demo partner with ``quantity`` QR codes."""

    def _make(points=25, max_claims_per_user=1, total_max_claims=None, expiry_date=None, quantity=2):
        reward = service.create_reward(DEMO_PARTNER_ID, CreateRewardRequest(
            title=f"Reward worth {points}",
            category="recycling",
            points=points,
            max_claims_per_user=max_claims_per_user,
            total_max_claims=total_max_claims,
            expiry_date=expiry_date,
        ))
        qr_codes = service.generate_qr_codes(DEMO_PARTNER_ID, GenerateQRCodesRequest(
            reward_id=reward.id,
            quantity=quantity,
        ))
        return reward, qr_codes

    return _make
