from datetime import datetime
from typing import Optional

from .models import AvailabilityResult, Partner, QRCode, Reward


def check_availability(
    qr_code: QRCode,
    reward: Optional[Reward],
    partner: Optional[Partner],
    now: Optional[datetime] = None,
) -> AvailabilityResult:
    """
    Decide whether a QR code can currently be scanned or claimed.

    Checks run in a fixed order and the first failure wins. Pure read; the
    caller resolves the reward and partner and passes ``None`` for a missing one.
    """
    if not qr_code.is_active:
        return AvailabilityResult(valid=False, reason="QR code is inactive")

    if reward is None:
        return AvailabilityResult(valid=False, reason="Associated reward not found")
    if not reward.is_active:
        return AvailabilityResult(valid=False, reason="Reward is inactive")
    if reward.is_expired(now):
        return AvailabilityResult(valid=False, reason="Reward has expired")
    if reward.is_maxed_out():
        return AvailabilityResult(valid=False, reason="Reward has reached maximum claims")

    if partner is None:
        return AvailabilityResult(valid=False, reason="Associated partner not found")
    if not partner.is_eligible_for_rewards():
        return AvailabilityResult(valid=False, reason="Partner is not eligible")

    return AvailabilityResult(valid=True, reason="QR code is valid")
