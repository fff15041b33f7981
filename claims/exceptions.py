from http import HTTPStatus
from typing import Any, Optional


class ClaimServiceError(Exception):
    status_code: int = HTTPStatus.BAD_REQUEST
    code: str = "CLAIM_SERVICE_ERROR"
    retryable: bool = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "retryable": self.retryable,
            }
        }

    def __str__(self) -> str:
        return self.message


class NotFoundError(ClaimServiceError):
    status_code = HTTPStatus.NOT_FOUND
    code = "NOT_FOUND"


class ValidationError(ClaimServiceError):
    code = "VALIDATION_ERROR"


class IneligibleError(ClaimServiceError):
    """Reward or partner failed an availability check."""
    code = "INELIGIBLE"


class DuplicateClaimError(ClaimServiceError):
    """The user already holds a live claim on this QR code."""
    code = "DUPLICATE_CLAIM"


class QuotaExceededError(ClaimServiceError):
    code = "QUOTA_EXCEEDED"


class AlreadyReversedError(ClaimServiceError):
    code = "ALREADY_REVERSED"


class StorageUnavailableError(ClaimServiceError):
    status_code = HTTPStatus.SERVICE_UNAVAILABLE
    code = "STORAGE_UNAVAILABLE"
    retryable = True


class ConsistencyRepairNeeded(ClaimServiceError):
    """
    A side-effect write failed after the claim record was committed.

    Never raised to callers of the claim protocol. Instances are logged and
    queued on the storage so ``reconcile_counters`` can repair the drift.
    """
    status_code = HTTPStatus.ACCEPTED
    code = "CONSISTENCY_REPAIR_NEEDED"

    def __init__(self, message: str, claim_id: Any, step: str, details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        details.update({"claim_id": str(claim_id), "step": step})
        super().__init__(message, details)
        self.claim_id = claim_id
        self.step = step
