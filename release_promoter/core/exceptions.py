"""
Custom exceptions

- Layered exception hierarchy
- Standardized error codes and messages
- Retryability decided by exception type, not by message matching
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Error codes"""
    # General (1xxx)
    INTERNAL_ERROR = "E1000"
    INVALID_IMAGE_REFERENCE = "E1001"
    STAGE_ORDER = "E1002"
    INVALID_STATE_TRANSITION = "E1003"
    MANIFEST_ERROR = "E1004"

    # Target access (2xxx)
    AUTH_FAILURE = "E2000"
    TRANSIENT_NETWORK = "E2001"
    DEPLOY_FAILED = "E2002"

    # Rollout (3xxx)
    ROLLOUT_TIMEOUT = "E3000"

    # Approval (4xxx)
    APPROVAL_REQUIRED = "E4000"
    APPROVAL_REJECTED = "E4001"
    APPROVAL_CANCELLED = "E4002"
    APPROVAL_TIMEOUT = "E4003"


class PromoterException(Exception):
    """
    Base promoter exception

    Attributes:
        error_code: error code
        message: human readable message
        detail: extra debugging detail
    """

    retryable: bool = False

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "error": True,
            "code": self.error_code.name,
            "error_code": self.error_code.value,
            "message": self.message,
        }
        if self.detail:
            result["detail"] = self.detail
        return result


class InvalidImageReference(PromoterException):
    def __init__(self, reference: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.INVALID_IMAGE_REFERENCE,
            f"Invalid image reference: {reference!r}",
            detail,
        )


class StageOrderError(PromoterException):
    """Deploy requested for an image that did not pass the test stage of the run"""

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(ErrorCode.STAGE_ORDER, message, detail)


class InvalidStateTransition(PromoterException):
    def __init__(self, current: str, requested: str):
        super().__init__(
            ErrorCode.INVALID_STATE_TRANSITION,
            f"Illegal target state transition: {current} -> {requested}",
        )


class ManifestError(PromoterException):
    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(ErrorCode.MANIFEST_ERROR, message, detail)


# --- Target access ---


class DeployError(PromoterException):
    """Failure talking to a deploy target"""

    def __init__(
        self,
        error_code: ErrorCode = ErrorCode.DEPLOY_FAILED,
        message: str = "Deployment failed",
        detail: Optional[str] = None,
    ):
        super().__init__(error_code, message, detail)


class AuthFailure(DeployError):
    """Credential rejected. Surfaced immediately, never retried."""

    def __init__(self, target: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.AUTH_FAILURE,
            f"Credentials rejected by {target}",
            detail,
        )


class TransientNetworkError(DeployError):
    """Network hiccup or server-side error. Retried with backoff."""

    retryable = True

    def __init__(self, target: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.TRANSIENT_NETWORK,
            f"Transient network error talking to {target}",
            detail,
        )


class RolloutTimeout(DeployError):
    """Rollout did not converge in time. Requires manual remediation."""

    def __init__(self, deployment: str, timeout: float, detail: Optional[str] = None):
        self.deployment = deployment
        self.timeout = timeout
        super().__init__(
            ErrorCode.ROLLOUT_TIMEOUT,
            f"Rollout of {deployment} did not converge within {timeout:g}s",
            detail,
        )


# --- Approval ---


class ApprovalError(PromoterException):
    pass


class ApprovalRequired(ApprovalError):
    def __init__(self, target: str):
        super().__init__(
            ErrorCode.APPROVAL_REQUIRED,
            f"Deploy to {target} requires manual approval",
        )


class ApprovalRejected(ApprovalError):
    def __init__(self, reason: str = ""):
        super().__init__(
            ErrorCode.APPROVAL_REJECTED,
            "Deployment approval rejected",
            reason or None,
        )


class ApprovalCancelled(ApprovalError):
    def __init__(self, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.APPROVAL_CANCELLED,
            "Approval wait cancelled",
            detail,
        )


class ApprovalTimeout(ApprovalError):
    def __init__(self, timeout: float):
        super().__init__(
            ErrorCode.APPROVAL_TIMEOUT,
            f"No approval received within {timeout:g}s",
        )
