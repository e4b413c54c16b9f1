"""Core - settings, logging, exceptions, async helpers"""

from .config import Settings, get_settings
from .exceptions import (
    ErrorCode,
    PromoterException,
    DeployError,
    AuthFailure,
    TransientNetworkError,
    RolloutTimeout,
    ApprovalError,
    ApprovalRequired,
    ApprovalRejected,
    ApprovalCancelled,
    ApprovalTimeout,
    InvalidImageReference,
    InvalidStateTransition,
    StageOrderError,
    ManifestError,
)

__all__ = [
    "Settings",
    "get_settings",
    "ErrorCode",
    "PromoterException",
    "DeployError",
    "AuthFailure",
    "TransientNetworkError",
    "RolloutTimeout",
    "ApprovalError",
    "ApprovalRequired",
    "ApprovalRejected",
    "ApprovalCancelled",
    "ApprovalTimeout",
    "InvalidImageReference",
    "InvalidStateTransition",
    "StageOrderError",
    "ManifestError",
]
