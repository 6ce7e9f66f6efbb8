"""Copy Trade Common - Shared enums, errors, and utilities for the copy trading engine."""

from .enums import MovementStatus, RejectReason, RateSignal, RiskLevel, StorageMode
from .time import utc_now_iso, parse_iso, day_key
from .errors import (
    CopyTradeError,
    ConfigurationError,
    InvalidInput,
    LedgerError,
    DuplicateId,
    InvalidTransition,
    NotFound,
    AlreadySettled,
    NotRecorded,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamUnavailable,
    AuthRejected,
    RiskPolicyError,
    ExposureCapReached,
)

__all__ = [
    # Enums
    "MovementStatus",
    "RejectReason",
    "RateSignal",
    "RiskLevel",
    "StorageMode",
    # Time utilities
    "utc_now_iso",
    "parse_iso",
    "day_key",
    # Errors
    "CopyTradeError",
    "ConfigurationError",
    "InvalidInput",
    "LedgerError",
    "DuplicateId",
    "InvalidTransition",
    "NotFound",
    "AlreadySettled",
    "NotRecorded",
    "UpstreamError",
    "UpstreamRateLimited",
    "UpstreamUnavailable",
    "AuthRejected",
    "RiskPolicyError",
    "ExposureCapReached",
]
