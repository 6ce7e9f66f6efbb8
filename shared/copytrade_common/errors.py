"""Custom exceptions for the copy trading engine."""


class CopyTradeError(Exception):
    """Base exception for copy trading errors."""
    code = "copy_trade_error"


class ConfigurationError(CopyTradeError):
    """Raised when service settings are invalid."""
    code = "configuration_error"


class InvalidInput(CopyTradeError):
    """Raised for malformed or impossible input. Never guessed around."""
    code = "invalid_input"


class LedgerError(CopyTradeError):
    """Base class for ledger consistency violations."""
    code = "ledger_error"

    def __init__(self, movement_id: str, message: str = ""):
        self.movement_id = movement_id
        super().__init__(message or f"{self.code}: {movement_id}")


class DuplicateId(LedgerError):
    """Raised when a movement_id is already present in the ledger."""
    code = "duplicate_id"


class InvalidTransition(LedgerError):
    """Raised when a status transition is not allowed."""
    code = "invalid_transition"


class NotFound(LedgerError):
    """Raised when a movement_id is not in the ledger."""
    code = "not_found"


class AlreadySettled(LedgerError):
    """Raised when settling a movement that is already settled."""
    code = "already_settled"


class NotRecorded(LedgerError):
    """Raised when settling a movement that was never recorded."""
    code = "not_recorded"


class UpstreamError(CopyTradeError):
    """Base class for transient upstream failures."""
    code = "upstream_error"


class UpstreamRateLimited(UpstreamError):
    """Raised when the data source signals rate limiting (HTTP 429)."""
    code = "upstream_rate_limited"


class UpstreamUnavailable(UpstreamError):
    """Raised when the data source cannot be reached or answers with an error."""
    code = "upstream_unavailable"


class AuthRejected(CopyTradeError):
    """Raised when a write request carries a missing or invalid token."""
    code = "auth_rejected"


class RiskPolicyError(CopyTradeError):
    """Base class for writes refused by the risk limits."""
    code = "risk_policy"


class ExposureCapReached(RiskPolicyError):
    """Raised when a write would take open exposure past the configured cap."""
    code = "exposure_cap_reached"
