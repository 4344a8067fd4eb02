"""Exception types shared by the terminal's data layer."""
from typing import Optional


class PosError(Exception):
    """Base class for errors the terminal reports to the cashier."""
    http_status = 500

    def __init__(self, message: str = "", detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ConnectivityError(PosError):
    """Remote store unreachable or timed out."""
    http_status = 503


class AuthorizationError(PosError):
    """Remote rejected our credentials (401/403)."""
    http_status = 401


class ConflictError(PosError):
    """Write against a stale (or missing) revision."""
    http_status = 409


class ValidationError(PosError):
    """A precondition for the attempted action does not hold."""
    http_status = 400

    def __init__(self, message: str = "", rule: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.rule = rule


class NotFoundError(PosError):
    http_status = 404


class ConfigurationError(PosError):
    """Terminal is not set up for the action (e.g. no POS profile selected)."""
    http_status = 400


class StoreWriteError(PosError):
    """Local store refused or failed a write; the action can be retried."""
    http_status = 500


class RemoteStoreError(PosError):
    """Remote answered with an error we have no finer class for."""
    http_status = 502

    def __init__(self, message: str = "", status: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.status = status
