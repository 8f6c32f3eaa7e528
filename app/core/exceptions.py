"""Error taxonomy raised by the service layer.

Endpoints do not catch these; ``app.main`` maps each class to an HTTP status
through a single exception handler.
"""
from fastapi import status


class PanelError(Exception):
    """Base class for all domain errors."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(PanelError):
    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT


class NotFoundError(PanelError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(PanelError):
    status_code = status.HTTP_409_CONFLICT


class AlreadyRunningError(ConflictError):
    """The user already owns a running deployment (or one is being provisioned)."""

    def __init__(self, detail: str = "You already have an active bot running.", handle: str | None = None):
        super().__init__(detail)
        self.handle = handle


class AlreadyReviewedError(ConflictError):
    def __init__(self, detail: str = "Request already reviewed."):
        super().__init__(detail)


class InsufficientFundsError(PanelError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class ProvisioningError(PanelError):
    """Template copy or supervisor registration failed; partial state was cleaned up."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class AuthorizationError(PanelError):
    status_code = status.HTTP_403_FORBIDDEN


class SupervisorError(Exception):
    """The external process supervisor rejected or failed a command."""
