"""Typed rejection reasons shared by the service layer, the API and the client."""

from typing import Dict, Type


class PromptMasterError(Exception):
    """Base class for every error surfaced to a caller."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PromptMasterError):
    """Missing or malformed input the caller can correct."""

    status_code = 400


class AuthenticationError(PromptMasterError):
    """Bad credentials, or a missing, expired or tampered token."""

    status_code = 401


class AuthorizationError(PromptMasterError):
    """Authenticated, but the role or ownership does not allow the operation."""

    status_code = 403


class NotFoundError(PromptMasterError):
    """A referenced entity id does not exist."""

    status_code = 404


class ConflictError(PromptMasterError):
    """A unique name is already taken."""

    status_code = 409


class StoreError(PromptMasterError):
    status_code = 500


class UpstreamError(PromptMasterError):
    """The text-generation API failed or returned garbage."""

    status_code = 502


class ServiceUnavailableError(PromptMasterError):
    status_code = 503


ERRORS_BY_STATUS: Dict[int, Type[PromptMasterError]] = {
    cls.status_code: cls
    for cls in (
        ValidationError,
        AuthenticationError,
        AuthorizationError,
        NotFoundError,
        ConflictError,
        StoreError,
        UpstreamError,
        ServiceUnavailableError,
    )
}


def error_for_status(status_code: int, message: str) -> PromptMasterError:
    """Rebuild the typed error matching an HTTP status code."""
    cls = ERRORS_BY_STATUS.get(status_code, PromptMasterError)
    return cls(message)
