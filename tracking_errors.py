"""Error types shared by the tracking engine and the HTTP layer."""

from __future__ import annotations


class TrackingError(Exception):
    """Base class for recoverable tracking errors."""

    status_code = 500
    detail = "Tracking error."

    def __init__(self, message: str = ""):
        super().__init__(message or self.detail)
        self.message = message or self.detail


class InvalidRouteDefinition(TrackingError):
    """Raised while loading a catalog with malformed route data."""

    status_code = 500
    detail = "Invalid route definition."


class CredentialNotRecognized(TrackingError):
    status_code = 401
    detail = "Credential not recognized."


class Forbidden(TrackingError):
    status_code = 403
    detail = "Selection not permitted for this session."


class NotFound(TrackingError):
    status_code = 404
    detail = "Not found."


class SessionClosed(TrackingError):
    status_code = 410
    detail = "Tracking session closed."


__all__ = [
    "TrackingError",
    "InvalidRouteDefinition",
    "CredentialNotRecognized",
    "Forbidden",
    "NotFound",
    "SessionClosed",
]
