from __future__ import annotations


class LinkSentinelError(RuntimeError):
    status_code: int = 400

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class PermissionDenied(LinkSentinelError):
    status_code = 403


class InvalidToken(LinkSentinelError):
    status_code = 400


class SessionExpired(LinkSentinelError):
    status_code = 409


class AlreadyRunning(LinkSentinelError):
    status_code = 409


class NotFound(LinkSentinelError):
    status_code = 404


class ValidationError(LinkSentinelError):
    status_code = 422


class UpstreamFailure(LinkSentinelError):
    """Network, DNS or timeout failure while resolving a URL."""

    status_code = 502


class PersistenceFailure(LinkSentinelError):
    status_code = 500
