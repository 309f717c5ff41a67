from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """
    Base for every failure the sync engine classifies.

    status_code is the HTTP status an endpoint should answer with when the
    error escapes to the API layer; detail is a JSON-safe payload for
    SyncSession.error_details and API envelopes.
    """

    status_code: int = 500

    def __init__(self, message: str, *, detail: Any = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code

    def as_detail(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": type(self).__name__, "message": self.message}
        if self.detail is not None:
            out["detail"] = self.detail
        return out


class TransportFailure(SyncError):
    # timeout, DNS, connection refused: upstream never answered
    status_code = 502


class UpstreamRejection(SyncError):
    """Upstream answered with a non-2xx status or a `success: false` envelope."""

    status_code = 502

    def __init__(self, message: str, *, upstream_status: int | None = None, detail: Any = None):
        super().__init__(message, detail=detail)
        self.upstream_status = upstream_status

    @property
    def retryable(self) -> bool:
        return self.upstream_status in (408, 429, 500, 502, 503, 504)

    def as_detail(self) -> dict[str, Any]:
        out = super().as_detail()
        out["upstream_status"] = self.upstream_status
        return out


class ValidationFailure(SyncError):
    status_code = 422


class PersistenceFailure(SyncError):
    status_code = 500


class ConfigurationFailure(SyncError):
    status_code = 400


class AuthenticationFailure(SyncError):
    # missing or wrong shared secret (webhook, cron)
    status_code = 401


class PermissionFailure(SyncError):
    status_code = 403
