"""Error types shared by the upstream clients, refresh jobs and routes."""

from __future__ import annotations

from typing import Optional

from vanbeaches.models import ErrorCode


class UpstreamError(Exception):
    """Raised when a call to a third-party API fails."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RefreshError(Exception):
    """Raised by a refresh job after every item was attempted and some failed."""

    def __init__(self, label: str, failed: list[str], total: int):
        super().__init__(
            f"{label}: {len(failed)} of {total} failed ({', '.join(failed)})"
        )
        self.label = label
        self.failed = failed
        self.total = total


class AppError(Exception):
    """Route-level error carrying the API error code."""

    STATUS_CODES = {
        ErrorCode.not_found: 404,
        ErrorCode.rate_limited: 429,
        ErrorCode.service_unavailable: 503,
        ErrorCode.api_error: 500,
    }

    def __init__(
        self, code: ErrorCode, message: str, retry_after: Optional[int] = None
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retry_after = retry_after

    @property
    def status_code(self) -> int:
        return self.STATUS_CODES.get(self.code, 500)
