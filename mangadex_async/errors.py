import json
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, List, Mapping, Optional, Union

Number = Union[int, float]


def _text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass
class ApiErrorDetail:
    """One entry of the ``errors`` array the API returns on failure."""

    id: Optional[str]
    status: int
    title: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def from_api(cls, obj: Mapping[str, Any]) -> "ApiErrorDetail":
        try:
            status = int(obj.get("status") or 0)
        except (TypeError, ValueError):
            status = 0
        return cls(
            id=obj.get("id"),
            status=status,
            title=_text(obj.get("title")),
            detail=_text(obj.get("detail")),
        )


class MangaDexError(Exception):
    """Base error for everything raised by this package."""


class AuthError(MangaDexError):
    """Login or token refresh failed; the session is gone."""


class MissingTokens(AuthError):
    """The endpoint requires authentication and no session exists."""

    def __init__(self, message: str = "not logged in"):
        super().__init__(message)


class TransportFailure(MangaDexError):
    """Connection, DNS or timeout error before a response was received.

    ``sent`` is False when no connection was ever made, so the server cannot
    have seen the request.
    """

    def __init__(self, message: str, *, sent: bool = True):
        super().__init__(message)
        self.sent = sent


class DecodeError(MangaDexError):
    """A successful response body did not have the expected shape."""


class ApiError(MangaDexError):
    def __init__(self, message: str, *, status: int = 0,
                 errors: Optional[List[ApiErrorDetail]] = None):
        super().__init__(message)
        self.status = status
        self.errors = errors or []


class Unauthorized(ApiError):
    pass


class NotFound(ApiError):
    pass


class ValidationFailed(ApiError):
    @property
    def details(self) -> List[str]:
        return [e.detail or e.title or "" for e in self.errors]


class ServerError(ApiError):
    pass


class RateLimited(ApiError):
    def __init__(self, message: str, *, retry_after: Optional[Number] = None,
                 status: int = 429, errors: Optional[List[ApiErrorDetail]] = None):
        super().__init__(message, status=status, errors=errors)
        self.retry_after = retry_after


def _parse_details(body: bytes) -> List[ApiErrorDetail]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return []
    items = payload.get("errors") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        return []
    return [ApiErrorDetail.from_api(e) for e in items if isinstance(e, dict)]


def parse_retry_after(headers: Mapping[str, str], now: Optional[float] = None) -> Optional[Number]:
    """Seconds to wait as hinted by a 429 response, or None."""
    value = headers.get("Retry-After")
    if value:
        value = value.strip()
        if value.isdigit():
            return int(value)
        try:
            return float(value)
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            when = None
        if when is not None:
            current = time.time() if now is None else now
            return max(0.0, when.timestamp() - current)

    # MangaDex sends an absolute epoch timestamp here
    value = headers.get("X-RateLimit-Retry-After")
    if value and value.strip().isdigit():
        current = time.time() if now is None else now
        return max(0.0, int(value) - current)
    return None


def error_from_response(status: int, headers: Mapping[str, str], body: bytes) -> ApiError:
    errors = _parse_details(body)
    summary = "; ".join(e.detail or e.title or "" for e in errors if e.detail or e.title)
    message = f"HTTP {status}" + (f": {summary}" if summary else "")

    if status == 429:
        return RateLimited(message, retry_after=parse_retry_after(headers), errors=errors)
    if status in (401, 403):
        return Unauthorized(message, status=status, errors=errors)
    if status == 404:
        return NotFound(message, status=status, errors=errors)
    if status in (400, 422):
        return ValidationFailed(message, status=status, errors=errors)
    if status >= 500:
        return ServerError(message, status=status, errors=errors)
    return ApiError(message, status=status, errors=errors)
