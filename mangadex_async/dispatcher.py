import asyncio
import enum
import logging
import time
from typing import Any, Callable, Mapping, Optional, TypeVar

from .auth import TokenRefresher
from .credentials import CredentialStore
from .errors import AuthError, DecodeError, MissingTokens, TransportFailure, error_from_response
from .models import Credentials
from .ratelimit import RateLimiter
from .transport import RawResponse, SendState, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Auth(str, enum.Enum):
    NONE = "none"
    OPTIONAL = "optional"
    REQUIRED = "required"


class CallState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    FAILED = "failed"


class RequestDispatcher:
    """Sends one logical API call through auth, admission control and decoding.

    The only automatic retry is a single re-send after a 401 once the token
    has been refreshed. Every other failure is raised to the caller as a
    typed error.
    """

    def __init__(self, transport: Transport, store: CredentialStore,
                 refresher: TokenRefresher, limiter: RateLimiter, *,
                 refresh_margin: float = 60.0, blocking: bool = True,
                 clock: Optional[Callable[[], float]] = None):
        self.transport = transport
        self.store = store
        self.refresher = refresher
        self.limiter = limiter
        self.refresh_margin = refresh_margin
        self.blocking = blocking
        self.clock = clock or time.time

    async def _resolve_token(self, auth: Auth) -> Optional[Credentials]:
        if auth is Auth.NONE:
            return None
        creds = self.store.get()
        if creds is None:
            if auth is Auth.REQUIRED:
                raise MissingTokens()
            return None
        if creds.expires_within(self.refresh_margin, now=self.clock()):
            creds = await self.refresher.refresh(creds)
        return creds

    async def _dispatch(self, method: str, path: str, params, body,
                        creds: Optional[Credentials], blocking: bool) -> RawResponse:
        charged_at = await self.limiter.acquire(blocking)
        state = SendState()
        try:
            return await self.transport.send(
                method, path, params=params, body=body,
                token=creds.access_token if creds else None,
                state=state,
            )
        except TransportFailure as e:
            if not e.sent:
                self.limiter.refund(charged_at)
            raise
        except asyncio.CancelledError:
            # cancelled while still queued for a connection
            if not state.sent:
                self.limiter.refund(charged_at)
            raise

    async def raw(self, method: str, path: str, *,
                  auth: Auth = Auth.NONE,
                  blocking: Optional[bool] = None) -> RawResponse:
        """Admit and send one request, returning the undecoded response."""
        blocking = self.blocking if blocking is None else blocking
        creds = await self._resolve_token(Auth(auth))
        return await self._dispatch(method, path, None, None, creds, blocking)

    async def call(self, method: str, path: str, *,
                   params: Optional[Mapping[str, Any]] = None,
                   body: Any = None,
                   decode: Optional[Callable[[Any], T]] = None,
                   auth: Auth = Auth.OPTIONAL,
                   blocking: Optional[bool] = None) -> T:
        blocking = self.blocking if blocking is None else blocking
        auth = Auth(auth)

        creds = await self._resolve_token(auth)
        state = CallState.AUTHENTICATED if creds else CallState.UNAUTHENTICATED
        retried = False

        while True:
            raw = await self._dispatch(method, path, params, body, creds, blocking)

            if raw.status == 401 and state is CallState.AUTHENTICATED and not retried:
                logger.debug("%s %s: 401, refreshing token and retrying once", method, path)
                state = CallState.REFRESHING
                retried = True
                self.store.expire(creds.access_token)
                try:
                    creds = await self.refresher.refresh(creds)
                except AuthError:
                    state = CallState.FAILED
                    raise
                state = CallState.AUTHENTICATED
                continue

            return self._finish(method, path, raw, decode)

    def _finish(self, method: str, path: str, raw: RawResponse,
                decode: Optional[Callable[[Any], T]]) -> T:
        if not raw.ok:
            err = error_from_response(raw.status, raw.headers, raw.body)
            if raw.status == 429:
                logger.warning("%s %s: rate limited, retry after %s", method, path, err.retry_after)
            raise err

        if not raw.body.strip():
            payload = None
        else:
            try:
                payload = raw.json()
            except ValueError as e:
                raise DecodeError(f"{method} {path}: response is not JSON") from e

        if decode is None:
            return payload
        try:
            return decode(payload)
        except DecodeError as e:
            raise DecodeError(f"{method} {path}: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"{method} {path}: {e!r}") from e
