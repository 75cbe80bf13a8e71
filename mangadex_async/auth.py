import asyncio
import logging
from typing import Optional

from .credentials import CredentialStore
from .errors import AuthError, DecodeError, TransportFailure, error_from_response
from .models import Credentials
from .transport import Transport

logger = logging.getLogger(__name__)

REFRESH_PATH = "/auth/refresh"


class TokenRefresher:
    """Exchanges the refresh token for a new token pair.

    Callers racing on the same stale access token share one in-flight
    exchange; a refresh token is never sent to the server twice.
    """

    def __init__(self, store: CredentialStore, transport: Transport,
                 session_lifetime: float = 15 * 60):
        self.store = store
        self.transport = transport
        self.session_lifetime = session_lifetime
        self.exchanges = 0
        self._inflight: Optional[asyncio.Task] = None

    async def refresh(self, current: Credentials) -> Credentials:
        latest = self.store.get()
        if latest is None:
            raise AuthError("session was cleared, log in again")
        if latest.access_token != current.access_token:
            # someone else already refreshed this token
            return latest

        task = self._inflight
        if task is None:
            task = asyncio.ensure_future(self._exchange(latest))
            task.add_done_callback(self._finished)
            self._inflight = task
        # shield: one caller giving up must not cancel the exchange for the rest
        return await asyncio.shield(task)

    def _finished(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # mark the exception retrieved even if every waiter was cancelled
            task.exception()

    async def _exchange(self, stale: Credentials) -> Credentials:
        self.exchanges += 1
        logger.debug("refreshing session token")
        try:
            raw = await self.transport.send("POST", REFRESH_PATH, body={"token": stale.refresh_token})
        except TransportFailure:
            logger.warning("token refresh failed to reach the server")
            raise

        if not raw.ok:
            err = error_from_response(raw.status, raw.headers, raw.body)
            logger.warning("token refresh rejected: %s", err)
            self.store.clear()
            raise AuthError(f"token refresh failed: {err}") from err

        try:
            fresh = Credentials.from_token_response(raw.json(), self.session_lifetime)
        except (ValueError, DecodeError) as e:
            self.store.clear()
            raise AuthError(f"unreadable token refresh response: {e}") from e

        self.store.set(fresh)
        return fresh
