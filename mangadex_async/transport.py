import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import aiohttp

from .config import Config
from .errors import TransportFailure

logger = logging.getLogger(__name__)


@dataclass
class RawResponse:
    status: int
    headers: Mapping[str, str]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


@dataclass
class SendState:
    """Whether a request has left the connector queue for the network."""

    sent: bool = False


async def _mark_sent(session, trace_config_ctx, params) -> None:
    state = trace_config_ctx.trace_request_ctx
    if isinstance(state, SendState):
        state.sent = True


def _trace_config() -> aiohttp.TraceConfig:
    trace = aiohttp.TraceConfig()
    # a connection is being opened or reused: the request is on its way out
    trace.on_connection_create_start.append(_mark_sent)
    trace.on_connection_reuseconn.append(_mark_sent)
    return trace


class Transport:
    """One aiohttp session pointed at the API base URL."""

    def __init__(self, cfg: Config, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg
        self.base_url = cfg.api_base.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._headers = {
            "User-Agent": cfg.user_agent,
            "Accept": "application/json",
        }

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def open(self) -> None:
        if self._session is None:
            conn = aiohttp.TCPConnector(limit=self.cfg.max_connections)
            self._session = aiohttp.ClientSession(connector=conn, headers=self._headers,
                                                  trace_configs=[_trace_config()])

    async def close(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("transport is not open; use 'async with'")
        return self._session

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url + path

    async def send(self, method: str, path: str, *,
                   params: Optional[Mapping[str, Any]] = None,
                   body: Any = None,
                   token: Optional[str] = None,
                   state: Optional[SendState] = None) -> RawResponse:
        """Send one request.

        ``state.sent`` flips to True once the request leaves the connector
        queue. Sessions passed in from outside carry no trace hooks, so for
        them every request counts as sent from the start.
        """
        if state is None:
            state = SendState()
        if not self._owns_session:
            state.sent = True
        headers: Dict[str, str] = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        timeout = aiohttp.ClientTimeout(total=self.cfg.request_timeout)
        url = self.url(path)
        logger.debug("%s %s", method, url)
        try:
            async with self.session.request(method, url, params=_query(params), json=body,
                                            headers=headers, timeout=timeout,
                                            trace_request_ctx=state) as resp:
                data = await resp.read()
                return RawResponse(status=resp.status, headers=resp.headers.copy(), body=data)
        except aiohttp.ClientConnectorError as e:
            raise TransportFailure(f"{method} {url}: {e}", sent=False) from e
        except aiohttp.ClientError as e:
            raise TransportFailure(f"{method} {url}: {e}", sent=state.sent) from e
        except asyncio.TimeoutError as e:
            raise TransportFailure(f"{method} {url}: timed out", sent=state.sent) from e

    async def get_bytes(self, url: str, *, headers: Optional[Mapping[str, str]] = None) -> RawResponse:
        timeout = aiohttp.ClientTimeout(total=self.cfg.request_timeout * 2)
        try:
            async with self.session.get(url, headers=headers, timeout=timeout) as resp:
                data = await resp.read()
                return RawResponse(status=resp.status, headers=resp.headers.copy(), body=data)
        except aiohttp.ClientError as e:
            raise TransportFailure(f"GET {url}: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransportFailure(f"GET {url}: timed out") from e


def _query(params: Optional[Mapping[str, Any]]):
    """Flatten params into the ``key[]=a&key[]=b`` form the API expects."""
    if not params:
        return None
    items = []
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            items.extend((f"{key}[]", _scalar(v)) for v in value)
        elif isinstance(value, dict):
            items.extend((f"{key}[{k}]", _scalar(v)) for k, v in value.items())
        else:
            items.append((key, _scalar(value)))
    return items


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
