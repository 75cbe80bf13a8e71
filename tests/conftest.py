import base64
import json
import os
import time

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from dotenv import load_dotenv

from mangadex_async import Config, Credentials

load_dotenv()


class FakeClock:
    def __init__(self, t: float = 0.0):
        self.t = t
        self.sleeps = []

    def time(self):
        return self.t

    async def sleep(self, dt):
        self.sleeps.append(dt)
        self.t += dt


def make_jwt(exp: float) -> str:
    def part(obj):
        raw = json.dumps(obj).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
    return f"{part({'alg': 'HS256', 'typ': 'JWT'})}.{part({'exp': int(exp), 'typ': 'session'})}.sig"


def local_config(base_url: str, **overrides) -> Config:
    """Config pointed at a local server with a budget tests never exhaust."""
    overrides.setdefault("rate_limit_calls", 1000)
    return Config(api_base=base_url, **overrides)


def fresh_credentials(access="session-1", refresh="refresh-1", ttl=900.0) -> Credentials:
    return Credentials(access_token=access, refresh_token=refresh, expires_at=time.time() + ttl)


def expired_credentials(access="session-1", refresh="refresh-1") -> Credentials:
    return Credentials(access_token=access, refresh_token=refresh, expires_at=time.time() - 10)


def token_body(session="session-2", refresh="refresh-2", **extra):
    body = {"result": "ok", "token": {"session": session, "refresh": refresh}}
    body.update(extra)
    return body


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def serve():
    """Start a local aiohttp app from a list of routes and return its base URL."""
    servers = []

    async def start(routes):
        app = web.Application()
        app.add_routes(routes)
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return str(server.make_url("/"))

    yield start
    for server in servers:
        await server.close()


@pytest.fixture
def live_credentials():
    username = os.environ.get("TEST_MANGADEX_USERNAME")
    password = os.environ.get("TEST_MANGADEX_PASSWORD")
    if not username or not password:
        pytest.skip("TEST_MANGADEX_USERNAME / TEST_MANGADEX_PASSWORD not set")
    return username, password
