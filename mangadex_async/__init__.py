"""Asynchronous client for the MangaDex API."""

from .api_client import MangaDexClient
from .auth import TokenRefresher
from .config import Config
from .credentials import CredentialStore
from .dispatcher import Auth, CallState, RequestDispatcher
from .errors import (
    ApiError,
    ApiErrorDetail,
    AuthError,
    DecodeError,
    MangaDexError,
    MissingTokens,
    NotFound,
    RateLimited,
    ServerError,
    TransportFailure,
    Unauthorized,
    ValidationFailed,
)
from .models import AtHomeServer, Author, Chapter, Credentials, Manga, Page, ScanlationGroup, Tag, TokenCheck
from .ratelimit import RateBudget, RateLimiter

__version__ = "0.1.0"

__all__ = [
    "MangaDexClient",
    "Config",
    "CredentialStore",
    "TokenRefresher",
    "RequestDispatcher",
    "RateLimiter",
    "RateBudget",
    "Auth",
    "CallState",
    "Credentials",
    "Manga",
    "Chapter",
    "Author",
    "ScanlationGroup",
    "Tag",
    "Page",
    "AtHomeServer",
    "TokenCheck",
    "MangaDexError",
    "ApiError",
    "ApiErrorDetail",
    "AuthError",
    "MissingTokens",
    "Unauthorized",
    "RateLimited",
    "NotFound",
    "ValidationFailed",
    "ServerError",
    "TransportFailure",
    "DecodeError",
]
