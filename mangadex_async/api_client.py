import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .auth import TokenRefresher
from .colors import Colors
from .config import Config
from .credentials import CredentialStore
from .dispatcher import Auth, RequestDispatcher
from .errors import (
    ApiError,
    AuthError,
    DecodeError,
    RateLimited,
    ServerError,
    TransportFailure,
    ValidationFailed,
    error_from_response,
    parse_retry_after,
)
from .models import (
    AtHomeServer,
    Author,
    Chapter,
    Credentials,
    Manga,
    Page,
    ScanlationGroup,
    Tag,
    TokenCheck,
    entity,
)
from .ratelimit import RateLimiter
from .transport import Transport

logger = logging.getLogger(__name__)


def _check_limit(limit: Optional[int]) -> None:
    if limit is not None and not 1 <= limit <= 100:
        raise ValidationFailed(f"limit must be between 1 and 100, got {limit}")


class MangaDexClient:

    def __init__(self, cfg: Optional[Config] = None, *,
                 store: Optional[CredentialStore] = None,
                 limiter: Optional[RateLimiter] = None):
        self.cfg = cfg or Config()
        self.store = store or CredentialStore()
        self.transport = Transport(self.cfg)
        self.limiter = limiter or RateLimiter(self.cfg.rate_limit_calls, self.cfg.rate_limit_window)
        self.refresher = TokenRefresher(self.store, self.transport, self.cfg.session_lifetime)
        self.dispatcher = RequestDispatcher(
            self.transport, self.store, self.refresher, self.limiter,
            refresh_margin=self.cfg.refresh_margin, blocking=self.cfg.blocking,
        )

    async def __aenter__(self):
        await self.transport.open()
        return self

    async def __aexit__(self, *args):
        await self.transport.close()

    @property
    def credentials(self) -> Optional[Credentials]:
        return self.store.get()

    # auth

    async def login(self, username: str, password: str) -> Credentials:
        if not 1 <= len(username) <= 64:
            raise ValidationFailed("username should be between 1 and 64 characters")
        if not 8 <= len(password) <= 1024:
            raise ValidationFailed("password should be between 8 and 1024 characters")

        try:
            creds = await self.dispatcher.call(
                "POST", "/auth/login",
                body={"username": username, "password": password},
                decode=lambda p: Credentials.from_token_response(p, self.cfg.session_lifetime),
                auth=Auth.NONE,
            )
        except (RateLimited, ServerError):
            raise
        except ApiError as e:
            raise AuthError(f"login failed: {e}") from e
        except DecodeError as e:
            raise AuthError(f"unreadable login response: {e}") from e

        self.store.set(creds)
        logger.info("logged in as %s", username)
        return creds

    async def logout(self) -> None:
        try:
            await self.dispatcher.call("POST", "/auth/logout", auth=Auth.REQUIRED)
        finally:
            self.store.clear()

    async def check_token(self) -> TokenCheck:
        return await self.dispatcher.call("GET", "/auth/check", decode=TokenCheck.from_api,
                                          auth=Auth.REQUIRED)

    async def refresh_tokens(self) -> Credentials:
        creds = self.store.get()
        if creds is None:
            raise AuthError("not logged in")
        return await self.refresher.refresh(creds)

    async def ping(self) -> None:
        raw = await self.dispatcher.raw("GET", "/ping")
        if not raw.ok:
            raise error_from_response(raw.status, raw.headers, raw.body)
        if raw.body.decode("utf-8", errors="replace").strip() != "pong":
            raise ApiError("invalid ping response", status=raw.status)

    # manga

    async def list_manga(self, title: Optional[str] = None, *,
                         limit: Optional[int] = None, offset: Optional[int] = None,
                         ids: Optional[Sequence[str]] = None,
                         authors: Optional[Sequence[str]] = None,
                         included_tags: Optional[Sequence[str]] = None,
                         excluded_tags: Optional[Sequence[str]] = None,
                         status: Optional[Sequence[str]] = None,
                         content_rating: Optional[Sequence[str]] = None,
                         year: Optional[int] = None,
                         order: Optional[Dict[str, str]] = None,
                         includes: Optional[Sequence[str]] = None) -> Page[Manga]:
        _check_limit(limit)
        params = {
            "title": title,
            "limit": limit,
            "offset": offset,
            "ids": ids,
            "authors": authors,
            "includedTags": included_tags,
            "excludedTags": excluded_tags,
            "status": status,
            "contentRating": content_rating,
            "year": year,
            "order": order,
            "includes": includes,
        }
        return await self.dispatcher.call("GET", "/manga", params=params,
                                          decode=Page.decoder(Manga.from_api))

    async def get_manga(self, manga_id: str, includes: Optional[Sequence[str]] = None) -> Manga:
        return await self.dispatcher.call("GET", f"/manga/{manga_id}",
                                          params={"includes": includes},
                                          decode=entity(Manga.from_api))

    async def random_manga(self) -> Manga:
        return await self.dispatcher.call("GET", "/manga/random", decode=entity(Manga.from_api))

    async def list_tags(self) -> List[Tag]:
        page = await self.dispatcher.call("GET", "/manga/tag", decode=Page.decoder(Tag.from_api))
        return page.results

    async def manga_feed(self, manga_id: str, *,
                         translated_language: Optional[Sequence[str]] = None,
                         limit: Optional[int] = None, offset: Optional[int] = None,
                         order: Optional[Dict[str, str]] = None,
                         includes: Optional[Sequence[str]] = None) -> Page[Chapter]:
        _check_limit(limit)
        params = {
            "translatedLanguage": translated_language,
            "limit": limit,
            "offset": offset,
            "order": order,
            "includes": includes,
        }
        return await self.dispatcher.call("GET", f"/manga/{manga_id}/feed", params=params,
                                          decode=Page.decoder(Chapter.from_api))

    # chapter

    async def get_chapter(self, chapter_id: str, includes: Optional[Sequence[str]] = None) -> Chapter:
        return await self.dispatcher.call("GET", f"/chapter/{chapter_id}",
                                          params={"includes": includes},
                                          decode=entity(Chapter.from_api))

    async def list_chapters(self, *, manga: Optional[str] = None,
                            ids: Optional[Sequence[str]] = None,
                            translated_language: Optional[Sequence[str]] = None,
                            limit: Optional[int] = None,
                            offset: Optional[int] = None) -> Page[Chapter]:
        _check_limit(limit)
        params = {
            "manga": manga,
            "ids": ids,
            "translatedLanguage": translated_language,
            "limit": limit,
            "offset": offset,
        }
        return await self.dispatcher.call("GET", "/chapter", params=params,
                                          decode=Page.decoder(Chapter.from_api))

    # author / group

    async def get_author(self, author_id: str) -> Author:
        return await self.dispatcher.call("GET", f"/author/{author_id}",
                                          decode=entity(Author.from_api))

    async def get_group(self, group_id: str) -> ScanlationGroup:
        return await self.dispatcher.call("GET", f"/group/{group_id}",
                                          decode=entity(ScanlationGroup.from_api))

    # MangaDex@Home

    async def get_at_home_server(self, chapter_id: str, force_port443: Optional[bool] = None) -> AtHomeServer:
        if force_port443 is None:
            force_port443 = self.cfg.force_port443
        return await self.dispatcher.call("GET", f"/at-home/server/{chapter_id}",
                                          params={"forcePort443": force_port443},
                                          decode=AtHomeServer.from_api)

    async def download_image(self, url: str, dest: Path, retries: Optional[int] = None) -> int:
        """Fetch one page from a MangaDex@Home node into ``dest``.

        These nodes sit outside the API, so transient failures are retried
        here with backoff. Returns the number of bytes written.
        """
        retries = retries or self.cfg.image_retries
        for attempt in range(retries):
            last = attempt == retries - 1
            try:
                raw = await self.transport.get_bytes(url)
            except TransportFailure as e:
                if last:
                    print(Colors.error(f"Image download failed after {retries} attempts: {e}"))
                    raise
                await asyncio.sleep(0.2 * (attempt + 1))
                continue

            if raw.status == 429 and not last:
                wait = self._retry_delay(raw.headers, attempt)
                print(Colors.warning(
                    f"Rate limit (429) for image. Retry in {wait:.2f}s... "
                    f"(Attempt {attempt + 1}/{retries})"
                ))
                await asyncio.sleep(wait)
                continue

            if raw.status >= 500 and not last:
                await asyncio.sleep(0.2 * (attempt + 1))
                continue

            if not raw.ok:
                raise error_from_response(raw.status, raw.headers, raw.body)
            if not raw.body:
                raise ApiError(f"empty image response from {url}", status=raw.status)

            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(raw.body)
            return len(raw.body)

        raise RuntimeError("Retries exhausted")

    @staticmethod
    def _retry_delay(headers: Any, attempt: int) -> float:
        retry_after = parse_retry_after(headers)
        if retry_after is not None:
            return float(retry_after) + 1.0
        return min(2 ** attempt, 60) + 0.1 * attempt
