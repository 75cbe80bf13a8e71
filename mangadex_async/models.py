import base64
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

from .errors import DecodeError

T = TypeVar("T")


def _require(obj: Any, key: str, kind: type = object) -> Any:
    if not isinstance(obj, dict):
        raise DecodeError(f"expected an object while reading '{key}', got {type(obj).__name__}")
    if key not in obj:
        raise DecodeError(f"missing field '{key}'")
    value = obj[key]
    if not isinstance(value, kind):
        raise DecodeError(f"field '{key}' should be {kind.__name__}, got {type(value).__name__}")
    return value


def _localized(value: Any) -> Dict[str, str]:
    # the API sends [] instead of {} for an empty localized string
    if isinstance(value, list) and not value:
        return {}
    if not isinstance(value, dict):
        raise DecodeError(f"expected a localized string, got {type(value).__name__}")
    return {str(k): str(v) for k, v in value.items()}


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise DecodeError(f"bad timestamp {value!r}") from e


def jwt_expiry(token: str) -> Optional[float]:
    """Unverified ``exp`` claim of a JWT, or None when ``token`` isn't one."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except ValueError:
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    return float(exp) if isinstance(exp, (int, float)) else None


@dataclass
class Credentials:
    access_token: str
    refresh_token: str
    expires_at: float

    def expires_within(self, margin: float, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return self.expires_at - current <= margin

    @classmethod
    def from_token_response(cls, payload: Any, default_lifetime: float,
                            now: Optional[float] = None) -> "Credentials":
        """Build credentials from a login or refresh response body.

        The access token lifetime comes from ``expires_in`` when present,
        then from the JWT ``exp`` claim, then from ``default_lifetime``.
        """
        current = time.time() if now is None else now
        token = _require(payload, "token", dict)
        access = _require(token, "session", str)
        refresh = _require(token, "refresh", str)

        expires_in = payload.get("expires_in", token.get("expires_in"))
        if isinstance(expires_in, (int, float)):
            expires_at = current + float(expires_in)
        else:
            expires_at = jwt_expiry(access) or current + default_lifetime
        return cls(access_token=access, refresh_token=refresh, expires_at=expires_at)


@dataclass
class Relationship:
    id: str
    type: str
    attributes: Optional[Dict[str, Any]] = None

    @classmethod
    def from_api(cls, obj: Any) -> "Relationship":
        attrs = obj.get("attributes") if isinstance(obj, dict) else None
        return cls(id=_require(obj, "id", str), type=_require(obj, "type", str),
                   attributes=attrs if isinstance(attrs, dict) else None)


def _relationships(obj: Mapping[str, Any]) -> List[Relationship]:
    return [Relationship.from_api(r) for r in obj.get("relationships") or []]


@dataclass
class Tag:
    id: str
    name: Dict[str, str]
    group: Optional[str] = None

    @classmethod
    def from_api(cls, obj: Any) -> "Tag":
        attrs = _require(obj, "attributes", dict)
        return cls(id=_require(obj, "id", str), name=_localized(_require(attrs, "name")),
                   group=attrs.get("group"))


@dataclass
class Manga:
    id: str
    title: Dict[str, str]
    alt_titles: List[Dict[str, str]] = field(default_factory=list)
    description: Dict[str, str] = field(default_factory=dict)
    original_language: Optional[str] = None
    status: Optional[str] = None
    year: Optional[int] = None
    content_rating: Optional[str] = None
    last_chapter: Optional[str] = None
    tags: List[Tag] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    relationships: List[Relationship] = field(default_factory=list)

    @property
    def display_title(self) -> str:
        if "en" in self.title:
            return self.title["en"]
        return next(iter(self.title.values()), self.id)

    @classmethod
    def from_api(cls, obj: Any) -> "Manga":
        attrs = _require(obj, "attributes", dict)
        return cls(
            id=_require(obj, "id", str),
            title=_localized(_require(attrs, "title")),
            alt_titles=[_localized(t) for t in attrs.get("altTitles") or []],
            description=_localized(attrs.get("description") or {}),
            original_language=attrs.get("originalLanguage"),
            status=attrs.get("status"),
            year=attrs.get("year"),
            content_rating=attrs.get("contentRating"),
            last_chapter=attrs.get("lastChapter"),
            tags=[Tag.from_api(t) for t in attrs.get("tags") or []],
            created_at=_timestamp(attrs.get("createdAt")),
            updated_at=_timestamp(attrs.get("updatedAt")),
            relationships=_relationships(obj),
        )


@dataclass
class Chapter:
    id: str
    volume: Optional[str]
    chapter: Optional[str]
    title: Optional[str]
    translated_language: Optional[str]
    pages: int = 0
    external_url: Optional[str] = None
    publish_at: Optional[datetime] = None
    relationships: List[Relationship] = field(default_factory=list)

    @property
    def manga_id(self) -> Optional[str]:
        for rel in self.relationships:
            if rel.type == "manga":
                return rel.id
        return None

    @property
    def group_names(self) -> List[str]:
        return [
            str(r.attributes.get("name"))
            for r in self.relationships
            if r.type == "scanlation_group" and r.attributes and r.attributes.get("name")
        ]

    @classmethod
    def from_api(cls, obj: Any) -> "Chapter":
        attrs = _require(obj, "attributes", dict)
        return cls(
            id=_require(obj, "id", str),
            volume=attrs.get("volume"),
            chapter=attrs.get("chapter"),
            title=attrs.get("title"),
            translated_language=attrs.get("translatedLanguage"),
            pages=int(attrs.get("pages") or 0),
            external_url=attrs.get("externalUrl"),
            publish_at=_timestamp(attrs.get("publishAt")),
            relationships=_relationships(obj),
        )


@dataclass
class Author:
    id: str
    name: str
    biography: Dict[str, str] = field(default_factory=dict)
    relationships: List[Relationship] = field(default_factory=list)

    @classmethod
    def from_api(cls, obj: Any) -> "Author":
        attrs = _require(obj, "attributes", dict)
        return cls(
            id=_require(obj, "id", str),
            name=_require(attrs, "name", str),
            biography=_localized(attrs.get("biography") or {}),
            relationships=_relationships(obj),
        )


@dataclass
class ScanlationGroup:
    id: str
    name: str
    website: Optional[str] = None
    locked: bool = False
    relationships: List[Relationship] = field(default_factory=list)

    @classmethod
    def from_api(cls, obj: Any) -> "ScanlationGroup":
        attrs = _require(obj, "attributes", dict)
        return cls(
            id=_require(obj, "id", str),
            name=_require(attrs, "name", str),
            website=attrs.get("website"),
            locked=bool(attrs.get("locked", False)),
            relationships=_relationships(obj),
        )


@dataclass
class Page(Generic[T]):
    """One page of a collection response."""

    results: List[T]
    limit: int
    offset: int
    total: int

    @classmethod
    def decoder(cls, item: Callable[[Any], T]) -> Callable[[Any], "Page[T]"]:
        def decode(payload: Any) -> "Page[T]":
            data = _require(payload, "data", list)
            return cls(
                results=[item(x) for x in data],
                limit=int(_require(payload, "limit", int)),
                offset=int(_require(payload, "offset", int)),
                total=int(_require(payload, "total", int)),
            )
        return decode


def entity(item: Callable[[Any], T]) -> Callable[[Any], T]:
    """Decoder for ``{"result": "ok", "data": {...}}`` responses."""
    def decode(payload: Any) -> T:
        return item(_require(payload, "data", dict))
    return decode


@dataclass
class AtHomeServer:
    base_url: str
    hash: str
    data: List[str]
    data_saver: List[str]

    def page_urls(self, data_saver: bool = False) -> List[str]:
        quality, files = ("data-saver", self.data_saver) if data_saver else ("data", self.data)
        base = self.base_url.rstrip("/")
        return [f"{base}/{quality}/{self.hash}/{name}" for name in files]

    @classmethod
    def from_api(cls, payload: Any) -> "AtHomeServer":
        chapter = _require(payload, "chapter", dict)
        return cls(
            base_url=_require(payload, "baseUrl", str),
            hash=_require(chapter, "hash", str),
            data=list(_require(chapter, "data", list)),
            data_saver=list(_require(chapter, "dataSaver", list)),
        )


@dataclass
class TokenCheck:
    is_authenticated: bool
    roles: List[str]
    permissions: List[str]

    @classmethod
    def from_api(cls, payload: Any) -> "TokenCheck":
        return cls(
            is_authenticated=_require(payload, "isAuthenticated", bool),
            roles=list(payload.get("roles") or []),
            permissions=list(payload.get("permissions") or []),
        )
