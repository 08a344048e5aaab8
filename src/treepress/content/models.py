from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Generic, Mapping, Optional, Sequence, TypeVar

from pydantic import BaseModel, ConfigDict, field_validator

from treepress.content.utils import ensure_utc, format_rfc3339

T = TypeVar("T")

SERIES_DESCRIPTOR = "series.toml"
POST_DESCRIPTOR = "config.toml"
POST_BODY = "content.mdx"


class Visibility(str, enum.Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    LIVE = "live"


def visibility_of(goes_live_at: Optional[datetime], now: datetime) -> Visibility:
    if goes_live_at is None:
        return Visibility.DRAFT
    if goes_live_at > now:
        return Visibility.SCHEDULED
    return Visibility.LIVE


class PostDescriptor(BaseModel):
    """Parsed `config.toml` of a post directory."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    title: str
    subtitle: Optional[str] = None
    preview_text: str
    preview_image: Optional[str] = None
    tags: Optional[tuple[str, ...]] = None
    # None = draft, past = live, future = scheduled
    goes_live_at: Optional[datetime] = None
    order: Optional[int] = None

    @field_validator("goes_live_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class SeriesDescriptor(BaseModel):
    """Parsed `series.toml` of a series directory."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    title: str
    description: Optional[str] = None
    preview_image: Optional[str] = None
    goes_live_at: Optional[datetime] = None

    @field_validator("goes_live_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


@dataclass(frozen=True, slots=True)
class PostRecord:
    slug: str
    title: str
    preview_text: str
    content: str
    subtitle: Optional[str] = None
    preview_image: Optional[str] = None
    tags: Optional[tuple[str, ...]] = None
    goes_live_at: Optional[datetime] = None
    order: Optional[int] = None
    series_slug: Optional[str] = None

    def summary_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "title": self.title,
            "subtitle": self.subtitle,
            "preview_text": self.preview_text,
            "preview_image": self.preview_image,
            "tags": list(self.tags) if self.tags is not None else None,
            "goes_live_at": format_rfc3339(self.goes_live_at),
            "series_slug": self.series_slug,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.summary_dict()
        payload["content"] = self.content
        if self.order is not None:
            payload["order"] = self.order
        return payload

    def series_member_dict(self) -> dict[str, Any]:
        payload = self.summary_dict()
        payload.pop("series_slug")
        payload["order"] = self.order
        return payload


@dataclass(frozen=True, slots=True)
class SeriesRecord:
    slug: str
    title: str
    post_slugs: tuple[str, ...] = ()
    description: Optional[str] = None
    preview_image: Optional[str] = None
    goes_live_at: Optional[datetime] = None

    def header_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "title": self.title,
            "description": self.description,
            "preview_image": self.preview_image,
            "goes_live_at": format_rfc3339(self.goes_live_at),
        }


@dataclass(frozen=True, slots=True)
class SeriesSummary:
    series: SeriesRecord
    post_count: int

    def to_dict(self) -> dict[str, Any]:
        payload = self.series.header_dict()
        payload["post_count"] = self.post_count
        return payload


@dataclass(frozen=True, slots=True)
class SeriesDetail:
    series: SeriesRecord
    posts: tuple[PostRecord, ...]

    def to_dict(self) -> dict[str, Any]:
        payload = self.series.header_dict()
        payload["posts"] = [post.series_member_dict() for post in self.posts]
        return payload


@dataclass(frozen=True, slots=True)
class ContentTree:
    """Read-only view of every loaded post and series. Replaced wholesale on refresh."""

    posts: Mapping[str, PostRecord] = field(default_factory=dict)
    series: Mapping[str, SeriesRecord] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "posts", MappingProxyType(dict(self.posts)))
        object.__setattr__(self, "series", MappingProxyType(dict(self.series)))


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message}


@dataclass(frozen=True, slots=True)
class CacheSnapshot:
    tree: ContentTree
    fingerprint: str
    loaded_at: datetime
    issues: tuple[ValidationIssue, ...] = ()


@dataclass(frozen=True, slots=True)
class ContentLimits:
    max_file_bytes: int
    max_total_bytes: int


@dataclass(frozen=True, slots=True)
class ListFilter:
    include_drafts: bool = False
    include_scheduled: bool = False


@dataclass(frozen=True, slots=True)
class ListResult(Generic[T]):
    items: Sequence[T]
    total: int
    limit: int
    offset: int
