from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional, TypeVar

from treepress.config.models import ContentSettings
from treepress.content.loader import load_content
from treepress.content.models import (
    CacheSnapshot,
    ContentLimits,
    ListFilter,
    ListResult,
    PostRecord,
    SeriesDetail,
    SeriesRecord,
    SeriesSummary,
    ValidationIssue,
    Visibility,
    visibility_of,
)
from treepress.content.utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500

T = TypeVar("T")


def _is_listed(goes_live_at: Optional[datetime], flt: ListFilter, admin: bool, now: datetime) -> bool:
    visibility = visibility_of(goes_live_at, now)
    if visibility is Visibility.LIVE:
        return True
    if not admin:
        return False
    if visibility is Visibility.DRAFT:
        return flt.include_drafts
    return flt.include_scheduled


def _is_reachable(goes_live_at: Optional[datetime], admin: bool, now: datetime) -> bool:
    return admin or visibility_of(goes_live_at, now) is Visibility.LIVE


def _newest_first(items: Iterable[T], key: Callable[[T], tuple[Optional[datetime], str]]) -> list[T]:
    # Dated items newest first, undated (drafts) after them; slug breaks ties.
    dated: list[T] = []
    undated: list[T] = []
    for item in items:
        (dated if key(item)[0] is not None else undated).append(item)
    dated.sort(key=lambda item: key(item)[1])
    dated.sort(key=lambda item: key(item)[0], reverse=True)
    undated.sort(key=lambda item: key(item)[1])
    return dated + undated


def _page_bounds(limit: Optional[int], offset: Optional[int]) -> tuple[int, int]:
    effective_limit = DEFAULT_PAGE_SIZE if limit is None else max(0, min(limit, MAX_PAGE_SIZE))
    effective_offset = 0 if offset is None else max(0, offset)
    return effective_limit, effective_offset


def content_root(settings: ContentSettings) -> Path:
    return Path(settings.repo_path) / settings.content_dir


def content_limits(settings: ContentSettings) -> ContentLimits:
    return ContentLimits(max_file_bytes=settings.max_file_bytes, max_total_bytes=settings.max_total_bytes)


class ContentCache:
    """
    In-memory content index with visibility filtering.

    The live snapshot is an immutable value held in a single attribute. Readers
    take the reference once per call and never lock; `refresh()` builds the
    replacement on a worker thread and swaps the reference in one assignment,
    so a reader never sees a half-built tree and a slow refresh never blocks it.
    """

    def __init__(self, settings: ContentSettings, *, snapshot: Optional[CacheSnapshot] = None) -> None:
        self._settings = settings
        self._root = content_root(settings)
        self._limits = content_limits(settings)
        self._snapshot = snapshot if snapshot is not None else load_content(self._root, self._limits)
        self._refresh_lock = asyncio.Lock()

    @classmethod
    async def open(cls, settings: ContentSettings) -> ContentCache:
        """Create a cache whose initial load runs off the event loop."""
        snapshot = await asyncio.to_thread(load_content, content_root(settings), content_limits(settings))
        return cls(settings, snapshot=snapshot)

    @property
    def snapshot(self) -> CacheSnapshot:
        return self._snapshot

    @property
    def root(self) -> Path:
        return self._root

    async def refresh(self) -> CacheSnapshot:
        """
        Reload the tree from disk and make it live.

        On failure the previous snapshot stays active and the exception is
        raised to the caller.
        """
        async with self._refresh_lock:
            started = utc_now()
            snapshot = await asyncio.to_thread(load_content, self._root, self._limits)
            previous = self._snapshot
            self._snapshot = snapshot
        logger.info(
            "Content cache refreshed. fingerprint=%s previous=%s elapsed_ms=%d",
            snapshot.fingerprint[:12],
            previous.fingerprint[:12],
            int((snapshot.loaded_at - started).total_seconds() * 1000),
        )
        return snapshot

    def fingerprint(self) -> str:
        return self._snapshot.fingerprint

    def list_posts(
        self,
        flt: ListFilter = ListFilter(),
        *,
        admin: bool = False,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> ListResult[PostRecord]:
        tree = self._snapshot.tree
        now = utc_now()
        effective_limit, effective_offset = _page_bounds(limit, offset)

        matching = [post for post in tree.posts.values() if _is_listed(post.goes_live_at, flt, admin, now)]
        ordered = _newest_first(matching, key=lambda post: (post.goes_live_at, post.slug))
        page = ordered[effective_offset : effective_offset + effective_limit]
        return ListResult(items=page, total=len(ordered), limit=effective_limit, offset=effective_offset)

    def get_post(self, slug: str, *, admin: bool = False) -> Optional[PostRecord]:
        post = self._snapshot.tree.posts.get(slug)
        if post is None or not _is_reachable(post.goes_live_at, admin, utc_now()):
            return None
        return post

    def _visible_members(self, series: SeriesRecord, admin: bool, now: datetime) -> tuple[PostRecord, ...]:
        posts = self._snapshot.tree.posts
        members = (posts.get(slug) for slug in series.post_slugs)
        return tuple(
            post for post in members if post is not None and _is_reachable(post.goes_live_at, admin, now)
        )

    def list_series(
        self,
        flt: ListFilter = ListFilter(),
        *,
        admin: bool = False,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> ListResult[SeriesSummary]:
        tree = self._snapshot.tree
        now = utc_now()
        effective_limit, effective_offset = _page_bounds(limit, offset)

        matching = [s for s in tree.series.values() if _is_listed(s.goes_live_at, flt, admin, now)]
        ordered = _newest_first(matching, key=lambda s: (s.goes_live_at, s.slug))
        page = [
            SeriesSummary(series=s, post_count=len(self._visible_members(s, admin, now)))
            for s in ordered[effective_offset : effective_offset + effective_limit]
        ]
        return ListResult(items=page, total=len(ordered), limit=effective_limit, offset=effective_offset)

    def get_series(self, slug: str, *, admin: bool = False) -> Optional[SeriesDetail]:
        series = self._snapshot.tree.series.get(slug)
        now = utc_now()
        if series is None or not _is_reachable(series.goes_live_at, admin, now):
            return None
        return SeriesDetail(series=series, posts=self._visible_members(series, admin, now))

    def validate(self) -> list[ValidationIssue]:
        """Loader issues of the live snapshot plus semantic checks on what was loaded."""
        snapshot = self._snapshot
        issues = list(snapshot.issues)
        for slug, post in sorted(snapshot.tree.posts.items()):
            prefix = f"{post.series_slug}/{slug}" if post.series_slug else slug
            if not post.title.strip():
                issues.append(ValidationIssue(path=f"{prefix}/config.toml", message="Title cannot be empty"))
            if not post.preview_text.strip():
                issues.append(ValidationIssue(path=f"{prefix}/config.toml", message="preview_text cannot be empty"))
            if not post.content.strip():
                issues.append(ValidationIssue(path=f"{prefix}/content.mdx", message="Content cannot be empty"))
        for slug, series in sorted(snapshot.tree.series.items()):
            if not series.title.strip():
                issues.append(ValidationIssue(path=f"{slug}/series.toml", message="Title cannot be empty"))
        return issues
