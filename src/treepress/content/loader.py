from __future__ import annotations

import errno
import logging
import os
import re
import stat
import tomllib
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from treepress.content.fingerprint import compute_fingerprint
from treepress.content.models import (
    POST_BODY,
    POST_DESCRIPTOR,
    SERIES_DESCRIPTOR,
    CacheSnapshot,
    ContentLimits,
    ContentTree,
    PostDescriptor,
    PostRecord,
    SeriesDescriptor,
    SeriesRecord,
    ValidationIssue,
)
from treepress.content.utils import utc_now

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)


class ContentLoadError(Exception):
    """The content root itself could not be read; no snapshot was produced."""


class _UnitSkipped(Exception):
    def __init__(self, path: Path, message: str) -> None:
        super().__init__(message)
        self.path = path


class _BudgetExhausted(Exception):
    pass


def series_order_key(post: PostRecord) -> tuple[int, int, str]:
    # Explicit order first (ascending), then posts without one; slug breaks ties.
    if post.order is None:
        return (1, 0, post.slug)
    return (0, post.order, post.slug)


class _ReadBudget:
    """
    Bounded file reads: a per-file cap plus a cap on bytes read across the whole load.

    Reads are held as pending until the unit they belong to is committed; a
    skipped unit rolls back so only loaded content counts toward the total.
    """

    def __init__(self, limits: ContentLimits) -> None:
        self._limits = limits
        self.used = 0
        self._pending = 0
        self.exhausted = False

    def _charge(self, size: int) -> None:
        if self.used + self._pending + size > self._limits.max_total_bytes:
            self.exhausted = True
            raise _BudgetExhausted()

    def read(self, path: Path) -> bytes:
        if self.exhausted:
            raise _BudgetExhausted()

        try:
            st = os.lstat(path)
        except OSError as e:
            raise _UnitSkipped(path, f"Cannot stat file: {e.strerror}") from e
        if stat.S_ISLNK(st.st_mode):
            raise _UnitSkipped(path, "Symbolic link skipped")
        if not stat.S_ISREG(st.st_mode):
            raise _UnitSkipped(path, "Not a regular file")
        if st.st_size > self._limits.max_file_bytes:
            raise _UnitSkipped(path, f"File exceeds size limit of {self._limits.max_file_bytes} bytes")
        self._charge(st.st_size)

        try:
            fd = os.open(path, os.O_RDONLY | _O_NOFOLLOW)
        except OSError as e:
            if e.errno == errno.ELOOP:
                raise _UnitSkipped(path, "Symbolic link skipped") from e
            raise _UnitSkipped(path, f"Cannot open file: {e.strerror}") from e
        with os.fdopen(fd, "rb") as handle:
            data = handle.read(self._limits.max_file_bytes + 1)

        # The file may have changed between lstat and read.
        if len(data) > self._limits.max_file_bytes:
            raise _UnitSkipped(path, f"File exceeds size limit of {self._limits.max_file_bytes} bytes")
        self._charge(len(data))
        self._pending += len(data)
        return data

    def commit(self) -> None:
        self.used += self._pending
        self._pending = 0

    def rollback(self) -> None:
        self._pending = 0


class _TreeBuilder:
    def __init__(self, root: Path, limits: ContentLimits) -> None:
        self._root = root
        self._limits = limits
        self._budget = _ReadBudget(limits)
        self._posts: dict[str, PostRecord] = {}
        self._series: dict[str, SeriesRecord] = {}
        self._entries: list[tuple[str, bytes]] = []
        self._issues: list[ValidationIssue] = []
        self._budget_reported = False

    def _rel(self, path: Path) -> str:
        try:
            return path.relative_to(self._root).as_posix()
        except ValueError:
            return path.as_posix()

    def _issue(self, path: Path, message: str) -> None:
        rel = self._rel(path)
        logger.warning("Content unit skipped. path=%s reason=%s", rel, message)
        self._issues.append(ValidationIssue(path=rel, message=message))

    def _report_budget(self, path: Path) -> None:
        if self._budget_reported:
            return
        self._budget_reported = True
        rel = self._rel(path)
        logger.warning(
            "Cumulative content size limit reached, remaining files not loaded. path=%s loaded_bytes=%d limit=%d",
            rel,
            self._budget.used,
            self._limits.max_total_bytes,
        )
        self._issues.append(
            ValidationIssue(
                path=rel,
                message=f"Cumulative content size limit of {self._limits.max_total_bytes} bytes reached; "
                "this and later files were not loaded",
            )
        )

    def _scan(self, directory: Path) -> Iterator[os.DirEntry[str]]:
        with os.scandir(directory) as it:
            entries = sorted((e for e in it if not e.name.startswith(".")), key=lambda e: e.name)
        return iter(entries)

    def _candidate_dir(self, entry: os.DirEntry[str]) -> Optional[Path]:
        path = Path(entry.path)
        if entry.is_symlink():
            self._issue(path, "Symbolic link skipped")
            return None
        if not entry.is_dir(follow_symlinks=False):
            return None
        if not SLUG_PATTERN.match(entry.name):
            self._issue(path, "Directory name is not a valid slug")
            return None
        return path

    def _is_post_dir(self, path: Path) -> bool:
        has_descriptor = os.path.lexists(path / POST_DESCRIPTOR)
        has_body = os.path.lexists(path / POST_BODY)
        if has_descriptor and not has_body:
            self._issue(path, f"Post directory has {POST_DESCRIPTOR} but no {POST_BODY}")
        elif has_body and not has_descriptor:
            self._issue(path, f"Post directory has {POST_BODY} but no {POST_DESCRIPTOR}")
        return has_descriptor and has_body

    def build(self) -> CacheSnapshot:
        try:
            if self._root.is_symlink():
                raise ContentLoadError(f"Content root is a symbolic link: {self._root}")
            if not self._root.exists():
                logger.info("Content root does not exist, serving an empty tree. path=%s", self._root)
                return self._snapshot()
            if not self._root.is_dir():
                raise ContentLoadError(f"Content root is not a directory: {self._root}")
            entries = self._scan(self._root)
        except OSError as e:
            raise ContentLoadError(f"Failed to read content root: {self._root}") from e

        for entry in entries:
            if self._budget.exhausted:
                break
            path = self._candidate_dir(entry)
            if path is None:
                continue
            if os.path.lexists(path / SERIES_DESCRIPTOR):
                self._load_series(path, entry.name)
            elif self._is_post_dir(path):
                self._load_post(path, entry.name, series_slug=None)

        return self._snapshot()

    def _snapshot(self) -> CacheSnapshot:
        snapshot = CacheSnapshot(
            tree=ContentTree(posts=self._posts, series=self._series),
            fingerprint=compute_fingerprint(self._entries),
            loaded_at=utc_now(),
            issues=tuple(self._issues),
        )
        if self._issues:
            logger.warning(
                "Content loaded with issues. posts=%d series=%d issues=%d bytes=%d",
                len(self._posts),
                len(self._series),
                len(self._issues),
                self._budget.used,
            )
        else:
            logger.info(
                "Content loaded. posts=%d series=%d bytes=%d",
                len(self._posts),
                len(self._series),
                self._budget.used,
            )
        return snapshot

    def _load_post(self, path: Path, slug: str, *, series_slug: Optional[str]) -> Optional[PostRecord]:
        post = self._read_post(path, slug, series_slug=series_slug)
        if post is None:
            self._budget.rollback()
        else:
            self._budget.commit()
        return post

    def _read_post(self, path: Path, slug: str, *, series_slug: Optional[str]) -> Optional[PostRecord]:
        descriptor_path = path / POST_DESCRIPTOR
        body_path = path / POST_BODY
        try:
            descriptor_bytes = self._budget.read(descriptor_path)
            body_bytes = self._budget.read(body_path)
            descriptor = PostDescriptor.model_validate(tomllib.loads(descriptor_bytes.decode("utf-8")))
            body = body_bytes.decode("utf-8")
        except _BudgetExhausted:
            self._report_budget(path)
            return None
        except _UnitSkipped as e:
            self._issue(e.path, str(e))
            return None
        except UnicodeDecodeError:
            self._issue(path, "File is not valid UTF-8")
            return None
        except (tomllib.TOMLDecodeError, ValidationError) as e:
            self._issue(descriptor_path, f"Invalid post descriptor: {e}")
            return None

        if slug in self._posts:
            self._issue(path, f"Duplicate post slug '{slug}'")
            return None

        post = PostRecord(
            slug=slug,
            title=descriptor.title,
            subtitle=descriptor.subtitle,
            preview_text=descriptor.preview_text,
            preview_image=descriptor.preview_image,
            tags=descriptor.tags,
            goes_live_at=descriptor.goes_live_at,
            order=descriptor.order,
            series_slug=series_slug,
            content=body,
        )
        self._posts[slug] = post
        self._entries.append((self._rel(descriptor_path), descriptor_bytes))
        self._entries.append((self._rel(body_path), body_bytes))
        return post

    def _read_series_descriptor(self, path: Path) -> Optional[tuple[SeriesDescriptor, bytes]]:
        descriptor_path = path / SERIES_DESCRIPTOR
        try:
            descriptor_bytes = self._budget.read(descriptor_path)
            descriptor = SeriesDescriptor.model_validate(tomllib.loads(descriptor_bytes.decode("utf-8")))
        except _BudgetExhausted:
            self._report_budget(path)
            return None
        except _UnitSkipped as e:
            self._issue(e.path, str(e))
            return None
        except UnicodeDecodeError:
            self._issue(descriptor_path, "File is not valid UTF-8")
            return None
        except (tomllib.TOMLDecodeError, ValidationError) as e:
            self._issue(descriptor_path, f"Invalid series descriptor: {e}")
            return None
        return descriptor, descriptor_bytes

    def _load_series(self, path: Path, slug: str) -> None:
        descriptor_path = path / SERIES_DESCRIPTOR
        parsed = self._read_series_descriptor(path)
        if parsed is None:
            self._budget.rollback()
            return
        descriptor, descriptor_bytes = parsed

        try:
            children = self._scan(path)
        except OSError as e:
            self._budget.rollback()
            self._issue(path, f"Cannot list series directory: {e.strerror}")
            return
        self._budget.commit()

        members: list[PostRecord] = []
        for child in children:
            if self._budget.exhausted:
                break
            child_path = self._candidate_dir(child)
            if child_path is None:
                continue
            if os.path.lexists(child_path / SERIES_DESCRIPTOR):
                self._issue(child_path, "Nested series are not supported")
                continue
            if not self._is_post_dir(child_path):
                continue
            post = self._load_post(child_path, child.name, series_slug=slug)
            if post is not None:
                members.append(post)

        members.sort(key=series_order_key)
        self._series[slug] = SeriesRecord(
            slug=slug,
            title=descriptor.title,
            description=descriptor.description,
            preview_image=descriptor.preview_image,
            goes_live_at=descriptor.goes_live_at,
            post_slugs=tuple(post.slug for post in members),
        )
        self._entries.append((self._rel(descriptor_path), descriptor_bytes))


def load_content(root: Path, limits: ContentLimits) -> CacheSnapshot:
    """
    Load the content tree under `root` into an immutable snapshot.

    Blocking; run it off the event loop. Individual units that are malformed,
    symlinked or over the per-file limit are skipped and reported in
    `CacheSnapshot.issues`. Once the cumulative limit is reached no further
    files are read and the tree loaded so far is returned.

    Raises:
        ContentLoadError: the root exists but cannot be listed, is not a
            directory, or is a symbolic link.
    """
    return _TreeBuilder(root, limits).build()
