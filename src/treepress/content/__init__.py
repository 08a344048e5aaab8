"""Content tree loading, fingerprinting and visibility-aware reads."""

from treepress.content.cache import MAX_PAGE_SIZE, ContentCache
from treepress.content.fingerprint import compute_fingerprint
from treepress.content.loader import ContentLoadError, load_content
from treepress.content.models import (
    CacheSnapshot,
    ContentLimits,
    ContentTree,
    ListFilter,
    ListResult,
    PostRecord,
    SeriesDetail,
    SeriesRecord,
    SeriesSummary,
    ValidationIssue,
    Visibility,
)

__all__ = [
    "MAX_PAGE_SIZE",
    "CacheSnapshot",
    "ContentCache",
    "ContentLimits",
    "ContentLoadError",
    "ContentTree",
    "ListFilter",
    "ListResult",
    "PostRecord",
    "SeriesDetail",
    "SeriesRecord",
    "SeriesSummary",
    "ValidationIssue",
    "Visibility",
    "compute_fingerprint",
    "load_content",
]
