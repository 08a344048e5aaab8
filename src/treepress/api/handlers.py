from __future__ import annotations

from typing import Any, Optional

from aiohttp import hdrs, web

from treepress.api.app import CACHE_KEY, CONFIG_KEY, error_response, is_admin
from treepress.content.models import ListFilter

_TRUE_VALUES = ("true", "1")
_FALSE_VALUES = ("false", "0")


class _BadQuery(ValueError):
    pass


def _parse_flag(request: web.Request, name: str) -> bool:
    raw = request.query.get(name)
    if raw is None:
        return False
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise _BadQuery(name)


def _parse_count(request: web.Request, name: str) -> Optional[int]:
    raw = request.query.get(name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise _BadQuery(name) from None
    if value < 0:
        raise _BadQuery(name)
    return value


def _etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    if not if_none_match:
        return False
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


def _cached(request: web.Request, admin: bool, build: Any) -> web.Response:
    """
    Wrap a content response with caching headers.

    Admin responses are private and carry no validator; public ones carry the
    tree fingerprint as ETag and short-circuit to 304 when the client has it.
    """
    if admin:
        response = build()
        response.headers[hdrs.CACHE_CONTROL] = "private, no-store"
        return response

    server = request.app[CONFIG_KEY].server
    headers = {
        hdrs.CACHE_CONTROL: (
            f"public, max-age={server.cache_max_age}, "
            f"stale-while-revalidate={server.cache_stale_while_revalidate}"
        ),
        hdrs.ETAG: f'"{request.app[CACHE_KEY].fingerprint()}"',
    }
    if _etag_matches(request.headers.get(hdrs.IF_NONE_MATCH), headers[hdrs.ETAG]):
        return web.Response(status=304, headers=headers)
    response = build()
    response.headers.update(headers)
    return response


def _list_params(request: web.Request) -> tuple[ListFilter, Optional[int], Optional[int]]:
    flt = ListFilter(
        include_drafts=_parse_flag(request, "include_drafts"),
        include_scheduled=_parse_flag(request, "include_scheduled"),
    )
    return flt, _parse_count(request, "limit"), _parse_count(request, "offset")


async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def list_posts(request: web.Request) -> web.Response:
    try:
        flt, limit, offset = _list_params(request)
    except _BadQuery:
        return error_response(400, "Invalid query parameters")
    admin = is_admin(request)
    if (flt.include_drafts or flt.include_scheduled) and not admin:
        return error_response(401, "Authentication required")

    result = request.app[CACHE_KEY].list_posts(flt, admin=admin, limit=limit, offset=offset)
    payload = {
        "posts": [post.summary_dict() for post in result.items],
        "total": result.total,
        "limit": result.limit,
        "offset": result.offset,
    }
    return _cached(request, admin, lambda: web.json_response(payload))


async def get_post(request: web.Request) -> web.Response:
    admin = is_admin(request)
    post = request.app[CACHE_KEY].get_post(request.match_info["slug"], admin=admin)
    if post is None:
        return error_response(404, "Post not found")
    return _cached(request, admin, lambda: web.json_response(post.to_dict()))


async def get_post_raw(request: web.Request) -> web.Response:
    admin = is_admin(request)
    post = request.app[CACHE_KEY].get_post(request.match_info["slug"], admin=admin)
    if post is None:
        return error_response(404, "Post not found")
    return _cached(request, admin, lambda: web.Response(text=post.content, content_type="text/plain", charset="utf-8"))


async def list_series(request: web.Request) -> web.Response:
    try:
        flt, limit, offset = _list_params(request)
    except _BadQuery:
        return error_response(400, "Invalid query parameters")
    admin = is_admin(request)
    if (flt.include_drafts or flt.include_scheduled) and not admin:
        return error_response(401, "Authentication required")

    result = request.app[CACHE_KEY].list_series(flt, admin=admin, limit=limit, offset=offset)
    payload = {
        "series": [summary.to_dict() for summary in result.items],
        "total": result.total,
        "limit": result.limit,
        "offset": result.offset,
    }
    return _cached(request, admin, lambda: web.json_response(payload))


async def get_series(request: web.Request) -> web.Response:
    admin = is_admin(request)
    detail = request.app[CACHE_KEY].get_series(request.match_info["slug"], admin=admin)
    if detail is None:
        return error_response(404, "Series not found")
    return _cached(request, admin, lambda: web.json_response(detail.to_dict()))
