from __future__ import annotations

import asyncio
import logging
import re

from aiohttp import hdrs, web

from treepress.api.app import CONFIG_KEY, GATEKEEPER_KEY, GATEWAY_KEY, error_response
from treepress.auth.gatekeeper import basic_username
from treepress.git.backend import is_safe_path, is_valid_repo, is_write_operation
from treepress.git.cgi import READ_CHUNK_BYTES, CgiRequest
from treepress.git.errors import GitCgiError, RequestBodyTooLarge

logger = logging.getLogger(__name__)

BASIC_REALM = 'Basic realm="treepress"'
DEFAULT_REMOTE_USER = "git"

# Set by aiohttp from the streamed body, never copied from the backend.
_SKIPPED_RESPONSE_HEADERS = frozenset({"connection", "content-length", "keep-alive", "transfer-encoding"})
_GIT_PROTOCOL = re.compile(r"^[A-Za-z0-9=:._,-]*$")


def _unauthorized() -> web.Response:
    response = error_response(401, "Authentication required")
    response.headers[hdrs.WWW_AUTHENTICATE] = BASIC_REALM
    return response


async def handle_git(request: web.Request) -> web.StreamResponse:
    path = request.match_info.get("path", "")
    if not is_safe_path(path):
        return error_response(400, "Invalid path")

    config = request.app[CONFIG_KEY]
    gateway = request.app[GATEWAY_KEY]
    authorization = request.headers.get(hdrs.AUTHORIZATION)
    authenticated = request.app[GATEKEEPER_KEY].check_basic(authorization)
    write = is_write_operation(path, request.query_string)
    if not authenticated and (write or not config.git.allow_anonymous_read):
        return _unauthorized()

    if not is_valid_repo(gateway.project_root):
        logger.error("Git project root is not a repository. path=%s", gateway.project_root)
        return error_response(404, "Repository not found")

    git_protocol = request.headers.get("Git-Protocol")
    if git_protocol is not None and not _GIT_PROTOCOL.match(git_protocol):
        git_protocol = None
    cgi_request = CgiRequest(
        method=request.method,
        path_info="/" + path,
        query_string=request.query_string,
        content_type=request.headers.get(hdrs.CONTENT_TYPE, ""),
        content_length=request.content_length,
        remote_user=(basic_username(authorization) or DEFAULT_REMOTE_USER) if authenticated else None,
        git_protocol=git_protocol,
    )

    try:
        session = await gateway.open(cgi_request, request.content.iter_chunked(READ_CHUNK_BYTES))
    except RequestBodyTooLarge as e:
        logger.warning("Git request rejected. path=%s error=%s", path, e)
        return error_response(413, "Request body too large")
    except GitCgiError as e:
        logger.error("Git backend request failed. method=%s path=%s error=%s", request.method, path, e)
        return error_response(500, "Git operation failed")

    headers = session.headers
    response = web.StreamResponse(status=headers.status, reason=headers.reason)
    for name, value in headers.headers:
        if name not in _SKIPPED_RESPONSE_HEADERS:
            response.headers.add(name, value)

    try:
        await response.prepare(request)
        async for chunk in session.body():
            await response.write(chunk)
        await response.write_eof()
    except ConnectionResetError:
        session.abort("client disconnected")
    except asyncio.CancelledError:
        session.abort("request cancelled")
        raise
    return response
