from __future__ import annotations

import asyncio
import logging

from aiohttp import hdrs, web

from treepress.auth.gatekeeper import AuthGatekeeper, AuthStatus
from treepress.config.models import AppConfig
from treepress.content.cache import ContentCache
from treepress.git.gateway import GitCgiGateway
from treepress.webhooks.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", AppConfig)
CACHE_KEY = web.AppKey("cache", ContentCache)
GATEKEEPER_KEY = web.AppKey("gatekeeper", AuthGatekeeper)
GATEWAY_KEY = web.AppKey("gateway", GitCgiGateway)
DISPATCHER_KEY = web.AppKey("dispatcher", WebhookDispatcher)

AUTH_STATUS = "auth_status"
SHUTDOWN_DRAIN_SECONDS = 15.0

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "default-src 'none'",
}


def error_response(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def is_admin(request: web.Request) -> bool:
    return request.get(AUTH_STATUS) is AuthStatus.ADMIN


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Turn framework errors into JSON bodies and anything unexpected into a generic 500."""
    try:
        return await handler(request)
    except web.HTTPException as exc:
        if exc.status < 400:
            raise
        response = error_response(exc.status, exc.reason)
        allow = exc.headers.get(hdrs.ALLOW)
        if allow is not None:
            response.headers[hdrs.ALLOW] = allow
        return response
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Unhandled error while serving request. method=%s path=%s", request.method, request.path)
        return error_response(500, "Internal server error")


@web.middleware
async def auth_middleware(request: web.Request, handler) -> web.StreamResponse:
    gatekeeper = request.app[GATEKEEPER_KEY]
    request[AUTH_STATUS] = gatekeeper.status_for(request.headers.get(hdrs.AUTHORIZATION))
    return await handler(request)


async def _apply_security_headers(request: web.Request, response: web.StreamResponse) -> None:
    # Runs on prepare, so streamed git responses get the headers too.
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value


async def _drain_background_work(app: web.Application) -> None:
    await app[GATEWAY_KEY].drain(SHUTDOWN_DRAIN_SECONDS)
    await app[DISPATCHER_KEY].drain(SHUTDOWN_DRAIN_SECONDS)


def create_app(
    config: AppConfig,
    *,
    cache: ContentCache,
    gatekeeper: AuthGatekeeper,
    gateway: GitCgiGateway,
    dispatcher: WebhookDispatcher,
) -> web.Application:
    # Imported here so handler modules can import the app keys above.
    from treepress.api import git_handler, handlers

    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[CONFIG_KEY] = config
    app[CACHE_KEY] = cache
    app[GATEKEEPER_KEY] = gatekeeper
    app[GATEWAY_KEY] = gateway
    app[DISPATCHER_KEY] = dispatcher

    app.router.add_get("/health", handlers.health)
    app.router.add_get("/api/v1/posts", handlers.list_posts)
    app.router.add_get("/api/v1/posts/{slug}", handlers.get_post)
    app.router.add_get("/api/v1/posts/{slug}/raw", handlers.get_post_raw)
    app.router.add_get("/api/v1/series", handlers.list_series)
    app.router.add_get("/api/v1/series/{slug}", handlers.get_series)
    app.router.add_route("*", "/git/{path:.*}", git_handler.handle_git)

    app.on_response_prepare.append(_apply_security_headers)
    app.on_cleanup.append(_drain_background_work)
    return app
