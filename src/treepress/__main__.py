from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from aiohttp import web

from treepress.api import create_app
from treepress.auth import AuthGatekeeper
from treepress.config import AppConfig, ConfigError, YamlConfigLoader
from treepress.config.models import ConfigLoadRequest
from treepress.content import MAX_PAGE_SIZE, ContentCache, ListFilter
from treepress.content.models import POST_BODY, POST_DESCRIPTOR, visibility_of
from treepress.content.utils import format_rfc3339, utc_now
from treepress.git import BackendNotFoundError, GitCgiGateway
from treepress.logging import init_logging
from treepress.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

EXAMPLE_SLUG = "hello-world"
EXAMPLE_DESCRIPTOR = """\
title = "Hello, world"
preview_text = "The first post published with treepress."
tags = ["meta"]
# Remove goes_live_at to keep the post as a draft.
goes_live_at = {goes_live_at}
"""
EXAMPLE_BODY = """\
# Hello, world

Edit `content/{slug}/content.mdx`, commit, and push to publish.
"""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="treepress", description="Git-backed headless content server")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the config file (default: TREEPRESS_CONFIG or treepress.yaml discovery)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    # Command: serve
    subparsers.add_parser("serve", help="Run the HTTP server")

    # Command: init
    init_parser = subparsers.add_parser("init", help="Scaffold a content directory with an example post")
    init_parser.add_argument("path", nargs="?", default=".", help="Repository directory (default: .)")

    # Command: validate
    subparsers.add_parser("validate", help="Report problems in the content tree")

    # Command: ls
    ls_parser = subparsers.add_parser("ls", help="List posts or series")
    ls_parser.add_argument("kind", choices=("posts", "series"))
    ls_parser.add_argument("--drafts", action="store_true", help="Include drafts and scheduled content")

    return parser


def _load_config(args: argparse.Namespace) -> AppConfig:
    return YamlConfigLoader().load_sync(ConfigLoadRequest(yaml_path=args.config))


async def _serve(config: AppConfig) -> int:
    cache = await ContentCache.open(config.content)
    dispatcher = WebhookDispatcher(config.webhooks)
    gateway = GitCgiGateway(
        config.git, Path(config.content.repo_path), cache=cache, dispatcher=dispatcher
    )
    try:
        gateway.backend_command()
    except BackendNotFoundError as e:
        logger.warning("Git push and clone are unavailable. error=%s", e)

    app = create_app(
        config, cache=cache, gatekeeper=AuthGatekeeper(config.auth), gateway=gateway, dispatcher=dispatcher
    )
    runner = web.AppRunner(app, access_log=logging.getLogger("aiohttp.access"))
    await runner.setup()
    site = web.TCPSite(runner, config.server.host, config.server.port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await site.start()
        logger.info(
            "Server started. host=%s port=%s fingerprint=%s",
            config.server.host,
            config.server.port,
            cache.fingerprint()[:12],
        )
        await stop.wait()
        logger.info("Shutdown requested.")
    finally:
        await runner.cleanup()
        logger.info("Server stopped.")
    return 0


def _init(path: str) -> int:
    content_dir = Path(path) / "content" / EXAMPLE_SLUG
    if content_dir.exists():
        print(f"Already exists: {content_dir}", file=sys.stderr)
        return 1
    content_dir.mkdir(parents=True)
    goes_live_at = format_rfc3339(utc_now().replace(microsecond=0))
    (content_dir / POST_DESCRIPTOR).write_text(
        EXAMPLE_DESCRIPTOR.format(goes_live_at=goes_live_at), encoding="utf-8"
    )
    (content_dir / POST_BODY).write_text(EXAMPLE_BODY.format(slug=EXAMPLE_SLUG), encoding="utf-8")
    print(f"Created example post: {content_dir}")
    return 0


def _validate(config: AppConfig) -> int:
    cache = ContentCache(config.content)
    issues = cache.validate()
    for issue in issues:
        print(f"{issue.path}: {issue.message}")
    if issues:
        print(f"\n{len(issues)} issue(s) found", file=sys.stderr)
        return 1
    print("No issues found")
    return 0


def _status_label(goes_live_at) -> str:
    return visibility_of(goes_live_at, utc_now()).value


def _ls(config: AppConfig, kind: str, drafts: bool) -> int:
    cache = ContentCache(config.content)
    flt = ListFilter(include_drafts=drafts, include_scheduled=drafts)
    list_page = cache.list_posts if kind == "posts" else cache.list_series

    offset = 0
    total: Optional[int] = None
    while total is None or offset < total:
        result = list_page(flt, admin=drafts, limit=MAX_PAGE_SIZE, offset=offset)
        total = result.total
        for item in result.items:
            record = item if kind == "posts" else item.series
            print(f"{record.slug:<32} {_status_label(record.goes_live_at):<10} {record.title}")
        if not result.items:
            break
        offset += len(result.items)
    print(f"\nTotal: {total} {kind}")
    return 0


def _main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        return _init(args.path)

    try:
        config = _load_config(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    init_logging(config.logging)

    if args.command == "serve":
        return asyncio.run(_serve(config))
    if args.command == "validate":
        return _validate(config)
    if args.command == "ls":
        return _ls(config, args.kind, args.drafts)
    return 2


def main() -> None:
    try:
        code = _main()
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
