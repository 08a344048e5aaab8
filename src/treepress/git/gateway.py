from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

from treepress.config.models import GitSettings
from treepress.content.cache import ContentCache
from treepress.content.models import CacheSnapshot
from treepress.content.utils import format_rfc3339, utc_now
from treepress.git.backend import find_git_http_backend, is_push
from treepress.git.cgi import CgiRequest, CgiSession
from treepress.git.errors import GitCgiError, RequestBodyTooLarge
from treepress.webhooks.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

CONTENT_UPDATED_EVENT = "content.updated"


class GitCgiGateway:
    """
    Runs git http-backend once per request.

    `open()` returns after the CGI header block has been parsed; the caller
    streams `session.body()` to the client. Exit handling runs in a detached
    task that reaps the process and, after a successful push, refreshes the
    content cache and fires webhooks.
    """

    def __init__(
        self,
        settings: GitSettings,
        project_root: Path,
        *,
        cache: ContentCache,
        dispatcher: WebhookDispatcher,
        backend_command: Optional[Sequence[str]] = None,
    ) -> None:
        self._settings = settings
        self._project_root = Path(project_root)
        self._cache = cache
        self._dispatcher = dispatcher
        self._backend_command = tuple(backend_command) if backend_command else None
        self._tasks: set[asyncio.Task] = set()

    @property
    def project_root(self) -> Path:
        return self._project_root

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def backend_command(self) -> tuple[str, ...]:
        if self._backend_command is None:
            self._backend_command = (find_git_http_backend(self._settings.backend_path),)
            logger.info("Using git http-backend. path=%s", self._backend_command[0])
        return self._backend_command

    def build_environment(self, request: CgiRequest) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "GIT_PROJECT_ROOT": str(self._project_root),
                "GIT_HTTP_EXPORT_ALL": "1",
                "GATEWAY_INTERFACE": "CGI/1.1",
                "REQUEST_METHOD": request.method.upper(),
                "PATH_INFO": request.path_info,
                "QUERY_STRING": request.query_string,
                "CONTENT_TYPE": request.content_type,
            }
        )
        if request.content_length is not None:
            env["CONTENT_LENGTH"] = str(request.content_length)
        else:
            env.pop("CONTENT_LENGTH", None)
        # git only enables receive-pack for authenticated users
        if request.remote_user is not None:
            env["REMOTE_USER"] = request.remote_user
        else:
            env.pop("REMOTE_USER", None)
        if request.git_protocol:
            env["GIT_PROTOCOL"] = request.git_protocol
        return env

    async def open(self, request: CgiRequest, body: AsyncIterator[bytes]) -> CgiSession:
        max_body = self._settings.max_body_bytes
        if request.content_length is not None and request.content_length > max_body:
            raise RequestBodyTooLarge(max_body, request.content_length)

        command = self.backend_command()
        loop = asyncio.get_running_loop()
        timeout_seconds = self._settings.cgi_timeout_seconds
        deadline = loop.time() + timeout_seconds
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_environment(request),
                cwd=str(self._project_root),
            )
        except OSError as e:
            raise GitCgiError(f"Failed to start git http-backend: {e}") from e

        logger.debug(
            "Spawned git http-backend. pid=%s method=%s path=%s", process.pid, request.method, request.path_info
        )
        session = CgiSession(
            process, body, max_body_bytes=max_body, deadline=deadline, timeout_seconds=timeout_seconds
        )
        session.start()
        self._track(asyncio.create_task(self._complete(session, is_push(request.method, request.path_info))))

        try:
            await session.read_headers()
        except GitCgiError as e:
            session.abort(str(e))
            raise
        except asyncio.CancelledError:
            session.abort("request cancelled")
            raise
        return session

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("CGI completion task failed unexpectedly.")

    async def _complete(self, session: CgiSession, push: bool) -> Optional[CacheSnapshot]:
        returncode = await session.finish()
        if not push:
            return None
        if returncode != 0 or session.stdin_error is not None:
            logger.warning(
                "Push did not complete, skipping content refresh. pid=%s returncode=%s stdin_error=%s",
                session.pid,
                returncode,
                session.stdin_error,
            )
            return None
        try:
            snapshot = await self._cache.refresh()
        except Exception:
            logger.exception("Content refresh after push failed, webhooks not fired.")
            return None
        self._dispatcher.fire(
            {
                "event": CONTENT_UPDATED_EVENT,
                "fingerprint": snapshot.fingerprint,
                "timestamp": format_rfc3339(utc_now()),
            }
        )
        return snapshot

    async def drain(self, timeout_seconds: Optional[float] = None) -> None:
        """Wait for outstanding completion tasks; cancelled tasks still kill and reap their process."""
        pending = list(self._tasks)
        if not pending:
            return
        _done, still_running = await asyncio.wait(pending, timeout=timeout_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
