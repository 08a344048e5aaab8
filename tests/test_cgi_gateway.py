import asyncio
import os
import sys
import tempfile
import textwrap
import unittest
from pathlib import Path
from types import SimpleNamespace
from typing import AsyncIterator, Optional
from unittest import mock

from treepress.config.models import GitSettings
from treepress.git import (
    CgiHeaderError,
    CgiRequest,
    CgiTimeoutError,
    GitCgiError,
    GitCgiGateway,
    RequestBodyTooLarge,
)

ECHO_BACKEND = """
import os
import sys

data = sys.stdin.buffer.read()
out = sys.stdout.buffer
out.write(b"Status: 201 Created\\r\\n")
out.write(b"Content-Type: application/x-test\\r\\n")
for name in ("PATH_INFO", "REQUEST_METHOD", "QUERY_STRING", "REMOTE_USER", "CONTENT_LENGTH", "GIT_PROJECT_ROOT"):
    out.write(("X-Env-%s: %s\\r\\n" % (name.replace("_", "-"), os.environ.get(name, "-"))).encode())
out.write(b"\\r\\n")
out.write(data)
out.flush()
"""

HANG_BACKEND = """
import os
import sys
import time

with open(os.environ["PID_FILE"], "w") as handle:
    handle.write(str(os.getpid()))
time.sleep(60)
"""

HANG_AFTER_HEADERS_BACKEND = """
import sys
import time

sys.stdout.write("Content-Type: text/plain\\n\\npartial")
sys.stdout.flush()
time.sleep(60)
"""

FLOOD_AFTER_HEADERS_BACKEND = """
import sys
import time

sys.stdout.write("Content-Type: application/octet-stream\\n\\n")
sys.stdout.flush()
sys.stdout.buffer.write(b"x" * (2 * 1024 * 1024))
sys.stdout.flush()
time.sleep(60)
"""

NO_SEPARATOR_BACKEND = """
import sys

sys.stdout.write("Content-Type: text/plain\\n")
sys.stdout.flush()
"""

HUGE_HEADERS_BACKEND = """
import sys

for index in range(400):
    sys.stdout.write("X-Filler-%d: %s\\n" % (index, "y" * 64))
sys.stdout.write("\\n")
sys.stdout.flush()
"""

BAD_STATUS_BACKEND = """
import sys

sys.stdout.write("Status: abc\\n\\n")
sys.stdout.flush()
"""

FAILING_BACKEND = """
import sys

sys.stdin.buffer.read()
sys.stderr.write("fatal: push rejected\\n")
sys.stdout.write("Content-Type: text/plain\\n\\n")
sys.stdout.flush()
sys.exit(1)
"""

MARKER_BACKEND = """
import os

open(os.environ["MARKER_FILE"], "w").close()
"""


def write_backend(directory: Path, source: str, name: str = "fake-backend") -> str:
    path = directory / name
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(source), encoding="utf-8")
    path.chmod(0o755)
    return str(path)


async def chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


async def read_body(session) -> bytes:
    return b"".join([chunk async for chunk in session.body()])


def pid_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


class RecordingCache:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.refreshes = 0
        self._error = error

    async def refresh(self):
        self.refreshes += 1
        if self._error is not None:
            raise self._error
        return SimpleNamespace(fingerprint="f" * 64)


class RecordingDispatcher:
    def __init__(self) -> None:
        self.payloads = []

    def fire(self, payload):
        self.payloads.append(payload)
        return []


class GitCgiGatewayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = Path(tmp.name)
        self.repo = self.tmp / "repo"
        self.repo.mkdir()
        (self.repo / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
        self.cache = RecordingCache()
        self.dispatcher = RecordingDispatcher()

    def _gateway(self, source: str, **settings) -> GitCgiGateway:
        backend = write_backend(self.tmp, source)
        return GitCgiGateway(
            GitSettings(**settings),
            self.repo,
            cache=self.cache,
            dispatcher=self.dispatcher,
            backend_command=[backend],
        )

    async def test_streams_body_through_backend_and_sets_environment(self) -> None:
        gateway = self._gateway(ECHO_BACKEND)
        request = CgiRequest(
            method="POST",
            path_info="/git-upload-pack",
            query_string="x=1",
            content_type="application/x-git-upload-pack-request",
            content_length=10,
            remote_user="alice",
        )

        session = await gateway.open(request, chunks(b"hello", b"world"))
        body = await read_body(session)
        await gateway.drain(10)

        self.assertEqual(session.headers.status, 201)
        self.assertEqual(session.headers.reason, "Created")
        self.assertEqual(session.headers.get("Content-Type"), "application/x-test")
        self.assertEqual(session.headers.get("x-env-path-info"), "/git-upload-pack")
        self.assertEqual(session.headers.get("x-env-request-method"), "POST")
        self.assertEqual(session.headers.get("x-env-query-string"), "x=1")
        self.assertEqual(session.headers.get("x-env-remote-user"), "alice")
        self.assertEqual(session.headers.get("x-env-content-length"), "10")
        self.assertEqual(session.headers.get("x-env-git-project-root"), str(self.repo))
        self.assertEqual(body, b"helloworld")
        self.assertEqual(session.returncode, 0)
        self.assertEqual(gateway.pending, 0)
        # Reads never refresh the cache.
        self.assertEqual(self.cache.refreshes, 0)

    async def test_body_can_only_be_consumed_once(self) -> None:
        gateway = self._gateway(ECHO_BACKEND)
        session = await gateway.open(CgiRequest(method="GET", path_info="/info/refs"), chunks())
        await read_body(session)
        with self.assertRaises(RuntimeError):
            session.body()
        await gateway.drain(10)

    async def test_remote_user_is_not_inherited(self) -> None:
        gateway = self._gateway(ECHO_BACKEND)
        with mock.patch.dict(os.environ, {"REMOTE_USER": "intruder", "CONTENT_LENGTH": "99"}):
            env = gateway.build_environment(CgiRequest(method="get", path_info="/info/refs"))
        self.assertNotIn("REMOTE_USER", env)
        self.assertNotIn("CONTENT_LENGTH", env)
        self.assertEqual(env["REQUEST_METHOD"], "GET")
        self.assertEqual(env["GIT_HTTP_EXPORT_ALL"], "1")

    async def test_declared_oversize_body_is_rejected_before_spawn(self) -> None:
        marker = self.tmp / "spawned"
        gateway = self._gateway(MARKER_BACKEND, max_body_bytes=16)
        with mock.patch.dict(os.environ, {"MARKER_FILE": str(marker)}):
            with self.assertRaises(RequestBodyTooLarge):
                await gateway.open(
                    CgiRequest(method="POST", path_info="/git-receive-pack", content_length=17), chunks(b"x" * 17)
                )
        self.assertFalse(marker.exists())
        self.assertEqual(gateway.pending, 0)

    async def test_streamed_oversize_body_aborts_session(self) -> None:
        gateway = self._gateway(ECHO_BACKEND, max_body_bytes=1024)
        request = CgiRequest(method="POST", path_info="/git-receive-pack")

        with self.assertRaises(RequestBodyTooLarge):
            await gateway.open(request, chunks(b"x" * 512, b"x" * 512, b"x" * 512))
        await gateway.drain(10)

        self.assertEqual(self.cache.refreshes, 0)
        self.assertEqual(self.dispatcher.payloads, [])

    async def test_hung_backend_times_out_and_is_reaped(self) -> None:
        pid_file = self.tmp / "pid"
        gateway = self._gateway(HANG_BACKEND, cgi_timeout_seconds=1.5)

        with mock.patch.dict(os.environ, {"PID_FILE": str(pid_file)}):
            with self.assertLogs("treepress.git.cgi", level="WARNING"):
                with self.assertRaises(CgiTimeoutError):
                    await gateway.open(CgiRequest(method="GET", path_info="/info/refs"), chunks())
                await gateway.drain(10)

        self.assertEqual(gateway.pending, 0)
        self.assertFalse(pid_exists(int(pid_file.read_text())))

    async def test_deadline_covers_body_streaming(self) -> None:
        gateway = self._gateway(HANG_AFTER_HEADERS_BACKEND, cgi_timeout_seconds=0.5)

        session = await gateway.open(CgiRequest(method="GET", path_info="/info/refs"), chunks())
        body = await asyncio.wait_for(read_body(session), timeout=10)
        await gateway.drain(10)

        self.assertEqual(body, b"partial")
        self.assertIsNone(session.returncode)

    async def test_deadline_reaps_backend_whose_body_is_never_read(self) -> None:
        gateway = self._gateway(FLOOD_AFTER_HEADERS_BACKEND, cgi_timeout_seconds=1.0)
        session = await gateway.open(CgiRequest(method="GET", path_info="/info/refs"), chunks())
        self.assertEqual(session.headers.status, 200)

        with self.assertLogs("treepress.git.cgi", level="ERROR") as logs:
            await asyncio.wait_for(gateway.drain(), timeout=10)

        self.assertTrue(any("timed out" in line for line in logs.output))
        self.assertEqual(gateway.pending, 0)
        self.assertIsNone(session.returncode)
        self.assertFalse(pid_exists(session.pid))

    async def test_cancelled_completion_reaps_backend_whose_body_is_never_read(self) -> None:
        gateway = self._gateway(FLOOD_AFTER_HEADERS_BACKEND, cgi_timeout_seconds=30)
        session = await gateway.open(CgiRequest(method="GET", path_info="/info/refs"), chunks())

        await asyncio.wait_for(gateway.drain(0.5), timeout=10)

        self.assertEqual(gateway.pending, 0)
        self.assertFalse(pid_exists(session.pid))

    async def test_missing_header_separator_is_an_error(self) -> None:
        gateway = self._gateway(NO_SEPARATOR_BACKEND)
        with self.assertRaises(CgiHeaderError):
            await gateway.open(CgiRequest(method="GET", path_info="/info/refs"), chunks())
        await gateway.drain(10)
        self.assertEqual(gateway.pending, 0)

    async def test_oversized_header_block_is_an_error(self) -> None:
        gateway = self._gateway(HUGE_HEADERS_BACKEND)
        with self.assertRaises(CgiHeaderError):
            await gateway.open(CgiRequest(method="GET", path_info="/info/refs"), chunks())
        await gateway.drain(10)

    async def test_invalid_status_is_an_error(self) -> None:
        gateway = self._gateway(BAD_STATUS_BACKEND)
        with self.assertRaises(CgiHeaderError):
            await gateway.open(CgiRequest(method="GET", path_info="/info/refs"), chunks())
        await gateway.drain(10)

    async def test_successful_push_refreshes_then_fires_webhooks(self) -> None:
        gateway = self._gateway(ECHO_BACKEND)
        session = await gateway.open(
            CgiRequest(method="POST", path_info="/git-receive-pack", remote_user="git"), chunks(b"pack")
        )
        await read_body(session)
        await gateway.drain(10)

        self.assertEqual(self.cache.refreshes, 1)
        self.assertEqual(len(self.dispatcher.payloads), 1)
        payload = self.dispatcher.payloads[0]
        self.assertEqual(payload["event"], "content.updated")
        self.assertEqual(payload["fingerprint"], "f" * 64)
        self.assertTrue(payload["timestamp"].endswith("Z"))

    async def test_failed_push_is_reaped_without_side_effects(self) -> None:
        gateway = self._gateway(FAILING_BACKEND)
        with self.assertLogs("treepress.git.cgi", level="WARNING") as logs:
            session = await gateway.open(
                CgiRequest(method="POST", path_info="/git-receive-pack", remote_user="git"), chunks(b"pack")
            )
            await read_body(session)
            await gateway.drain(10)

        self.assertEqual(session.returncode, 1)
        self.assertEqual(self.cache.refreshes, 0)
        self.assertEqual(self.dispatcher.payloads, [])
        self.assertTrue(any("push rejected" in line for line in logs.output))

    async def test_refresh_failure_suppresses_webhooks(self) -> None:
        self.cache = RecordingCache(error=RuntimeError("disk gone"))
        gateway = self._gateway(ECHO_BACKEND)
        with self.assertLogs("treepress.git.gateway", level="ERROR"):
            session = await gateway.open(
                CgiRequest(method="POST", path_info="/git-receive-pack", remote_user="git"), chunks(b"pack")
            )
            await read_body(session)
            await gateway.drain(10)

        self.assertEqual(self.cache.refreshes, 1)
        self.assertEqual(self.dispatcher.payloads, [])

    async def test_aborted_session_kills_the_process(self) -> None:
        gateway = self._gateway(HANG_AFTER_HEADERS_BACKEND, cgi_timeout_seconds=30)
        session = await gateway.open(CgiRequest(method="GET", path_info="/info/refs"), chunks())

        session.abort("client disconnected")
        await asyncio.wait_for(gateway.drain(), timeout=10)

        self.assertTrue(session.aborted)
        self.assertIsNotNone(session.returncode)
        self.assertNotEqual(session.returncode, 0)

    async def test_spawn_failure_is_a_gateway_error(self) -> None:
        gateway = GitCgiGateway(
            GitSettings(),
            self.repo,
            cache=self.cache,
            dispatcher=self.dispatcher,
            backend_command=[str(self.tmp / "does-not-exist")],
        )
        with self.assertRaises(GitCgiError):
            await gateway.open(CgiRequest(method="GET", path_info="/info/refs"), chunks())


if __name__ == "__main__":
    unittest.main()
