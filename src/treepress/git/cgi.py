"""
Per-request plumbing between an HTTP exchange and one CGI process.

A session is three independent handles over the child's pipes: the stdin
forwarder, the stdout reader and the exit waiter. Stderr is collected on the
side so the child never blocks on a full pipe.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from treepress.git.errors import CgiHeaderError, CgiTimeoutError, GitCgiError, RequestBodyTooLarge

logger = logging.getLogger(__name__)

MAX_CGI_HEADER_BYTES = 16 * 1024
MAX_STDERR_BYTES = 64 * 1024
READ_CHUNK_BYTES = 64 * 1024
STDERR_JOIN_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True, slots=True)
class CgiRequest:
    method: str
    path_info: str
    query_string: str = ""
    content_type: str = ""
    content_length: Optional[int] = None
    remote_user: Optional[str] = None
    git_protocol: Optional[str] = None


@dataclass(frozen=True, slots=True)
class CgiHeaders:
    status: int
    reason: str
    # Lower-cased keys, in the order the backend sent them
    headers: tuple[tuple[str, str], ...]

    def get(self, name: str) -> Optional[str]:
        key = name.lower()
        for header_name, value in self.headers:
            if header_name == key:
                return value
        return None


def parse_cgi_headers(lines: list[str]) -> CgiHeaders:
    status, reason = 200, "OK"
    headers: list[tuple[str, str]] = []
    for line in lines:
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise CgiHeaderError(f"Malformed CGI header line: {line[:80]!r}")
        key = name.strip().lower()
        value = value.strip()
        if key == "status":
            code, _, text = value.partition(" ")
            if not code.isdigit() or not 100 <= int(code) <= 599:
                raise CgiHeaderError(f"Invalid CGI status: {value[:80]!r}")
            status, reason = int(code), text.strip() or reason
            continue
        headers.append((key, value))
    return CgiHeaders(status=status, reason=reason, headers=tuple(headers))


class StdinForwarder:
    """Copies the request body into the child's stdin, enforcing the byte limit."""

    def __init__(
        self,
        stdin: asyncio.StreamWriter,
        body: AsyncIterator[bytes],
        *,
        max_bytes: int,
        on_overflow: Callable[[], None],
    ) -> None:
        self._stdin = stdin
        self._body = body
        self._max_bytes = max_bytes
        self._on_overflow = on_overflow
        self._task: Optional[asyncio.Task] = None
        self.bytes_written = 0
        self.error: Optional[BaseException] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            async for chunk in self._body:
                if not chunk:
                    continue
                if self.bytes_written + len(chunk) > self._max_bytes:
                    self.error = RequestBodyTooLarge(self._max_bytes, self.bytes_written + len(chunk))
                    logger.warning("Request body over limit, aborting CGI process. limit=%d", self._max_bytes)
                    self._on_overflow()
                    self._close()
                    return
                self._stdin.write(chunk)
                await self._stdin.drain()
                self.bytes_written += len(chunk)
        except (BrokenPipeError, ConnectionResetError):
            # The child stopped reading; its exit status decides the outcome.
            logger.debug("CGI stdin closed by the process. bytes_written=%d", self.bytes_written)
        except Exception as e:
            self.error = e
            logger.warning("Reading the request body failed. bytes_written=%d error=%s", self.bytes_written, e)
        finally:
            self._close()

    def _close(self) -> None:
        if self._stdin.is_closing():
            return
        try:
            self._stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            pass

    async def join(self) -> None:
        task = self._task
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            if self.error is None:
                self.error = GitCgiError("Request body forwarding did not finish before the process exited")


class StdoutReader:
    """Parses the CGI header block, then hands out the rest of stdout once."""

    def __init__(self, stdout: asyncio.StreamReader, *, max_header_bytes: int = MAX_CGI_HEADER_BYTES) -> None:
        self._stdout = stdout
        self._max_header_bytes = max_header_bytes
        self._consumed = False
        # The body consumer and the discard task never wait on the stream at the same time.
        self._read_lock = asyncio.Lock()

    async def read_headers(self) -> CgiHeaders:
        async with self._read_lock:
            return await self._read_header_block()

    async def _read_header_block(self) -> CgiHeaders:
        lines: list[str] = []
        total = 0
        while True:
            try:
                line = await self._stdout.readline()
            except ValueError as e:
                raise CgiHeaderError("CGI header line exceeds the stream limit") from e
            total += len(line)
            if total > self._max_header_bytes:
                raise CgiHeaderError(f"CGI headers exceed {self._max_header_bytes} bytes")
            if not line.endswith(b"\n"):
                raise CgiHeaderError("CGI output ended before the end of the header block")
            text = line.rstrip(b"\r\n")
            if not text:
                return parse_cgi_headers(lines)
            lines.append(text.decode("latin-1"))

    def body(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("CGI response body can only be consumed once")
        self._consumed = True
        return self._iter_body()

    async def _read_chunk(self) -> bytes:
        async with self._read_lock:
            return await self._stdout.read(READ_CHUNK_BYTES)

    async def _iter_body(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._read_chunk()
            if not chunk:
                return
            yield chunk

    async def discard(self) -> None:
        """Drain whatever is left so the pipe can reach EOF after a kill."""
        while await self._read_chunk():
            pass


class StderrCollector:
    def __init__(self, stderr: asyncio.StreamReader, *, max_bytes: int = MAX_STDERR_BYTES) -> None:
        self._stderr = stderr
        self._max_bytes = max_bytes
        self._buffer = bytearray()
        self.truncated = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            chunk = await self._stderr.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            room = self._max_bytes - len(self._buffer)
            if room > 0:
                self._buffer.extend(chunk[:room])
            if len(chunk) > room:
                self.truncated = True

    async def result(self, timeout_seconds: float = STDERR_JOIN_TIMEOUT_SECONDS) -> str:
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=timeout_seconds)
            except asyncio.TimeoutError:
                self.truncated = True
        return self._buffer.decode("utf-8", errors="replace")


class ExitWaiter:
    """
    Waits for the child within an absolute deadline on the loop clock; kills and reaps on expiry.

    The reap only completes once every pipe reaches EOF, so `on_kill` must start draining stdout.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        deadline: float,
        timeout_seconds: float,
        on_kill: Optional[Callable[[], None]] = None,
    ) -> None:
        self._process = process
        self._deadline = deadline
        self._timeout_seconds = timeout_seconds
        self._on_kill = on_kill

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def remaining(self) -> float:
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    def kill(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    async def wait(self) -> int:
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=self.remaining())
        except asyncio.TimeoutError:
            await self._kill_and_reap()
            raise CgiTimeoutError(self._timeout_seconds) from None
        except asyncio.CancelledError:
            await self._kill_and_reap()
            raise

    async def _kill_and_reap(self) -> None:
        self.kill()
        if self._on_kill is not None:
            self._on_kill()
        await self._process.wait()


class CgiSession:
    """One spawned backend process; never reused."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        body: AsyncIterator[bytes],
        *,
        max_body_bytes: int,
        deadline: float,
        timeout_seconds: float,
    ) -> None:
        self._process = process
        self._waiter = ExitWaiter(
            process, deadline=deadline, timeout_seconds=timeout_seconds, on_kill=self._start_discard
        )
        self._stdout = StdoutReader(process.stdout)
        self._stderr = StderrCollector(process.stderr)
        self._forwarder = StdinForwarder(
            process.stdin, body, max_bytes=max_body_bytes, on_overflow=self._waiter.kill
        )
        self._discard_task: Optional[asyncio.Task] = None
        self.headers: Optional[CgiHeaders] = None
        self.aborted = False
        self.returncode: Optional[int] = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def stdin_error(self) -> Optional[BaseException]:
        return self._forwarder.error

    def start(self) -> None:
        self._forwarder.start()
        self._stderr.start()

    async def read_headers(self) -> CgiHeaders:
        """Parse the header block, bounded by the session deadline."""
        try:
            self.headers = await asyncio.wait_for(self._stdout.read_headers(), timeout=self._waiter.remaining())
        except asyncio.TimeoutError:
            raise CgiTimeoutError(self._waiter.timeout_seconds) from None
        except CgiHeaderError:
            # An oversized body kills the process, which cuts the header block short.
            if isinstance(self.stdin_error, RequestBodyTooLarge):
                raise self.stdin_error from None
            raise
        return self.headers

    def body(self) -> AsyncIterator[bytes]:
        return self._stdout.body()

    def abort(self, reason: str) -> None:
        if self.aborted:
            return
        self.aborted = True
        logger.warning("Aborting CGI session. pid=%s reason=%s", self.pid, reason)
        self._waiter.kill()
        self._start_discard()

    def _start_discard(self) -> None:
        if self._discard_task is None:
            self._discard_task = asyncio.create_task(self._stdout.discard())

    async def finish(self) -> Optional[int]:
        """
        Wait for exit, reap, join the stdin forwarder and log stderr.

        Returns the exit status, or None when the deadline expired.
        """
        try:
            self.returncode = await self._waiter.wait()
        except CgiTimeoutError as e:
            logger.error("CGI process timed out and was killed. pid=%s error=%s", self.pid, e)
        finally:
            await self._forwarder.join()
            stderr_text = await self._stderr.result()
            if self._discard_task is not None:
                self._discard_task.cancel()
                await asyncio.gather(self._discard_task, return_exceptions=True)

        if stderr_text.strip():
            logger.warning(
                "CGI process wrote to stderr. pid=%s truncated=%s stderr=%s",
                self.pid,
                self._stderr.truncated,
                stderr_text.strip(),
            )
        if self.returncode is not None and self.returncode != 0:
            logger.warning("CGI process exited with an error. pid=%s returncode=%s", self.pid, self.returncode)
        return self.returncode
