from __future__ import annotations


class GitCgiError(Exception):
    """Base class for failures while bridging a request to git http-backend."""


class RequestBodyTooLarge(GitCgiError):
    def __init__(self, limit: int, received: int) -> None:
        super().__init__(f"Request body exceeds limit. limit={limit} received={received}")
        self.limit = limit
        self.received = received


class CgiHeaderError(GitCgiError):
    """The backend's CGI header block was oversized, malformed or cut short."""


class CgiTimeoutError(GitCgiError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"git http-backend exceeded its deadline. timeout_seconds={timeout_seconds}")
        self.timeout_seconds = timeout_seconds


class BackendNotFoundError(GitCgiError):
    """No git http-backend executable could be located."""
