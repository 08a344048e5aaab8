"""Git smart HTTP support through a spawned git http-backend."""

from treepress.git.backend import (
    find_git_http_backend,
    is_push,
    is_safe_path,
    is_valid_repo,
    is_write_operation,
)
from treepress.git.cgi import CgiHeaders, CgiRequest, CgiSession, parse_cgi_headers
from treepress.git.errors import (
    BackendNotFoundError,
    CgiHeaderError,
    CgiTimeoutError,
    GitCgiError,
    RequestBodyTooLarge,
)
from treepress.git.gateway import GitCgiGateway

__all__ = [
    "BackendNotFoundError",
    "CgiHeaderError",
    "CgiHeaders",
    "CgiRequest",
    "CgiSession",
    "CgiTimeoutError",
    "GitCgiError",
    "GitCgiGateway",
    "RequestBodyTooLarge",
    "find_git_http_backend",
    "is_push",
    "is_safe_path",
    "is_valid_repo",
    "is_write_operation",
    "parse_cgi_headers",
]
