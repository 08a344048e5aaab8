from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs

from treepress.git.errors import BackendNotFoundError

logger = logging.getLogger(__name__)

BACKEND_NAME = "git-http-backend"
BACKEND_CANDIDATES = (
    "/usr/lib/git-core/git-http-backend",
    "/usr/libexec/git-core/git-http-backend",
    "/opt/homebrew/libexec/git-core/git-http-backend",
    "/usr/local/libexec/git-core/git-http-backend",
)
RECEIVE_PACK = "git-receive-pack"

_SAFE_PATH = re.compile(r"^[A-Za-z0-9\-_./]*$")


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def _from_exec_path() -> Optional[str]:
    git = shutil.which("git")
    if git is None:
        return None
    try:
        result = subprocess.run(
            [git, "--exec-path"], capture_output=True, text=True, timeout=10, check=True
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Failed to query git exec path. error=%s", e)
        return None
    candidate = os.path.join(result.stdout.strip(), BACKEND_NAME)
    return candidate if _is_executable(candidate) else None


def find_git_http_backend(configured: Optional[str] = None) -> str:
    """
    Locate the git-http-backend executable.

    A configured path must exist; otherwise the common git-core locations are
    tried before falling back to `git --exec-path`.
    """
    if configured:
        if not _is_executable(configured):
            raise BackendNotFoundError(f"Configured git http-backend is not executable: {configured}")
        return configured
    for candidate in BACKEND_CANDIDATES:
        if _is_executable(candidate):
            return candidate
    found = _from_exec_path()
    if found is None:
        raise BackendNotFoundError("git http-backend not found; set git.backend_path")
    return found


def is_valid_repo(root: Path) -> bool:
    return (root / ".git").exists() or (root / "HEAD").exists()


def is_safe_path(path: str) -> bool:
    return ".." not in path and bool(_SAFE_PATH.match(path))


def is_write_operation(path: str, query_string: str = "") -> bool:
    """Receive-pack requests and the receive-pack ref advertisement are writes; everything else reads."""
    if path.endswith(RECEIVE_PACK):
        return True
    if path.endswith("info/refs"):
        return RECEIVE_PACK in parse_qs(query_string).get("service", [])
    return False


def is_push(method: str, path: str) -> bool:
    return method.upper() == "POST" and path.endswith(RECEIVE_PACK)
