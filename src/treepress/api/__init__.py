"""HTTP surface: content API, health check and the git smart HTTP route."""

from treepress.api.app import SECURITY_HEADERS, create_app

__all__ = ["SECURITY_HEADERS", "create_app"]
