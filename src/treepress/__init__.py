"""Git-backed headless content server."""

__version__ = "0.1.0"
