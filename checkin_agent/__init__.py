"""Host agent serving system metrics and curl-style HTTP tasks behind a secure key."""

__version__ = "1.0.0"
__all__ = ["__version__"]