"""Annual wheel share links: multi-tenant storage and a share access API."""

__version__ = "0.1.0"
