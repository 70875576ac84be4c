"""HTTP control API and CLI."""
from .server import FailoverService, create_app, main, setup_logging

__all__ = ["FailoverService", "create_app", "main", "setup_logging"]
