"""Declaration handling and process settings."""
from .declaration import ConfigWorker, Declaration
from .settings import Settings

__all__ = ["ConfigWorker", "Declaration", "Settings"]
