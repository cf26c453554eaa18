"""Session, permission and cache core for the church administration client."""

from .api_client import FellowshipClient
from .app import Fellowship
from .core.config import ConfigurationError, Settings

__version__ = "0.1.0"

__all__ = ["Fellowship", "FellowshipClient", "ConfigurationError", "Settings"]
