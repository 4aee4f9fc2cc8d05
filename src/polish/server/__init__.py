"""HTTP API for starting, watching and stopping polish sessions."""

from polish.server.app import create_app
from polish.server.manager import SessionManager

__all__ = ["SessionManager", "create_app"]
