"""Session lifecycle: login, logout, silent renewal."""

from .session_manager import RequestFactory, Session, SessionCache, SessionManager

__all__ = ["Session", "SessionCache", "SessionManager", "RequestFactory"]
