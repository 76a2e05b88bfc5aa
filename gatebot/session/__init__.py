"""Session management module."""

from gatebot.session.manager import Session, SessionManager

__all__ = ["Session", "SessionManager"]
