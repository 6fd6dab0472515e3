"""Interactive session: pure screen transitions plus a terminal runner."""

from .session import Session, transition  # noqa: F401
