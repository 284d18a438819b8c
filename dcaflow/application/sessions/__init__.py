from .session_state import SessionStateStore

__all__ = ["SessionStateStore"]
