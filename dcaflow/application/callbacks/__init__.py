from .callback_dispatcher import CallbackDispatcher, parse_event_types

__all__ = ["CallbackDispatcher", "parse_event_types"]
