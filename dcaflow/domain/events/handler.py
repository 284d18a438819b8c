"""Event handler protocol."""

from typing import TYPE_CHECKING, Awaitable, Callable, Protocol, Union

if TYPE_CHECKING:
    from dcaflow.domain.events.event import Event


class EventHandler(Protocol):
    """Callable invoked with each matched event. May be sync or async."""

    def __call__(self, event: "Event") -> Union[None, Awaitable[None]]:
        ...


EventPredicate = Callable[["Event"], bool]
