"""Stderr event observer for CLI integration."""

import click

from dcaflow.domain.events.event import Event


class StderrEventObserver:
    """Emits bus events as structured lines to stderr."""

    def __call__(self, event: Event) -> None:
        parts = [f"[EVENT] {event.type.value}"]
        if event.session_id:
            parts.append(f"session={event.session_id}")
        parts.append(f"source={event.source}")
        for key in ("execution_id", "leg_index", "tx_ref", "error", "message"):
            if key in event.data:
                parts.append(f"{key}={event.data[key]}")
        click.echo(" ".join(parts), err=True)
