"""Event bus for observing completion calls."""

from docpilot.events.bus import EventBus

__all__ = ["EventBus"]
