"""Enqueue helpers called by application code. They never wait for execution."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Sequence, Union

from .store import JobQueue

WELCOME_EMAIL = "send_welcome_email"

# application event -> handler name
EVENT_HANDLERS: Dict[str, str] = {
    "user_registered": WELCOME_EMAIL,
}


def enqueue(queue: JobQueue, handler: Union[str, Callable[..., Any]], args: Sequence[Any] = ()) -> str:
    return queue.enqueue(handler, list(args))


def on_user_registered(queue: JobQueue, email: str, name: Optional[str] = None) -> str:
    return queue.enqueue(WELCOME_EMAIL, [email, name])


def publish(queue: JobQueue, event: str, payload: Dict[str, Any]) -> str:
    """Map an application event to its job. Raises ValueError for unknown events."""
    if event not in EVENT_HANDLERS:
        raise ValueError(f"Unknown event: {event}. Known: {', '.join(sorted(EVENT_HANDLERS))}")
    if event == "user_registered":
        return on_user_registered(queue, payload["email"], payload.get("name"))
    return queue.enqueue(EVENT_HANDLERS[event], [payload])
