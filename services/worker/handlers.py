"""
Job handlers, looked up by the name stored on each job.
"""
from __future__ import annotations

import html
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from job_manager.config import get_settings
from job_manager.exceptions import HandlerNotFound
from job_manager.producer import WELCOME_EMAIL

from .notifier import Notifier


class HandlerRegistry:
    """Handler name -> callable, fixed when the worker process starts."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Callable[..., Any]] = {}

    def register(self, name: str, func: Callable[..., Any]) -> Callable[..., Any]:
        if name in self._handlers:
            raise ValueError(f"Handler {name!r} already registered.")
        try:
            func.job_name = name
        except (AttributeError, TypeError):
            pass  # bound methods reject new attributes
        self._handlers[name] = func
        return func

    def handler(self, name: Optional[str] = None):
        """
        Decorator form of register().

        Example:
            @registry.handler("send_welcome_email")
            def send_welcome_email(to, name=None): ...
        """

        def decorator(func):
            return self.register(name or func.__name__, func)

        return decorator

    def get(self, name: str) -> Callable[..., Any]:
        try:
            return self._handlers[name]
        except KeyError:
            raise HandlerNotFound(name) from None

    def names(self) -> Iterable[str]:
        return sorted(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers


def render_welcome_email(name: Optional[str]) -> Tuple[str, str]:
    greeting = f"Hi {html.escape(name)}," if name else "Hi there,"
    subject = "Welcome aboard!"
    body = (
        f"<p>{greeting}</p>"
        "<p>Thanks for signing up. Your account is ready to use.</p>"
        "<p>See you soon!</p>"
    )
    return subject, body


def build_registry(notifier: Optional[Notifier] = None) -> HandlerRegistry:
    notifier = notifier or Notifier.from_settings(get_settings())
    registry = HandlerRegistry()

    @registry.handler(WELCOME_EMAIL)
    def send_welcome_email(to: str, name: Optional[str] = None) -> Dict[str, Any]:
        subject, body = render_welcome_email(name)
        res = notifier.send(to, subject, body, content_type="text/html")
        return {"message_id": res.message_id, "status_code": res.status_code}

    @registry.handler("send_email")
    def send_email(to: str, subject: str, body: str, content_type: str = "text/html") -> Dict[str, Any]:
        res = notifier.send(to, subject, body, content_type=content_type)
        return {"message_id": res.message_id, "status_code": res.status_code}

    return registry
