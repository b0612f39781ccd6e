"""Job handler registry."""

from collections.abc import Callable
from typing import Optional


class JobRegistry:
    """Registry for job handlers."""

    def __init__(self):
        self._handlers: dict[str, Callable] = {}

    def handler(self, name: str):
        """
        Decorator to register a job handler.

        Usage:
            @registry.handler("billing.sendInvoiceEmail")
            async def send_invoice_email(ctx, payload):
                ...
        """

        def decorator(func: Callable):
            self.register(name, func)
            return func

        return decorator

    def register(self, name: str, func: Callable) -> None:
        self._handlers[name] = func

    def get_handler(self, name: str) -> Optional[Callable]:
        """Get a handler by name."""
        return self._handlers.get(name)

    def all_handlers(self) -> dict[str, Callable]:
        """Get all registered handlers."""
        return self._handlers.copy()

    def types(self) -> list[str]:
        return list(self._handlers)

    def merge(self, other: "JobRegistry") -> "JobRegistry":
        """Return a new registry holding both handler sets; `other` wins on clashes."""
        merged = JobRegistry()
        merged._handlers.update(self._handlers)
        merged._handlers.update(other._handlers)
        return merged
