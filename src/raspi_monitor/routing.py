"""
Endpoint routing for the monitor's JSON views.

This module provides:
- EndpointRegistry: maps request paths to async payload handlers
- Handler dispatch with error wrapping

The HTTP layer only has to translate a request into ``(path, params)`` and
turn the returned dict (or the raised MonitorError) into a response.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from raspi_monitor.errors import InternalError, MonitorError, NotFoundError

# Handlers take the query parameters and return a JSON-serializable dict
EndpointHandler = Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]


def normalize_path(path: str) -> str:
    """Strip the query string and trailing slashes; always start with '/'."""
    path = path.split("?", 1)[0].rstrip("/")
    if not path.startswith("/"):
        path = "/" + path
    return path


class EndpointRegistry:
    """
    Registry for mapping endpoint paths to handler functions.

    Example:
        >>> registry = EndpointRegistry()
        >>> registry.register("/health.json", health_handler)
        >>> payload = await registry.invoke("/health.json", {})
    """

    def __init__(self) -> None:
        """Initialize an empty endpoint registry."""
        self._handlers: dict[str, EndpointHandler] = {}

    def register(self, path: str, handler: EndpointHandler) -> None:
        """
        Register a handler for ``path``.

        Raises:
            ValueError: If a handler is already registered for the path.
        """
        path = normalize_path(path)
        if path in self._handlers:
            raise ValueError(f"Endpoint '{path}' is already registered")
        self._handlers[path] = handler

    def get_handler(self, path: str) -> EndpointHandler | None:
        """Return the handler for ``path``, or None if not registered."""
        return self._handlers.get(normalize_path(path))

    def list_paths(self) -> list[str]:
        """List all registered paths in registration order."""
        return list(self._handlers.keys())

    async def invoke(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Invoke the handler registered for ``path``.

        Args:
            path: Request path, optionally with a query string.
            params: Query parameters.

        Returns:
            The handler's payload.

        Raises:
            NotFoundError: If no handler is registered for the path.
            MonitorError: Whatever the handler raised, with unexpected
                exceptions wrapped in InternalError.
        """
        handler = self.get_handler(path)
        if handler is None:
            raise NotFoundError(
                f"Endpoint '{normalize_path(path)}' does not exist",
                details={"path": normalize_path(path)},
            )

        try:
            return await handler(params or {})
        except MonitorError:
            raise
        except Exception as e:
            raise InternalError(
                message=f"Internal error in endpoint '{normalize_path(path)}': {e!s}",
                details={
                    "path": normalize_path(path),
                    "exception_type": type(e).__name__,
                },
            ) from e

    def __contains__(self, path: str) -> bool:
        return normalize_path(path) in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
