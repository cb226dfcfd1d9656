"""Job handler registry."""

from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional

from jobscheduler.jobs.errors import HandlerNotFoundError

if TYPE_CHECKING:
    from jobscheduler.jobs.models import ExecutionContext

# Handler signature: async def handler(config: dict, ctx: ExecutionContext) -> dict | None
JobHandler = Callable[
    [dict[str, Any], "ExecutionContext"],
    Coroutine[Any, Any, Optional[dict[str, Any]]],
]


class HandlerRegistry:
    """Registry mapping (service, method) pairs to their handlers."""

    def __init__(self):
        self._handlers: dict[tuple[str, str], JobHandler] = {}

    def register(self, service_name: str, method_name: str, handler: JobHandler) -> None:
        """Register a handler. Re-registering a pair replaces the previous handler."""
        self._handlers[(service_name, method_name)] = handler

    def get_handler(self, service_name: str, method_name: str) -> JobHandler:
        """Get the handler for a pair. Raises HandlerNotFoundError if not found."""
        try:
            return self._handlers[(service_name, method_name)]
        except KeyError:
            raise HandlerNotFoundError(service_name, method_name) from None

    def handler(
        self, service_name: str, method_name: str
    ) -> Callable[[JobHandler], JobHandler]:
        """Decorator to register a handler."""

        def decorator(fn: JobHandler) -> JobHandler:
            self.register(service_name, method_name, fn)
            return fn

        return decorator

    def __contains__(self, key: object) -> bool:
        return key in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
