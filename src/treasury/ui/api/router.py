"""Route action requests to handlers."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from http import HTTPStatus
from typing import Any

from treasury.core.errors import TreasuryError, ValidationError
from treasury.ui.api.auth import Caller
from treasury.ui.api.logger import ApiLogger

# Handler type: async function taking the caller and request body, returning
# the JSON response body
Handler = Callable[[Caller, dict[str, Any]], Awaitable[dict[str, Any]]]


class UnknownActionError(ValidationError):
    """Raised when an action is not registered with the router."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Unknown action: {action}")


class ActionRouter:
    """Route named actions to handlers.

    Maps action names (e.g. 'sync_transactions', 'reconcile') to async
    handler functions. Handlers receive the authenticated caller and the
    full request body and return a JSON-serializable dict.

    Example:
        router = ActionRouter()

        async def handle_ping(caller: Caller, body: dict[str, Any]) -> dict[str, Any]:
            return {"pong": True}

        router.register("ping", handle_ping)
        status, payload = await router.handle(caller, {"action": "ping"})
    """

    def __init__(self, api_logger: ApiLogger | None = None) -> None:
        self._handlers: dict[str, Handler] = {}
        self._logger = api_logger or ApiLogger()

    def register(self, action: str, handler: Handler) -> None:
        """Register handler for an action.

        Args:
            action: The action name (e.g. 'sync_all')
            handler: Async function that takes caller and body and returns result
        """
        self._handlers[action] = handler

    async def dispatch(
        self, action: str, caller: Caller, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Dispatch request to registered handler.

        Raises:
            UnknownActionError: If no handler is registered for the action
        """
        handler = self._handlers.get(action)
        if handler is None:
            raise UnknownActionError(action)
        return await handler(caller, body)

    async def handle(
        self, caller: Caller, body: Any
    ) -> tuple[HTTPStatus, dict[str, Any]]:
        """Run a request end to end and translate errors to a status code.

        Returns:
            Tuple of (HTTP status, response body). Error bodies have the
            shape {"error": message}.
        """
        action: str | None = None
        try:
            if not isinstance(body, dict):
                raise ValidationError("Request body must be a JSON object")
            action = body.get("action")
            if not isinstance(action, str) or not action:
                raise ValidationError("Missing action")
            self._logger.action_dispatching(action, caller.user_id)
            result = await self.dispatch(action, caller, body)
        except TreasuryError as e:
            self._logger.action_rejected(action, e.status_code, e)
            return e.status_code, {"error": str(e)}
        except Exception as e:  # noqa: BLE001
            self._logger.handler_error(action, e)
            return HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "Internal server error"}

        self._logger.action_completed(action)
        return HTTPStatus.OK, result

    def has_action(self, action: str) -> bool:
        """Check if a handler is registered for the action."""
        return action in self._handlers

    @property
    def actions(self) -> list[str]:
        """List all registered action names."""
        return list(self._handlers.keys())
