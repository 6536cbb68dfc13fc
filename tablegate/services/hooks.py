# ABOUTME: Registry of custom action handlers and before/after interceptors
# ABOUTME: Interceptors are keyed by action name or "*"; wildcard ones run after the specific ones

from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import structlog

from tablegate.models.errors import ApiResponse
from tablegate.models.requests import ApiRequest

logger = structlog.get_logger()

WILDCARD = "*"

# handler(request, auth) -> ApiResponse | ApiError | payload
ActionHandler = Callable[[ApiRequest, Any], Any]
# before(request, auth) -> ApiResponse to short-circuit, or None
BeforeInterceptor = Callable[[ApiRequest, Any], Optional[ApiResponse]]
# after(request, auth, response) -> replacement ApiResponse, or None
AfterInterceptor = Callable[[ApiRequest, Any, ApiResponse], Optional[ApiResponse]]


class HookRegistry:
    """
    Extension points for the request pipeline.

    Example:
        hooks = HookRegistry()
        hooks.register_action("ping", lambda request, auth: {"pong": True})
        hooks.before("delete", block_on_fridays)
        hooks.after("*", add_version_header)
    """

    def __init__(self):
        self._actions: Dict[str, ActionHandler] = {}
        self._before: Dict[str, List[BeforeInterceptor]] = defaultdict(list)
        self._after: Dict[str, List[AfterInterceptor]] = defaultdict(list)

    def register_action(self, name: str, handler: ActionHandler) -> None:
        if name in self._actions:
            logger.warning("hooks.action_replaced", action=name)
        self._actions[name] = handler

    def get_action(self, name: str) -> Optional[ActionHandler]:
        return self._actions.get(name)

    def before(self, action: str, interceptor: BeforeInterceptor) -> None:
        self._before[action].append(interceptor)

    def after(self, action: str, interceptor: AfterInterceptor) -> None:
        self._after[action].append(interceptor)

    @staticmethod
    def _chain(registry: Dict[str, List[Callable]], action: str) -> List[Callable]:
        specific = registry.get(action, []) if action != WILDCARD else []
        return [*specific, *registry.get(WILDCARD, [])]

    def run_before(self, action: str, request: ApiRequest, auth: Any) -> Optional[ApiResponse]:
        """Run before-interceptors in order; the first response returned wins."""
        for interceptor in self._chain(self._before, action):
            response = interceptor(request, auth)
            if response is not None:
                return response
        return None

    def run_after(self, action: str, request: ApiRequest, auth: Any, response: ApiResponse) -> ApiResponse:
        """Run after-interceptors in order, each seeing the previous one's response."""
        for interceptor in self._chain(self._after, action):
            replacement = interceptor(request, auth, response)
            if replacement is not None:
                response = replacement
        return response
