"""
Action executor contract and registry.

An executor performs one automation action on a live page and reports a
structured result. ``needs_login`` is the only signal the worker uses to
trigger re-authentication.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, ConfigDict, Field

from panelrunner.errors import ActionFailedError

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = structlog.get_logger(__name__)

ANY_TARGET = "*"
LOGIN_ACTION = "login"


class CancellationToken:
    """
    Cooperative cancellation flag handed to executors.

    Executors may poll ``cancelled`` between steps; nothing forces them to.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class ActionResult(BaseModel):
    """
    Outcome reported by an action executor.

    Action-specific fields (account name, amount, ...) are kept as extra
    attributes and returned with the job result.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    success: bool
    message: str = ""
    needs_login: bool = Field(default=False, alias="needsLogin")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@runtime_checkable
class ActionExecutor(Protocol):
    """Pluggable routine performing one action against a live page."""

    async def execute(
        self,
        page: Page,
        params: dict[str, Any],
        token: CancellationToken,
    ) -> ActionResult | dict[str, Any]: ...


def coerce_result(raw: ActionResult | dict[str, Any] | None) -> ActionResult:
    """Normalize whatever an executor returned into an ActionResult."""
    if isinstance(raw, ActionResult):
        return raw
    if isinstance(raw, dict):
        return ActionResult.model_validate(raw)
    raise ActionFailedError(f"Executor returned an invalid result: {raw!r}")


class ExecutorRegistry:
    """
    Lookup of executors by (target, action name).

    Executors registered under the ``"*"`` target serve any target that has
    no specific registration for the same action.
    """

    def __init__(self) -> None:
        self._executors: dict[tuple[str, str], ActionExecutor] = {}
        self._log = logger.bind(component="executor_registry")

    def register(
        self,
        action_name: str,
        executor: ActionExecutor,
        target_id: str = ANY_TARGET,
    ) -> None:
        if action_name == LOGIN_ACTION:
            raise ValueError("The login action is built in and cannot be registered")
        self._executors[(target_id, action_name)] = executor
        self._log.debug("Executor registered", target_id=target_id, action=action_name)

    def resolve(self, target_id: str, action_name: str) -> ActionExecutor:
        """
        Find the executor for an action on a target.

        Raises:
            ActionFailedError: If nothing is registered for the pair
        """
        executor = self._executors.get((target_id, action_name))
        if executor is None:
            executor = self._executors.get((ANY_TARGET, action_name))
        if executor is None:
            raise ActionFailedError(
                f"No executor registered for action '{action_name}' on target '{target_id}'"
            )
        return executor

    def actions(self) -> list[tuple[str, str]]:
        return sorted(self._executors)

    def __contains__(self, key: tuple[str, str]) -> bool:
        _, action_name = key
        return (key in self._executors) or ((ANY_TARGET, action_name) in self._executors)
