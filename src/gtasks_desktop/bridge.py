"""Asynchronous bridge between a presentation layer and the Google services.

Every call returns JSON-ready data so a UI host can forward it unchanged.
Calls can be made directly (``await bridge.list_tasks(list_id)``) or by
channel name (``await bridge.invoke("tasks:list-tasks", list_id)``).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from gtasks_desktop.google import GoogleAuthService
from gtasks_desktop.google.exceptions import GoogleTasksError
from gtasks_desktop.tasks import NewTaskInput, TasksClient


class UnknownChannelError(GoogleTasksError, KeyError):
    """Raised when a channel name has no handler."""

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Unknown bridge channel: {channel}")

    def __str__(self) -> str:
        return self.args[0]


class DesktopBridge:
    """The operations a presentation layer may call."""

    def __init__(self, auth: GoogleAuthService, tasks: TasksClient) -> None:
        self.auth = auth
        self.tasks = tasks
        self._handlers: dict[str, Callable[..., Awaitable[Any]]] = {
            "app:ping": self.ping,
            "auth:get-state": self.get_auth_state,
            "auth:sign-in": self.sign_in,
            "auth:sign-out": self.sign_out,
            "tasks:list-task-lists": self.list_task_lists,
            "tasks:list-tasks": self.list_tasks,
            "tasks:create-task": self._create_task_from_payload,
        }

    @property
    def channels(self) -> list[str]:
        return list(self._handlers)

    async def invoke(self, channel: str, payload: Any = None) -> Any:
        """Dispatch a call by channel name.

        Raises:
            UnknownChannelError: If no handler is registered for ``channel``.
        """
        handler = self._handlers.get(channel)
        if handler is None:
            raise UnknownChannelError(channel)
        if payload is None:
            return await handler()
        return await handler(payload)

    async def ping(self) -> str:
        return "pong"

    async def get_auth_state(self) -> dict[str, Any]:
        return self.auth.get_auth_state().to_dict()

    async def sign_in(self) -> dict[str, Any]:
        state = await self.auth.sign_in()
        return state.to_dict()

    async def sign_out(self) -> None:
        await self.auth.sign_out()

    async def list_task_lists(self) -> list[dict[str, Any]]:
        return [task_list.to_dict() for task_list in await self.tasks.list_task_lists()]

    async def list_tasks(self, task_list_id: str = "") -> list[dict[str, Any]]:
        return [task.to_dict() for task in await self.tasks.list_tasks(task_list_id)]

    async def create_task(self, task_list_id: str, task: dict[str, Any]) -> dict[str, Any]:
        created = await self.tasks.create_task(task_list_id, NewTaskInput.from_mapping(task))
        return created.to_dict()

    async def _create_task_from_payload(
        self, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        payload = payload or {}
        return await self.create_task(payload.get("taskListId") or "", payload.get("task") or {})
