"""Google Tasks API client implementation."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any, Literal

from gtasks_desktop.google import GoogleAuthService, execute_request
from gtasks_desktop.google.exceptions import InvalidArgument, ProviderContractViolation

TaskStatus = Literal["needsAction", "completed"]


@dataclass
class TaskListSummary:
    """Represents a Google Tasks list."""

    id: str
    title: str
    updated_on: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "updatedOn": self.updated_on}


@dataclass
class TaskSummary:
    """Represents a Google Task."""

    id: str
    title: str
    status: TaskStatus = "needsAction"
    due: str | None = None
    notes: str | None = None
    updated_on: str | None = None

    @property
    def is_completed(self) -> bool:
        """Check if task is completed."""
        return self.status == "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "due": self.due,
            "notes": self.notes,
            "updatedOn": self.updated_on,
        }


@dataclass
class NewTaskInput:
    """Fields accepted when creating a task."""

    title: str
    notes: str | None = None
    due: str | date | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> NewTaskInput:
        return cls(title=data.get("title") or "", notes=data.get("notes"), due=data.get("due"))


def _normalize_due(due: str | date | None) -> str | None:
    """Google Tasks expects RFC 3339; bare dates become midnight UTC."""
    if not due:
        return None
    if isinstance(due, date):
        return f"{due.isoformat()}T00:00:00.000Z"
    if len(due) == 10 and "T" not in due:
        return f"{due}T00:00:00.000Z"
    return due


def _parse_status(value: Any) -> TaskStatus:
    return "completed" if value == "completed" else "needsAction"


class TasksClient:
    """Google Tasks API client backed by the signed-in account.

    Usage:
        client = TasksClient(auth)

        # List task lists
        lists = await client.list_task_lists()

        # List tasks, completed ones included
        tasks = await client.list_tasks(lists[0].id)

        # Create a task
        task = await client.create_task(lists[0].id, NewTaskInput(title="Do something"))

    Note:
        Every call needs a signed-in GoogleAuthService; without one it raises
        NotAuthenticated.
    """

    MAX_RESULTS = 100

    def __init__(self, auth: GoogleAuthService) -> None:
        """Initialize Tasks client.

        Args:
            auth: Auth service that supplies live credentials.
        """
        self._auth = auth

    async def _get_service(self) -> Any:
        """Build a Tasks API service with freshly checked credentials."""
        return await self._auth.build_service("tasks", "v1")

    # =========================================================================
    # Task Lists
    # =========================================================================

    async def list_task_lists(self) -> list[TaskListSummary]:
        """List task lists in provider order (first page only).

        Returns:
            List of TaskListSummary objects, empty when there are none.
        """
        service = await self._get_service()
        results = await execute_request(service.tasklists().list(maxResults=self.MAX_RESULTS))
        items = results.get("items") or []

        return [self._parse_task_list(item) for item in items]

    def _parse_task_list(self, data: dict) -> TaskListSummary:
        """Parse task list from API response."""
        return TaskListSummary(
            id=data.get("id") or "",
            title=data.get("title") or "Untitled list",
            updated_on=data.get("updated"),
        )

    # =========================================================================
    # Tasks
    # =========================================================================

    async def list_tasks(self, task_list_id: str) -> list[TaskSummary]:
        """List tasks in a task list, completed tasks included.

        Args:
            task_list_id: Task list ID.

        Returns:
            List of TaskSummary objects.

        Raises:
            InvalidArgument: If task_list_id is empty.
        """
        if not task_list_id:
            raise InvalidArgument("A task list id is required to fetch tasks.")

        service = await self._get_service()
        results = await execute_request(
            service.tasks().list(
                tasklist=task_list_id,
                showCompleted=True,
                maxResults=self.MAX_RESULTS,
            )
        )
        items = results.get("items") or []

        return [self._parse_task(item) for item in items]

    async def create_task(
        self, task_list_id: str, task: NewTaskInput | Mapping[str, Any]
    ) -> TaskSummary:
        """Create a new task.

        Fields Google leaves out of its response are filled in from the request.

        Args:
            task_list_id: Task list ID.
            task: Title plus optional notes and due date ("YYYY-MM-DD" or RFC 3339).

        Returns:
            Created TaskSummary.

        Raises:
            InvalidArgument: If task_list_id or the title is empty.
            ProviderContractViolation: If Google does not return an id.
        """
        if not isinstance(task, NewTaskInput):
            task = NewTaskInput.from_mapping(task)

        if not task_list_id:
            raise InvalidArgument("A task list id is required to create tasks.")
        if not task.title or not task.title.strip():
            raise InvalidArgument("Tasks require a title.")

        due = _normalize_due(task.due)
        body: dict[str, Any] = {"title": task.title}
        if task.notes:
            body["notes"] = task.notes
        if due:
            body["due"] = due

        service = await self._get_service()
        created = await execute_request(service.tasks().insert(tasklist=task_list_id, body=body))

        if not created.get("id"):
            raise ProviderContractViolation(
                "The Google Tasks API did not return an id for the new task."
            )

        return TaskSummary(
            id=created["id"],
            title=created.get("title") or task.title,
            status=_parse_status(created.get("status")),
            due=created.get("due") or due,
            notes=created.get("notes") or task.notes,
            updated_on=created.get("updated"),
        )

    def _parse_task(self, data: dict) -> TaskSummary:
        """Parse task from API response."""
        return TaskSummary(
            id=data.get("id") or "",
            title=data.get("title") or "Untitled task",
            status=_parse_status(data.get("status")),
            due=data.get("due"),
            notes=data.get("notes"),
            updated_on=data.get("updated"),
        )
