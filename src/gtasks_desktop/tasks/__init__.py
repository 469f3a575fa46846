"""Google Tasks API client backed by the desktop sign-in.

Usage:
    from gtasks_desktop.tasks import NewTaskInput, TasksClient

    client = TasksClient(auth)

    # List task lists
    lists = await client.list_task_lists()

    # List tasks in a list
    tasks = await client.list_tasks(lists[0].id)

    # Create a task
    task = await client.create_task(
        lists[0].id,
        NewTaskInput(title="Review PR", notes="Check the sign-in changes", due="2026-01-25"),
    )
"""

from __future__ import annotations

from gtasks_desktop.tasks.client import NewTaskInput, TaskListSummary, TasksClient, TaskSummary

__all__ = ["TasksClient", "TaskSummary", "TaskListSummary", "NewTaskInput"]
