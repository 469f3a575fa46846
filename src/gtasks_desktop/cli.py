"""CLI for gtasks-desktop - Google Tasks from the terminal.

Usage:
    gtasks-desktop init                          # Create data directory, show setup instructions
    gtasks-desktop status                        # Show configuration and sign-in status
    gtasks-desktop login [--browser system]      # Sign in with Google
    gtasks-desktop logout                        # Sign out and delete stored credentials
    gtasks-desktop lists                         # List task lists
    gtasks-desktop tasks <list-id>               # List tasks in a list
    gtasks-desktop add <list-id> <title>         # Create a task
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable

from gtasks_desktop.bridge import DesktopBridge
from gtasks_desktop.config import (
    ENV_FILES,
    Settings,
    get_config_status,
    get_data_dir,
    load_environment,
)
from gtasks_desktop.google import ConfigurationError, GoogleAuthService, GoogleTasksError
from gtasks_desktop.tasks import TasksClient

Command = Callable[[DesktopBridge], Awaitable[int]]


def cmd_init(settings: Settings) -> int:
    """Create the data directory and show where configuration goes."""
    config_dir = settings.data_dir / "config"
    config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

    print("=" * 60)
    print("GTASKS-DESKTOP SETUP")
    print("=" * 60)
    print()
    print(f"Data directory: {settings.data_dir}")
    print()
    print("Credential locations:")
    print()
    print(f"  {config_dir}/.env.local (or any of: {', '.join(ENV_FILES)})")
    print("    GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET")
    print()
    print(f"  {settings.token_path}")
    print("    OAuth tokens (created by 'gtasks-desktop login')")
    print()
    print("-" * 60)
    print()

    if settings.has_client_identity:
        print("Google OAuth client configured")
    else:
        print("Create an OAuth client (type: Desktop app) at:")
        print("  https://console.cloud.google.com/apis/credentials")
        print()
        print(f"  cat > {config_dir / '.env.local'} << 'EOF'")
        print("  GOOGLE_CLIENT_ID=...apps.googleusercontent.com")
        print("  GOOGLE_CLIENT_SECRET=...")
        print("  EOF")
    return 0


async def cmd_status(bridge: DesktopBridge) -> int:
    """Show configuration and sign-in status."""
    status = get_config_status(bridge.auth.settings)
    state = await bridge.get_auth_state()

    print("=" * 60)
    print("GTASKS-DESKTOP STATUS")
    print("=" * 60)
    print()
    print(f"Data directory : {status['data_dir']}")
    print(f"Client ID      : {'[x]' if status['client_id'] else '[ ]'}")
    print(f"Client secret  : {'[x]' if status['client_secret'] else '[ ]'}")
    print(f"Stored token   : {'[x]' if status['token'] else '[ ]'}")
    print(f"Consent window : {status['consent_window']}")
    print()

    if not state["isAuthenticated"]:
        print("Not signed in - run 'gtasks-desktop login'")
        return 0

    profile = state.get("profile") or {}
    info = bridge.auth.get_token_info()
    print(f"Signed in as   : {profile.get('name', '?')} <{profile.get('email', '?')}>")
    print(f"Token status   : {info['status']}")
    print(f"Expires in     : {info.get('expires_in', 'unknown')}")
    return 0


async def cmd_login(bridge: DesktopBridge) -> int:
    """Interactive Google sign-in."""
    print("=" * 60)
    print("GTASKS-DESKTOP GOOGLE LOGIN")
    print("=" * 60)
    print("\nA browser window will open for Google consent.")
    print("Close it to cancel.\n")

    try:
        state = await bridge.sign_in()
    except ConfigurationError as e:
        print(f"\nError: {e}")
        print("Run 'gtasks-desktop init' for setup instructions")
        return 1

    profile = state.get("profile") or {}
    print(f"Signed in as {profile.get('name', '?')} <{profile.get('email', '?')}>")
    return 0


async def cmd_logout(bridge: DesktopBridge) -> int:
    """Sign out and delete stored credentials."""
    await bridge.sign_out()
    print("Signed out and local credentials removed")
    return 0


async def cmd_lists(bridge: DesktopBridge) -> int:
    """List task lists."""
    lists = await bridge.list_task_lists()
    if not lists:
        print("No task lists")
        return 0

    for task_list in lists:
        print(f"{task_list['id']}  {task_list['title']}")
    return 0


def cmd_tasks(task_list_id: str) -> Command:
    """List tasks in a task list."""

    async def run(bridge: DesktopBridge) -> int:
        tasks = await bridge.list_tasks(task_list_id)
        if not tasks:
            print("No tasks")
            return 0

        for task in tasks:
            mark = "[x]" if task["status"] == "completed" else "[ ]"
            due = f"  (due {task['due'][:10]})" if task["due"] else ""
            print(f"{mark} {task['title']}{due}  [{task['id']}]")
        return 0

    return run


def cmd_add(task_list_id: str, title: str, notes: str | None, due: str | None) -> Command:
    """Create a task."""

    async def run(bridge: DesktopBridge) -> int:
        task = await bridge.create_task(task_list_id, {"title": title, "notes": notes, "due": due})
        print(f"Created task {task['id']}: {task['title']}")
        return 0

    return run


async def _run(settings: Settings, command: Command) -> int:
    """Build the services, restore any sign-in and run ``command``."""
    auth = GoogleAuthService(settings)
    bridge = DesktopBridge(auth, TasksClient(auth))
    try:
        await auth.initialize()
        return await command(bridge)
    except GoogleTasksError as e:
        print(f"\nError: {e}")
        return 1
    finally:
        await auth.aclose()


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="gtasks-desktop",
        description="Google Tasks desktop client",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show progress logs")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("init", help="Create data directory and show setup instructions")
    subparsers.add_parser("status", help="Show configuration and sign-in status")

    login_parser = subparsers.add_parser("login", help="Sign in with Google")
    login_parser.add_argument(
        "--browser",
        choices=["playwright", "system"],
        default=None,
        help="Consent window: dedicated Chromium window or the system browser",
    )

    subparsers.add_parser("logout", help="Sign out and delete stored credentials")
    subparsers.add_parser("lists", help="List task lists")

    tasks_parser = subparsers.add_parser("tasks", help="List tasks in a task list")
    tasks_parser.add_argument("list_id", help="Task list ID")

    add_parser = subparsers.add_parser("add", help="Create a task")
    add_parser.add_argument("list_id", help="Task list ID")
    add_parser.add_argument("title", help="Task title")
    add_parser.add_argument("--notes", help="Task notes")
    add_parser.add_argument("--due", help="Due date (YYYY-MM-DD)")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    load_environment([get_data_dir() / "config"])
    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    if args.command == "init":
        return cmd_init(settings)

    if args.command == "login" and args.browser:
        settings.consent_window = args.browser

    commands: dict[str, Command] = {
        "status": cmd_status,
        "login": cmd_login,
        "logout": cmd_logout,
        "lists": cmd_lists,
    }
    if args.command == "tasks":
        command = cmd_tasks(args.list_id)
    elif args.command == "add":
        command = cmd_add(args.list_id, args.title, args.notes, args.due)
    else:
        command = commands[args.command]

    return asyncio.run(_run(settings, command))


if __name__ == "__main__":
    sys.exit(main())
