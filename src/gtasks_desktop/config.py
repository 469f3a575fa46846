"""Centralized configuration.

The OAuth client identity comes from the environment, optionally seeded from
.env files found under the project root or the data directory:

    config/.env, config/.env.production, config/.env.development,
    config/.env.local, .env, .env.development, .env.local

Files later in that list take precedence over earlier ones, and variables
already set in the process environment take precedence over every file.

Private application data lives in the data directory:
    <data_dir>/google-oauth.json  - persisted OAuth credentials
    <data_dir>/config/            - optional .env files for packaged installs
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from gtasks_desktop.google.exceptions import ConfigurationError

# __file__ is src/gtasks_desktop/config.py, so 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

ENV_FILES = [
    "config/.env",
    "config/.env.production",
    "config/.env.development",
    "config/.env.local",
    ".env",
    ".env.development",
    ".env.local",
]

DEFAULT_DATA_DIR = Path.home() / ".gtasks-desktop"
TOKEN_FILENAME = "google-oauth.json"

CONSENT_WINDOWS = ("playwright", "system")
PKCE_METHODS = ("S256", "plain")


def _load_env_file(env_path: Path) -> dict[str, str]:
    """Load environment variables from a file.

    Args:
        env_path: Path to .env file.

    Returns:
        Dictionary of loaded variables.
    """
    loaded = {}
    if not env_path.exists():
        return loaded

    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export ") :]
            if "=" not in line:
                continue

            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()

            # Remove surrounding quotes
            if (value.startswith('"') and value.endswith('"')) or (
                value.startswith("'") and value.endswith("'")
            ):
                value = value[1:-1]

            # Only set if not already in environment (env vars take precedence)
            if key and key not in os.environ:
                os.environ[key] = value
                loaded[key] = value

    return loaded


def get_data_dir() -> Path:
    """Get the private application data directory (not created here)."""
    override = os.environ.get("GTASKS_DATA_DIR")
    return Path(override).expanduser() if override else DEFAULT_DATA_DIR


def find_env_files(search_roots: list[Path] | None = None) -> list[Path]:
    """List existing .env files under the project root and any extra roots."""
    roots: list[Path] = []
    for root in [PROJECT_ROOT, *(search_roots or [])]:
        if root not in roots:
            roots.append(root)

    candidates = [root / name for root in roots for name in ENV_FILES]
    return [path for path in candidates if path.exists()]


def load_environment(search_roots: list[Path] | None = None) -> list[Path]:
    """Load .env files from the project root and any extra roots.

    Files are applied last-to-first so that later entries in ENV_FILES win
    while the process environment keeps priority.

    Args:
        search_roots: Additional directories to search, e.g. the data dir.

    Returns:
        Paths of the files that existed and were read.
    """
    found = find_env_files(search_roots)
    for path in reversed(found):
        _load_env_file(path)
    return found


@dataclass
class Settings:
    """Runtime settings for the desktop client."""

    client_id: str = ""
    client_secret: str = ""
    data_dir: Path = DEFAULT_DATA_DIR
    consent_window: str = "playwright"
    pkce_method: str = "S256"

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from environment variables."""
        consent_window = os.environ.get("GTASKS_CONSENT_WINDOW", "playwright").lower()
        if consent_window not in CONSENT_WINDOWS:
            raise ValueError(
                f"Unknown consent window: {consent_window}. Use one of: {list(CONSENT_WINDOWS)}"
            )

        pkce_method = os.environ.get("GTASKS_PKCE_METHOD", "S256")
        if pkce_method not in PKCE_METHODS:
            raise ValueError(
                f"Unknown PKCE method: {pkce_method}. Use one of: {list(PKCE_METHODS)}"
            )

        return cls(
            client_id=os.environ.get("GOOGLE_CLIENT_ID", "").strip(),
            client_secret=os.environ.get("GOOGLE_CLIENT_SECRET", "").strip(),
            data_dir=get_data_dir(),
            consent_window=consent_window,
            pkce_method=pkce_method,
        )

    @property
    def token_path(self) -> Path:
        """Path of the persisted credential record."""
        return self.data_dir / TOKEN_FILENAME

    @property
    def has_client_identity(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def require_client_identity(self) -> None:
        """Raise ConfigurationError unless both client id and secret are set."""
        missing = []
        if not self.client_id:
            missing.append("GOOGLE_CLIENT_ID")
        if not self.client_secret:
            missing.append("GOOGLE_CLIENT_SECRET")
        if missing:
            raise ConfigurationError(missing)


def get_config_status(settings: Settings | None = None) -> dict:
    """Get status of the configured credentials and paths.

    Returns:
        Dictionary with configuration status.
    """
    settings = settings or Settings.from_env()
    return {
        "project_root": str(PROJECT_ROOT),
        "data_dir": str(settings.data_dir),
        "env_files": [str(path) for path in find_env_files([settings.data_dir / "config"])],
        "client_id": bool(settings.client_id),
        "client_secret": bool(settings.client_secret),
        "token": settings.token_path.exists(),
        "consent_window": settings.consent_window,
        "pkce_method": settings.pkce_method,
    }


# Auto-load .env files from the project root on import
_loaded = load_environment()
