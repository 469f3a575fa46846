"""File-based persistence for the single Google OAuth credential record.

The record is plain JSON with no schema version. Readers accept the field
names written by earlier builds of the desktop app (``token``, ``scopes``,
``expiry_date`` in milliseconds, ISO ``expiry``) and keep unknown fields so
they survive a rewrite.
"""

from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Keys interpreted by Credentials.from_dict; everything else goes to ``extra``
_KNOWN_KEYS = {
    "access_token",
    "token",
    "refresh_token",
    "expires_at",
    "expiry_date",
    "expiry",
    "expires_in",
    "scope",
    "scopes",
    "token_type",
    "type",
}


def _parse_expiry(data: Mapping[str, Any]) -> float | None:
    """Resolve the expiry of a token record to a Unix timestamp."""
    if data.get("expires_at") is not None:
        return float(data["expires_at"])

    if data.get("expiry_date") is not None:
        return float(data["expiry_date"]) / 1000

    expiry = data.get("expiry")
    if isinstance(expiry, str) and expiry:
        dt = datetime.fromisoformat(expiry.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    if isinstance(expiry, (int, float)):
        return float(expiry)

    if data.get("expires_in") is not None:
        return time.time() + float(data["expires_in"])

    return None


@dataclass
class Credentials:
    """OAuth 2.0 credentials for the signed-in Google account."""

    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None  # Unix timestamp
    scope: str = ""
    token_type: str = "Bearer"
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Credentials:
        """Build credentials from a stored record or a token endpoint response.

        Raises:
            ValueError: If the record has no access token.
        """
        access_token = data.get("access_token") or data.get("token")
        if not access_token:
            raise ValueError("Credential record has no access token")

        scope = data.get("scope") or ""
        if not scope and data.get("scopes"):
            scope = " ".join(data["scopes"])

        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or None,
            expires_at=_parse_expiry(data),
            scope=scope,
            token_type=data.get("token_type") or data.get("type") or "Bearer",
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk record format."""
        return {
            **self.extra,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "scope": self.scope,
            "token_type": self.token_type,
        }

    def to_token(self) -> dict[str, Any]:
        """Convert to the token dict used by Authlib sessions."""
        token: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "scope": self.scope,
        }
        if self.refresh_token:
            token["refresh_token"] = self.refresh_token
        if self.expires_at is not None:
            token["expires_at"] = int(self.expires_at)
        return token

    def merged(self, token: Mapping[str, Any]) -> Credentials:
        """Return new credentials with ``token`` laid over these.

        Google does not always reissue the refresh token on refresh, so the
        current one is kept whenever the update leaves it out.
        """
        update = {k: v for k, v in token.items() if v is not None}
        if "expires_at" not in update and "expires_in" in update:
            update["expires_at"] = time.time() + float(update["expires_in"])
        merged = Credentials.from_dict({**self.to_dict(), **update})
        if not merged.refresh_token:
            merged.refresh_token = self.refresh_token
        return merged

    @property
    def scopes(self) -> list[str]:
        return self.scope.split()

    def is_expired(self, leeway: float = 60) -> bool:
        """Check whether the access token expires within ``leeway`` seconds."""
        if self.expires_at is None:
            return False
        return self.expires_at < time.time() + leeway


class CredentialStore:
    """File-based store for one credential record.

    The file is written atomically and chmod 0600 (owner-only read/write).
    Every operation is safe when the data directory does not exist yet.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Credentials | None:
        """Load the stored credentials. Returns None if nothing usable is stored."""
        if not self.path.exists():
            logger.info("No stored Google credentials at %s", self.path)
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("Credential record is not a JSON object")
            credentials = Credentials.from_dict(data)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable credential record %s: %s", self.path, e)
            return None

        logger.info("Loaded Google credentials with scopes: %s", credentials.scopes)
        return credentials

    def save(self, credentials: Credentials) -> None:
        """Overwrite the stored record with ``credentials``."""
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(credentials.to_dict(), f, indent=2)
            os.chmod(tmp_name, stat.S_IRUSR | stat.S_IWUSR)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info("Saved Google credentials to %s", self.path)

    def delete(self) -> bool:
        """Delete the stored record. Returns True if a record was removed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False

        logger.info("Deleted Google credentials at %s", self.path)
        return True
