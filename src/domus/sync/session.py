"""
Household session persistence.

The sign-in flow lives in the app's auth service; this module only keeps
what it hands back so the sync engine can attach it to requests:

    {
        "token": "…",            # bearer token for /api/sync/*
        "userId": "usr_…",
        "householdId": "hh_…",   # null until the user joins a household
    }

The file is written with owner-only permissions. If the remote rejects the
token, the cycle fails like any other transport error and the user has to
run `python -m domus setup` again.
"""
import json
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

# ── Constants ─────────────────────────────────────────────────────────────────

SESSION_DIR_NAME = "session"
SESSION_FILE_NAME = "session.json"


# ── Exceptions ────────────────────────────────────────────────────────────────

class NoSessionError(RuntimeError):
    """Raised when no saved session exists."""


# ── Identity ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Identity:
    token: str
    user_id: str
    household_id: Optional[str] = None

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


# ── Main class ────────────────────────────────────────────────────────────────

class SessionAuth:
    """
    Manages the saved household session.

    Usage:
        auth = SessionAuth(settings.state_dir / "session")
        if not auth.has_session():
            auth.save({"token": ..., "userId": ..., "householdId": ...})
        identity = auth.identity()
    """

    def __init__(self, session_dir: Path):
        self._session_dir = Path(session_dir)
        self._session_file = self._session_dir / SESSION_FILE_NAME

    @classmethod
    def from_settings(cls, settings) -> "SessionAuth":
        return cls(Path(settings.state_dir) / SESSION_DIR_NAME)

    @property
    def session_dir(self) -> Path:
        return self._session_dir

    # ── Persistence ───────────────────────────────────────────────────────────

    def has_session(self) -> bool:
        """Return True if a session file exists on disk."""
        return self._session_file.exists()

    def save(self, session_data: Dict[str, Any]) -> None:
        """
        Persist session_data to disk with owner-only permissions.

        Directory: 0700 (rwx------)
        File:      0600 (rw-------)
        """
        if not session_data.get("token") or not session_data.get("userId"):
            raise ValueError("session_data needs at least 'token' and 'userId'")

        self._session_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._session_dir, stat.S_IRWXU)  # 0700

        self._session_file.write_text(json.dumps(session_data, indent=2))
        os.chmod(self._session_file, stat.S_IRUSR | stat.S_IWUSR)  # 0600

    def load(self) -> Dict[str, Any]:
        """
        Load session_data from disk.

        Raises:
            NoSessionError: if no session file exists.
        """
        if not self._session_file.exists():
            raise NoSessionError(
                f"No household session found at {self._session_file}. "
                "Run `python -m domus setup` to sign in."
            )
        return json.loads(self._session_file.read_text())

    def clear(self) -> None:
        """Delete the session file (does not raise if already absent)."""
        if self._session_file.exists():
            self._session_file.unlink()

    # ── Identity ──────────────────────────────────────────────────────────────

    def identity(self) -> Identity:
        """
        Build the identity attached to outgoing sync requests.

        Raises:
            NoSessionError: if no session is saved.
        """
        data = self.load()
        return Identity(
            token=data["token"],
            user_id=data["userId"],
            household_id=data.get("householdId"),
        )
