"""Session history persistence in YAML.

Manages ``.mate/state/deployments.yaml``.  A record is written when a
session reaches a terminal state; re-saving the same session id replaces
its record.  Only the newest ``history_limit`` records are kept.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

SESSION_STATE_FILE = ".mate/state/deployments.yaml"
DEFAULT_HISTORY_LIMIT = 50


def _default_session_state() -> dict[str, Any]:
    return {
        "sessions": [],
        "_metadata": {
            "created": None,
            "last_updated": None,
        },
    }


class SessionStore:
    """Persistent, size-bounded list of session records (newest first)."""

    def __init__(self, project_dir: str = ".", history_limit: int = DEFAULT_HISTORY_LIMIT):
        self._path = Path(project_dir) / SESSION_STATE_FILE
        self._limit = max(1, int(history_limit))
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def exists(self) -> bool:
        return self._path.exists()

    def list(self) -> list[dict[str, Any]]:
        """All stored records, newest first."""
        with self._lock:
            return list(self._load()["sessions"])

    def get(self, session_id: str) -> dict[str, Any] | None:
        """Return the record for *session_id*, accepting a unique id prefix."""
        records = self.list()
        for record in records:
            if record.get("id") == session_id:
                return record
        matches = [r for r in records if str(r.get("id", "")).startswith(session_id)]
        if len(matches) == 1:
            return matches[0]
        return None

    def save(self, record: dict[str, Any]) -> None:
        """Insert or replace *record* and trim to the history limit."""
        with self._lock:
            state = self._load()
            sessions = [s for s in state["sessions"] if s.get("id") != record.get("id")]
            sessions.insert(0, record)
            state["sessions"] = sessions[: self._limit]
            self._write(state)

    def clear(self) -> None:
        with self._lock:
            self._write(_default_session_state())

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _load(self) -> dict[str, Any]:
        state = _default_session_state()
        if not self._path.exists():
            return state
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (yaml.YAMLError, IOError) as e:
            logger.warning("Could not load session history: %s", e)
            return state

        if not isinstance(loaded, dict) or not isinstance(loaded.get("sessions", []), list):
            logger.warning("Ignoring malformed session history in %s", self._path)
            return state

        state["sessions"] = loaded.get("sessions", [])
        state["_metadata"].update(loaded.get("_metadata") or {})
        return state

    def _write(self, state: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        now = datetime.now(timezone.utc).isoformat()
        if not state["_metadata"].get("created"):
            state["_metadata"]["created"] = now
        state["_metadata"]["last_updated"] = now

        with open(self._path, "w", encoding="utf-8") as f:
            yaml.safe_dump(
                state,
                f,
                default_flow_style=False,
                allow_unicode=True,
                sort_keys=False,
                width=120,
            )
        logger.debug("Saved session history to %s", self._path)
