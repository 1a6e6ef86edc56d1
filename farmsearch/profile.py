from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .credentials import SessionRecord
from .session import SessionState
from .storage import KeyValueStore, generate_id, load_document, utcnow

logger = logging.getLogger("farmsearch.profile")

PROFILE_FIELDS = ("questionsHistory", "savedTips", "tasks", "reminders")

DEFAULT_TASKS: List[Dict[str, Any]] = [
    {"id": "task-1", "label": "Check soil moisture levels", "completed": False},
    {"id": "task-2", "label": "Review irrigation schedule", "completed": False},
    {"id": "task-3", "label": "Inspect tomato crop for pests", "completed": False},
]

DEFAULT_REMINDERS: List[Dict[str, Any]] = [
    {"id": "reminder-1", "message": "Review weather forecast for the week ahead."},
    {"id": "reminder-2", "message": "Follow up on fertilizer delivery status."},
]


def default_profile() -> Dict[str, List[Dict[str, Any]]]:
    return {
        "questionsHistory": [],
        "savedTips": [],
        "tasks": copy.deepcopy(DEFAULT_TASKS),
        "reminders": copy.deepcopy(DEFAULT_REMINDERS),
    }


def ensure_defaults(document: Any) -> Dict[str, List[Dict[str, Any]]]:
    """
    Merge a stored profile document over the defaults.

    Fields that are missing or not lists come from the defaults; lists are
    kept as stored, minus any entries that are not objects.
    """
    merged = default_profile()
    if not isinstance(document, dict):
        return merged
    for field in PROFILE_FIELDS:
        value = document.get(field)
        if isinstance(value, list):
            merged[field] = [item for item in value if isinstance(item, dict)]
    return merged


class ProfileService:
    """
    Per-user tasks, reminders, saved tips and question history.

    The service follows the injected session: on every identity change it
    loads that identity's stored profile (or seeds one from the defaults).
    With nobody logged in it works on a transient default profile that is
    never written to storage.
    """

    def __init__(
        self,
        store: KeyValueStore,
        session: SessionState,
        *,
        prefix: str = "pris.userData",
        history_limit: int = 50,
        tips_limit: int = 50,
        reminders_limit: int = 20,
        default_tip_title: str = "Saved answer",
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.history_limit = history_limit
        self.tips_limit = tips_limit
        self.reminders_limit = reminders_limit
        self.default_tip_title = default_tip_title
        self._lock = threading.RLock()
        self._identity: Optional[str] = None
        self._data = default_profile()
        self.bind(session.current)
        session.subscribe(self.bind)

    def storage_key(self, identity: str) -> str:
        return f"{self.prefix}.{identity}"

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def profile(self) -> Dict[str, List[Dict[str, Any]]]:
        with self._lock:
            return copy.deepcopy(self._data)

    def bind(self, session: Optional[SessionRecord]) -> None:
        with self._lock:
            if session is None:
                self._identity = None
                self._data = default_profile()
                logger.debug("Profile unbound; using transient defaults.")
                return
            self._identity = session.id
            document = load_document(self.store, self.storage_key(session.id), None)
            if document is None:
                logger.info("Seeding default profile for %s", session.id)
            elif not isinstance(document, dict):
                logger.warning("Stored profile for %s is not an object; resetting.", session.id)
            self._data = ensure_defaults(document)
            self._persist()

    def summary(self) -> Dict[str, int]:
        with self._lock:
            return {
                "questionsAsked": len(self._data["questionsHistory"]),
                "savedTips": len(self._data["savedTips"]),
                "openTasks": len([task for task in self._data["tasks"] if not task.get("completed")]),
            }

    def snapshot(self) -> Dict[str, Any]:
        """Profile and summary read under one lock acquisition."""
        with self._lock:
            return {"profile": self.profile, "summary": self.summary()}

    def record_question(self, prompt: str, answer: str) -> None:
        if not prompt and not answer:
            return
        entry = {
            "id": generate_id("question"),
            "prompt": prompt,
            "answer": answer,
            "createdAt": utcnow(),
        }
        self._update("questionsHistory", lambda items: [entry, *items][: self.history_limit])

    def clear_questions(self) -> None:
        self._update("questionsHistory", lambda items: [])

    def save_tip(self, title: str, content: str) -> None:
        if not title and not content:
            return
        tip = {
            "id": generate_id("tip"),
            "title": (title or "").strip() or self.default_tip_title,
            "content": content,
            "createdAt": utcnow(),
        }
        self._update("savedTips", lambda items: [tip, *items][: self.tips_limit])

    def remove_tip(self, tip_id: str) -> None:
        self._update("savedTips", lambda items: [tip for tip in items if tip.get("id") != tip_id])

    def toggle_task(self, task_id: str) -> None:
        def flip(tasks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            return [
                {**task, "completed": not task.get("completed")} if task.get("id") == task_id else task
                for task in tasks
            ]

        self._update("tasks", flip)

    def add_reminder(self, message: str) -> None:
        text = (message or "").strip()
        if not text:
            return
        reminder = {"id": generate_id("reminder"), "message": text, "createdAt": utcnow()}
        self._update("reminders", lambda items: [reminder, *items][: self.reminders_limit])

    def remove_reminder(self, reminder_id: str) -> None:
        self._update(
            "reminders", lambda items: [item for item in items if item.get("id") != reminder_id]
        )

    def _update(
        self,
        field: str,
        transform: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]],
    ) -> None:
        with self._lock:
            self._data[field] = transform(self._data[field])
            self._persist()

    def _persist(self) -> None:
        if self._identity is None:
            return
        self.store.put(self.storage_key(self._identity), self._data)
