from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .credentials import SessionRecord
from .storage import KeyValueStore, load_document

logger = logging.getLogger("farmsearch.auth")

SessionListener = Callable[[Optional[SessionRecord]], None]


class SessionState:
    """
    Holds the single current session and mirrors it to storage.

    Listeners are called after every change of identity, including logout,
    so dependent services can rebind their per-user state.
    """

    def __init__(self, store: KeyValueStore, key: str) -> None:
        self.store = store
        self.key = key
        self._listeners: List[SessionListener] = []
        self._current = self._load()

    def _load(self) -> Optional[SessionRecord]:
        document = load_document(self.store, self.key, None)
        record = SessionRecord.from_document(document)
        if record is None:
            # Corrupt documents also come back as None; drop whatever is stored.
            if document is not None:
                logger.warning("Stored session '%s' is incomplete; starting logged out.", self.key)
            self.store.delete(self.key)
        return record

    @property
    def current(self) -> Optional[SessionRecord]:
        return self._current

    @property
    def identity(self) -> Optional[str]:
        return self._current.id if self._current else None

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def install(self, record: SessionRecord) -> None:
        self._current = record
        self.store.put(self.key, record.to_document())
        self._notify()

    def clear(self) -> None:
        self._current = None
        self.store.delete(self.key)
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._current)
