from __future__ import annotations

import copy
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

logger = logging.getLogger("farmsearch.storage")


def utcnow() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


class StorageParseFailure(ValueError):
    """Raised when a stored document exists but cannot be decoded as JSON."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Stored document '{key}' is unreadable: {reason}")
        self.key = key


class KeyValueStore:
    """
    Minimal document persistence contract used by the auth and profile layers.

    Documents are plain JSON-compatible values. `get` returns None for a
    missing key and raises `StorageParseFailure` for a corrupt one.
    """

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def put(self, key: str, document: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """
    Dict-backed store. Values are kept serialized so callers never share
    mutable state with the store, mirroring the file-backed behaviour.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageParseFailure(key, str(exc)) from exc

    def put(self, key: str, document: Any) -> None:
        self._data[key] = json.dumps(document)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def put_raw(self, key: str, raw: str) -> None:
        self._data[key] = raw

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileStore(KeyValueStore):
    """
    One pretty-printed JSON file per key inside `root`.

    Writes go to a sibling temp file first and are swapped in with
    `os.replace`, so a reader never observes a half-written document.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]+", "_", key).strip("._")
        if not safe:
            raise ValueError(f"Storage key {key!r} has no usable characters.")
        return self.root / f"{safe}.json"

    def get(self, key: str) -> Optional[Any]:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise StorageParseFailure(key, str(exc)) from exc

    def put(self, key: str, document: Any) -> None:
        path = self.path_for(key)
        tmp_path = path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, sort_keys=True)
            handle.write("\n")
        os.replace(tmp_path, path)
        logger.debug("Wrote %s", path.name)

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        if path.exists():
            path.unlink()
            logger.debug("Removed %s", path.name)


def load_document(store: KeyValueStore, key: str, default: Any) -> Any:
    """
    Fetch `key` from `store`, falling back to a copy of `default` when the
    document is missing or corrupt.
    """
    try:
        document = store.get(key)
    except StorageParseFailure as exc:
        logger.warning("%s; falling back to defaults.", exc)
        return copy.deepcopy(default)
    if document is None:
        return copy.deepcopy(default)
    return document
