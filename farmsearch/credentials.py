from __future__ import annotations

import base64
import copy
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

import bcrypt

from .errors import HashingUnavailable
from .storage import KeyValueStore, load_document

logger = logging.getLogger("farmsearch.auth")

LEGACY_HASH_PATTERN = re.compile(r"[0-9a-f]{64}")


def normalize_email(value: str) -> str:
    return (value or "").strip().lower()


@dataclass(frozen=True)
class SessionRecord:
    id: str
    name: str
    email: str

    def to_document(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name, "email": self.email}

    @classmethod
    def from_document(cls, document: Any) -> Optional["SessionRecord"]:
        if not isinstance(document, dict):
            return None
        fields = [document.get(key) for key in ("id", "name", "email")]
        if not all(isinstance(value, str) and value for value in fields):
            return None
        return cls(*fields)


@dataclass(frozen=True)
class CredentialRecord:
    id: str
    name: str
    email: str
    password_hash: str

    @property
    def normalized_email(self) -> str:
        return normalize_email(self.email)

    def redacted(self) -> SessionRecord:
        return SessionRecord(id=self.id, name=self.name, email=self.email)

    def to_document(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "passwordHash": self.password_hash,
        }

    @classmethod
    def from_document(cls, document: Any) -> Optional["CredentialRecord"]:
        if not isinstance(document, dict):
            return None
        values = [document.get(key) for key in ("id", "name", "email", "passwordHash")]
        if not all(isinstance(value, str) and value for value in values):
            return None
        return cls(*values)


def _prehash(password: str) -> bytes:
    # bcrypt only reads the first 72 bytes; a fixed-size digest keeps the whole password significant.
    digest = hashlib.sha256(password.encode("utf-8")).digest()
    return base64.b64encode(digest)


def hash_password(password: str, rounds: int = 12) -> str:
    try:
        hashed = bcrypt.hashpw(_prehash(password), bcrypt.gensalt(rounds=rounds))
    except (ValueError, TypeError) as exc:
        raise HashingUnavailable() from exc
    return hashed.decode("ascii")


def legacy_hash(password: str) -> str:
    """Unsalted SHA-256 hex digest used by accounts created before bcrypt."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def is_legacy_hash(stored: str) -> bool:
    return bool(LEGACY_HASH_PATTERN.fullmatch(stored))


def verify_password(password: str, stored: str) -> bool:
    if is_legacy_hash(stored):
        return hmac.compare_digest(legacy_hash(password), stored)
    if not stored.startswith("$2"):
        return False
    try:
        return bcrypt.checkpw(_prehash(password), stored.encode("ascii"))
    except ValueError:
        logger.warning("Ignoring malformed bcrypt hash in credential store.")
        return False


class CredentialStore:
    """
    Ordered list of credential records persisted as one JSON document.

    The list is read once at construction and written through on every change.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        default_users: Iterable[Dict[str, Any]],
    ) -> None:
        self.store = store
        self.key = key
        self.default_users = copy.deepcopy(list(default_users))
        self._records: List[CredentialRecord] = self._load()

    def _load(self) -> List[CredentialRecord]:
        document = load_document(self.store, self.key, self.default_users)
        if not isinstance(document, list):
            logger.warning("Credential document '%s' is not a list; using default users.", self.key)
            document = copy.deepcopy(self.default_users)
        records: List[CredentialRecord] = []
        for index, item in enumerate(document):
            record = CredentialRecord.from_document(item)
            if record is None:
                logger.warning("Skipping malformed credential entry at position %d.", index)
                continue
            records.append(record)
        return records

    @property
    def records(self) -> List[CredentialRecord]:
        return list(self._records)

    def identities(self) -> Set[str]:
        return {record.id for record in self._records}

    def find_by_email(self, email: str) -> List[CredentialRecord]:
        normalized = normalize_email(email)
        return [record for record in self._records if record.normalized_email == normalized]

    def email_in_use(self, email: str) -> bool:
        return bool(self.find_by_email(email))

    def append(self, record: CredentialRecord) -> None:
        self._records.append(record)
        self._persist()

    def replace(self, record: CredentialRecord) -> None:
        self._records = [record if item.id == record.id else item for item in self._records]
        self._persist()

    def _persist(self) -> None:
        self.store.put(self.key, [record.to_document() for record in self._records])
