from __future__ import annotations

import contextlib
import dataclasses
import logging
import threading
from typing import Iterator, Optional
from uuid import uuid4

from .credentials import (
    CredentialRecord,
    CredentialStore,
    SessionRecord,
    hash_password,
    is_legacy_hash,
    normalize_email,
    verify_password,
)
from .errors import EmailAlreadyInUse, InvalidCredentials, InvalidSignup
from .session import SessionState

logger = logging.getLogger("farmsearch.auth")


class AuthService:
    """
    Login, signup and logout on top of the credential store and session state.

    Each operation runs inside one re-entrant lock, so a read of the credential
    list and the write that follows it cannot interleave with another call.
    `is_loading` mirrors the in-flight state for clients that want to disable
    duplicate submissions; it is informational only.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        session: SessionState,
        *,
        bcrypt_rounds: int = 12,
        min_password_length: int = 8,
        min_name_length: int = 3,
    ) -> None:
        self.credentials = credentials
        self.session = session
        self.bcrypt_rounds = bcrypt_rounds
        self.min_password_length = min_password_length
        self.min_name_length = min_name_length
        self._lock = threading.RLock()
        self._loading = False
        # Compared against when no stored record ran bcrypt for the email.
        self._decoy_hash = hash_password(uuid4().hex, bcrypt_rounds)

    @property
    def current_user(self) -> Optional[SessionRecord]:
        return self.session.current

    @property
    def is_authenticated(self) -> bool:
        return self.session.current is not None

    @property
    def is_loading(self) -> bool:
        return self._loading

    @contextlib.contextmanager
    def _in_flight(self) -> Iterator[None]:
        with self._lock:
            self._loading = True
            try:
                yield
            finally:
                self._loading = False

    def login(self, email: str, password: str) -> SessionRecord:
        with self._in_flight():
            password = password or ""
            matched: Optional[CredentialRecord] = None
            ran_bcrypt = False
            for record in self.credentials.find_by_email(email):
                ran_bcrypt = ran_bcrypt or not is_legacy_hash(record.password_hash)
                if verify_password(password, record.password_hash):
                    matched = record
                    break
            if matched is None:
                if not ran_bcrypt:
                    # Unknown emails pay the same bcrypt cost as wrong passwords.
                    verify_password(password, self._decoy_hash)
                logger.info("Rejected login attempt.")
                raise InvalidCredentials()
            if is_legacy_hash(matched.password_hash):
                matched = dataclasses.replace(
                    matched, password_hash=hash_password(password, self.bcrypt_rounds)
                )
                self.credentials.replace(matched)
                logger.info("Upgraded legacy password hash for %s", matched.id)
            session = matched.redacted()
            self.session.install(session)
            logger.info("User %s logged in.", session.id)
            return session

    def signup(
        self,
        name: str,
        email: str,
        password: str,
        confirm_password: Optional[str] = None,
    ) -> SessionRecord:
        with self._in_flight():
            display_name = (name or "").strip()
            normalized = normalize_email(email)
            password = password or ""
            self._validate_signup(display_name, normalized, password, confirm_password)
            if self.credentials.email_in_use(normalized):
                logger.info("Rejected signup for an email already in use.")
                raise EmailAlreadyInUse()
            record = CredentialRecord(
                id=self._mint_identity(),
                name=display_name,
                email=normalized,
                password_hash=hash_password(password, self.bcrypt_rounds),
            )
            self.credentials.append(record)
            session = record.redacted()
            self.session.install(session)
            logger.info("Created account %s.", record.id)
            return session

    def logout(self) -> None:
        with self._lock:
            previous = self.session.identity
            self.session.clear()
            if previous:
                logger.info("User %s logged out.", previous)

    def _validate_signup(
        self,
        name: str,
        email: str,
        password: str,
        confirm_password: Optional[str],
    ) -> None:
        if len(name) < self.min_name_length:
            raise InvalidSignup(f"Use at least {self.min_name_length} characters for your name.")
        if not email or "@" not in email:
            raise InvalidSignup("Enter a valid email address.")
        if confirm_password is not None and confirm_password != password:
            raise InvalidSignup("Passwords do not match.")
        if len(password) < self.min_password_length:
            raise InvalidSignup(
                f"Use at least {self.min_password_length} characters for your password."
            )

    def _mint_identity(self) -> str:
        taken = self.credentials.identities()
        while True:
            candidate = f"user-{uuid4().hex}"
            if candidate not in taken:
                return candidate
