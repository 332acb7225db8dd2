"""Durable session record: login credentials plus the last acknowledged sync cursor."""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError

from typit.errors import SessionStoreError


class Credentials(BaseModel):
    """Access token and device of one logged-in bot account."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    device_id: str
    access_token: str


class Session(BaseModel):
    """Full session to persist."""

    credentials: Credentials
    # The latest sync token.
    cursor: str | None = None


class SessionStore:
    """Single JSON record, read fully and rewritten fully.

    Only the sync engine writes to the store; concurrent writers are not supported.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Session | None:
        """Return the stored session, or ``None`` when no record exists yet."""
        if not self.path.exists():
            return None
        return self._read()

    def create(self, credentials: Credentials) -> Session:
        """Write a fresh record after the first successful login."""
        session = Session(credentials=credentials)
        self._write(session)
        logger.info("session.created path={} user_id={}", self.path, credentials.user_id)
        return session

    def persist_cursor(self, cursor: str) -> None:
        """Replace the stored cursor, leaving the credentials untouched."""
        session = self._read()
        session.cursor = cursor
        self._write(session)

    def _read(self) -> Session:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SessionStoreError(f"cannot read session record {self.path}: {exc}") from exc
        try:
            return Session.model_validate_json(raw)
        except ValidationError as exc:
            raise SessionStoreError(f"corrupted session record {self.path}: {exc}") from exc

    def _write(self, session: Session) -> None:
        serialized = session.model_dump_json(exclude_none=True)
        temp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(serialized, encoding="utf-8")
            temp_path.replace(self.path)
        except OSError as exc:
            raise SessionStoreError(f"cannot write session record {self.path}: {exc}") from exc
