"""Credential stores for the gateway session.

The lifecycle manager only needs get/put/delete keyed by session id.
What the blob contains is the transport's business; stores treat it as
an opaque JSON-serializable dict.

Backends:
- FileCredentialStore: one JSON file per session (<dir>/<session>.json)
- SQLiteCredentialStore: one row per session in a local database
- MemoryCredentialStore: process-local dict (tests, ephemeral hosts)

Writes never leave a half-written record behind: the file backend
writes a temp file and renames it over the old one, the SQLite backend
upserts inside a transaction.
"""

import asyncio
import json
import logging
import os
import re
import sqlite3
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from wabridge.config import StoreConfig
from wabridge.errors import PersistenceError

logger = logging.getLogger(__name__)

Credentials = dict[str, Any]

_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")


def _check_session_id(session_id: str) -> str:
    if not session_id or not _SAFE_ID.match(session_id) or session_id in (".", ".."):
        raise PersistenceError(f"Invalid session id: {session_id!r}")
    return session_id


class CredentialStore(ABC):
    """Persists opaque authentication state per session id."""

    @abstractmethod
    async def load(self, session_id: str) -> Credentials | None:
        """Return the stored blob, or None if there is no record."""
        ...

    @abstractmethod
    async def save(self, session_id: str, blob: Credentials) -> None:
        """Upsert the blob. Last write wins."""
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        """Remove the record. Deleting a missing record is not an error."""
        ...


# ── File Backend ───────────────────────────────────────

class FileCredentialStore(CredentialStore):
    """Stores each session as <directory>/<session_id>.json (mode 0600)."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory).expanduser()

    def path_for(self, session_id: str) -> Path:
        return self.directory / f"{_check_session_id(session_id)}.json"

    async def load(self, session_id: str) -> Credentials | None:
        return await asyncio.to_thread(self._load, self.path_for(session_id))

    async def save(self, session_id: str, blob: Credentials) -> None:
        await asyncio.to_thread(self._save, self.path_for(session_id), blob)

    async def delete(self, session_id: str) -> None:
        await asyncio.to_thread(self._delete, self.path_for(session_id))

    @staticmethod
    def _load(path: Path) -> Credentials | None:
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"{path} does not contain a credential record")
        return data

    def _save(self, path: Path, blob: Credentials) -> None:
        try:
            payload = json.dumps(blob, indent=2)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Credentials are not serializable: {e}") from e

        tmp_name = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.directory, prefix=f".{path.stem}.", suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    @staticmethod
    def _delete(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to delete {path}: {e}") from e


# ── SQLite Backend ─────────────────────────────────────

class SQLiteCredentialStore(CredentialStore):
    """Stores sessions as rows in a local SQLite database."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser()
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        if not self._initialized:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        if not self._initialized:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS credentials (
                    session_id TEXT PRIMARY KEY,
                    blob TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.commit()
            self._initialized = True
        return conn

    async def load(self, session_id: str) -> Credentials | None:
        return await asyncio.to_thread(self._load, _check_session_id(session_id))

    async def save(self, session_id: str, blob: Credentials) -> None:
        await asyncio.to_thread(self._save, _check_session_id(session_id), blob)

    async def delete(self, session_id: str) -> None:
        await asyncio.to_thread(self._delete, _check_session_id(session_id))

    def _load(self, session_id: str) -> Credentials | None:
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT blob FROM credentials WHERE session_id = ?",
                    (session_id,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read credentials: {e}") from e
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt credential record: {e}") from e

    def _save(self, session_id: str, blob: Credentials) -> None:
        try:
            payload = json.dumps(blob)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Credentials are not serializable: {e}") from e
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO credentials (session_id, blob, updated_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(session_id) DO UPDATE SET
                            blob = excluded.blob,
                            updated_at = excluded.updated_at
                        """,
                        (session_id, payload, time.time()),
                    )
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to write credentials: {e}") from e

    def _delete(self, session_id: str) -> None:
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute(
                        "DELETE FROM credentials WHERE session_id = ?", (session_id,))
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to delete credentials: {e}") from e


# ── Memory Backend ─────────────────────────────────────

class MemoryCredentialStore(CredentialStore):
    """Keeps credentials in process memory. Lost on restart."""

    def __init__(self, initial: dict[str, Credentials] | None = None):
        self._records: dict[str, str] = {
            k: json.dumps(v) for k, v in (initial or {}).items()
        }

    async def load(self, session_id: str) -> Credentials | None:
        raw = self._records.get(session_id)
        return json.loads(raw) if raw is not None else None

    async def save(self, session_id: str, blob: Credentials) -> None:
        try:
            self._records[session_id] = json.dumps(blob)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Credentials are not serializable: {e}") from e

    async def delete(self, session_id: str) -> None:
        self._records.pop(session_id, None)


def create_credential_store(config: StoreConfig) -> CredentialStore:
    """Build the store selected by configuration."""
    if config.backend == "memory":
        logger.warning("Using in-memory credential store; pairing is lost on restart")
        return MemoryCredentialStore()
    if config.backend == "sqlite":
        return SQLiteCredentialStore(config.resolved_path())
    return FileCredentialStore(config.resolved_path())
