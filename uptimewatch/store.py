"""Persistence layer: storage backends and the last-status/history store."""

import json
import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .config import DEFAULT_HISTORY_CAP, ConfigError
from .models import CheckResult, ValidationError

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a storage read or write fails."""

    pass


STATUS_NAMESPACE = "status"
METRICS_NAMESPACE = "metrics"
HISTORY_LOG = "history"

# Largest page a history query may return.
MAX_HISTORY_LIMIT = 1000


class StorageBackend(ABC):
    """Key-value storage with namespaced maps and capped append-only logs.

    Implementations must be safe to call from several threads and must
    raise PersistenceError for any underlying storage failure.
    """

    @abstractmethod
    def get(self, namespace: str, key: str) -> dict | None:
        raise NotImplementedError

    @abstractmethod
    def put(self, namespace: str, key: str, value: dict) -> None:
        raise NotImplementedError

    @abstractmethod
    def scan(self, namespace: str) -> dict[str, dict]:
        raise NotImplementedError

    @abstractmethod
    def append(self, log: str, entry: dict, cap: int) -> None:
        """Append an entry, then evict the oldest until at most cap remain."""
        raise NotImplementedError

    @abstractmethod
    def read_log(self, log: str) -> list[dict]:
        """Return all entries of a log, oldest first."""
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


# =============================================================================
# JSON FILE BACKEND
# =============================================================================
# One JSON document per namespace/log, rewritten in full on every mutation.
# Documents are written to a temp file and renamed into place.


class JsonFileBackend(StorageBackend):
    """Stores each namespace as a JSON map and each log as a JSON array."""

    def __init__(self, directory: str) -> None:
        self._dir = Path(directory)
        self._lock = threading.Lock()

    def _path(self, name: str) -> Path:
        return self._dir / f"{name}.json"

    def _load(self, name: str, default: Any) -> Any:
        path = self._path(name)
        try:
            if not path.exists():
                return default
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to load {path}: {e}") from e

    def _save(self, name: str, data: Any) -> None:
        path = self._path(name)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self._dir, prefix=f".{name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to save {path}: {e}") from e

    def _load_map(self, namespace: str) -> dict:
        data = self._load(namespace, {})
        if not isinstance(data, dict):
            raise PersistenceError(f"{self._path(namespace)} does not contain a JSON object")
        return data

    def _load_list(self, log: str) -> list:
        data = self._load(log, [])
        if not isinstance(data, list):
            raise PersistenceError(f"{self._path(log)} does not contain a JSON array")
        return data

    def get(self, namespace: str, key: str) -> dict | None:
        with self._lock:
            return self._load_map(namespace).get(key)

    def put(self, namespace: str, key: str, value: dict) -> None:
        with self._lock:
            data = self._load_map(namespace)
            data[key] = value
            self._save(namespace, data)

    def scan(self, namespace: str) -> dict[str, dict]:
        with self._lock:
            return self._load_map(namespace)

    def append(self, log: str, entry: dict, cap: int) -> None:
        with self._lock:
            entries = self._load_list(log)
            entries.append(entry)
            if len(entries) > cap:
                entries = entries[-cap:]
            self._save(log, entries)

    def read_log(self, log: str) -> list[dict]:
        with self._lock:
            return self._load_list(log)

    def clear(self) -> None:
        with self._lock:
            for name in (STATUS_NAMESPACE, METRICS_NAMESPACE):
                self._save(name, {})
            self._save(HISTORY_LOG, [])


# =============================================================================
# SQLITE BACKEND
# =============================================================================


class SqliteBackend(StorageBackend):
    """Transactional backend on an embedded SQLite database.

    The history cap is enforced in the same transaction as the insert,
    so the log never exceeds its cap even across a crash.
    """

    def __init__(self, db_path: str, timeout: float = 5.0) -> None:
        """Open (and create if needed) the database.

        Args:
            db_path: Path to the SQLite database file.
            timeout: Seconds to wait for a database lock before failing.

        Raises:
            PersistenceError: If the database cannot be opened or initialized.
        """
        self._lock = threading.Lock()
        try:
            parent_dir = Path(db_path).parent
            if not parent_dir.exists():
                parent_dir.mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS log_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    log TEXT NOT NULL,
                    value TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_log_entries_log
                ON log_entries(log, id)
            """)
            self._conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to initialize database: {e}") from e
        except OSError as e:
            raise PersistenceError(f"Failed to create database directory: {e}") from e

    def get(self, namespace: str, key: str) -> dict | None:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value FROM kv WHERE namespace = ? AND key = ?",
                    (namespace, key),
                ).fetchone()
            return json.loads(row["value"]) if row else None
        except (sqlite3.Error, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {namespace}/{key}: {e}") from e

    def put(self, namespace: str, key: str, value: dict) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO kv (namespace, key, value) VALUES (?, ?, ?)",
                    (namespace, key, json.dumps(value)),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {namespace}/{key}: {e}") from e

    def scan(self, namespace: str) -> dict[str, dict]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT key, value FROM kv WHERE namespace = ? ORDER BY key",
                    (namespace,),
                ).fetchall()
            return {row["key"]: json.loads(row["value"]) for row in rows}
        except (sqlite3.Error, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to scan {namespace}: {e}") from e

    def append(self, log: str, entry: dict, cap: int) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO log_entries (log, value) VALUES (?, ?)",
                    (log, json.dumps(entry)),
                )
                self._conn.execute(
                    """
                    DELETE FROM log_entries
                    WHERE log = ? AND id NOT IN (
                        SELECT id FROM log_entries WHERE log = ? ORDER BY id DESC LIMIT ?
                    )
                    """,
                    (log, log, cap),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to append to {log}: {e}") from e

    def read_log(self, log: str) -> list[dict]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT value FROM log_entries WHERE log = ? ORDER BY id",
                    (log,),
                ).fetchall()
            return [json.loads(row["value"]) for row in rows]
        except (sqlite3.Error, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {log}: {e}") from e

    def clear(self) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute("DELETE FROM kv")
                self._conn.execute("DELETE FROM log_entries")
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to clear database: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def open_backend(kind: str, path: str, timeout: float = 5.0) -> StorageBackend:
    """Create the configured storage backend.

    Raises:
        ConfigError: If the backend kind is unknown.
        PersistenceError: If the backend cannot be opened.
    """
    if kind == "json":
        return JsonFileBackend(path)
    if kind == "sqlite":
        return SqliteBackend(path, timeout=timeout)
    raise ConfigError(f"Unknown storage backend: {kind}")


class StatusStore:
    """Last known status per site plus the global bounded history log.

    There is no atomicity across the status map and the history log: a
    crash between set_last() and append() leaves them out of step until
    the next accepted check.
    """

    def __init__(self, backend: StorageBackend, history_cap: int = DEFAULT_HISTORY_CAP) -> None:
        if isinstance(history_cap, bool) or not isinstance(history_cap, int) or history_cap < 1:
            raise ConfigError(f"History cap must be a positive integer (got {history_cap!r})")
        self._backend = backend
        self._history_cap = history_cap

    @property
    def history_cap(self) -> int:
        return self._history_cap

    def get_last(self, url: str) -> CheckResult | None:
        """Return the stored record for url, or None if never checked.

        Raises:
            PersistenceError: If the status map cannot be read.
            ValidationError: If the stored record is corrupt.
        """
        data = self._backend.get(STATUS_NAMESPACE, url)
        return CheckResult.from_dict(data) if data is not None else None

    def set_last(self, url: str, result: CheckResult) -> None:
        """Overwrite the single stored record for url."""
        self._backend.put(STATUS_NAMESPACE, url, result.to_dict())

    def snapshot_all(self) -> dict[str, CheckResult]:
        """Return a fresh copy of all current records keyed by URL.

        Records that fail validation are logged and left out.
        """
        records: dict[str, CheckResult] = {}
        for url, data in self._backend.scan(STATUS_NAMESPACE).items():
            try:
                records[url] = CheckResult.from_dict(data)
            except ValidationError as e:
                logger.error("Skipping corrupt status record for %s: %s", url, e)
        return records

    def append(self, result: CheckResult) -> None:
        """Append to the global history log, evicting the oldest entries past the cap."""
        self._backend.append(HISTORY_LOG, result.to_dict(), self._history_cap)

    def query_history(self, url: str | None, limit: int) -> list[CheckResult]:
        """Return up to limit entries for url, most recent first.

        Args:
            url: Site to filter by, or None for every site.
            limit: Maximum number of entries to return.
        """
        if limit < 1:
            return []
        entries = self._backend.read_log(HISTORY_LOG)
        if url is not None:
            entries = [e for e in entries if e.get("url") == url]
        return [CheckResult.from_dict(e) for e in reversed(entries[-limit:])]

    def clear_all(self) -> None:
        """Reset the status map, the metrics map and the history log."""
        self._backend.clear()
        logger.info("Cleared all stored status, metrics and history")
