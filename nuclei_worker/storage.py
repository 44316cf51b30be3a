from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from nuclei_worker.models import utc_now_iso

LOGGER = logging.getLogger(__name__)


class StorageError(RuntimeError):
    pass


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS http_services (
    domain TEXT NOT NULL,
    port INTEGER NOT NULL,
    protocol TEXT NOT NULL,
    fields_json TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT NOT NULL,
    PRIMARY KEY (domain, port, protocol)
);

CREATE INDEX IF NOT EXISTS idx_http_services_updated_at ON http_services(updated_at);
"""


def connect(db_path: str) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    try:
        with connect(db_path) as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()
    except sqlite3.Error as exc:
        raise StorageError(f"unable to initialize {db_path}: {exc}") from exc
    LOGGER.info("SQLite initialized at %s", db_path)


class DatalakeStorage:
    """Service records keyed by (domain, port, protocol), one JSON field bag each."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def init(self) -> None:
        init_db(self.db_path)

    def ping(self) -> bool:
        try:
            with connect(self.db_path) as conn:
                conn.execute("SELECT 1 FROM http_services LIMIT 1")
            return True
        except sqlite3.Error:
            return False

    def upsert_http_service_field(self, domain: str, port: int, protocol: str, field_name: str, value: Any) -> None:
        try:
            with connect(self.db_path) as conn:
                # take the write lock before reading so concurrent upserts on one key do not lose fields
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT fields_json FROM http_services WHERE domain = ? AND port = ? AND protocol = ?",
                    (domain, port, protocol),
                ).fetchone()
                fields = json.loads(row["fields_json"]) if row else {}
                fields[field_name] = value
                conn.execute(
                    """
                    INSERT INTO http_services (domain, port, protocol, fields_json, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (domain, port, protocol)
                    DO UPDATE SET fields_json = excluded.fields_json, updated_at = excluded.updated_at
                    """,
                    (domain, port, protocol, json.dumps(fields, ensure_ascii=False), utc_now_iso()),
                )
                conn.commit()
        except (sqlite3.Error, TypeError, ValueError) as exc:
            raise StorageError(f"upsert of {field_name} for {protocol}://{domain}:{port} failed: {exc}") from exc
        LOGGER.info("Stored %s for %s://%s:%s", field_name, protocol, domain, port)

    def get_http_service_fields(self, domain: str, port: int, protocol: str) -> dict[str, Any] | None:
        try:
            with connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT fields_json FROM http_services WHERE domain = ? AND port = ? AND protocol = ?",
                    (domain, port, protocol),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"read of {protocol}://{domain}:{port} failed: {exc}") from exc
        return json.loads(row["fields_json"]) if row else None
