# ============================================================================
# src/fhir_validation/storage/sqlite_store.py
# ============================================================================
"""
SQLite Storage

Local persistence for resources, validation results, settings records
and business rules.

- One connection per call, JSON payloads in TEXT columns
- Blocking sqlite3 calls run in the default executor
- Settings activation runs in a single transaction
"""

import asyncio
import json
import logging
import sqlite3
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config.base_config import base_settings
from ..core.models import ValidationResult
from ..utils.exceptions import StorageError
from .base import ValidationStorage


class SQLiteStorage(ValidationStorage):
    """
    SQLite-backed ValidationStorage.

    Tables:
    - resources: latest copy of each resource by type/id
    - validation_results: append-only result log
    - validation_settings: settings records with an is_active flag
    - business_rules / rule_versions: custom rules and their history
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or base_settings.DATABASE_PATH)
        self.logger = logging.getLogger(__name__)

        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self):
        """Create schema if not exists"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS resources (
                resource_type TEXT NOT NULL,
                resource_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (resource_type, resource_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS validation_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                resource_type TEXT NOT NULL,
                resource_id TEXT NOT NULL,
                validated_at TEXT NOT NULL,
                is_valid BOOLEAN,
                validation_score REAL,
                resource_hash TEXT,
                payload TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS validation_settings (
                id TEXT PRIMARY KEY,
                is_active BOOLEAN NOT NULL DEFAULT 0,
                updated_at TEXT,
                payload TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS business_rules (
                id TEXT PRIMARY KEY,
                deleted_at TEXT,
                payload TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS rule_versions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                payload TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_results_resource
            ON validation_results (resource_type, resource_id, validated_at)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_settings_active
            ON validation_settings (is_active)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_rule_versions_rule
            ON rule_versions (rule_id)
        """)

        conn.commit()
        conn.close()

        self.logger.info(f"Validation database initialized: {self.db_path}")

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args))
        except sqlite3.Error as e:
            raise StorageError(f"SQLite operation {func.__name__} failed: {e}") from e

    # ------------------------------------------------------------------
    # Synchronous helpers
    # ------------------------------------------------------------------

    def _fetch_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute(query, params).fetchone()
            return json.loads(row["payload"]) if row else None
        finally:
            conn.close()

    def _fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            return [json.loads(row["payload"]) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def _execute(self, query: str, params: tuple) -> int:
        conn = self._connect()
        try:
            with conn:
                cursor = conn.execute(query, params)
                return cursor.rowcount
        finally:
            conn.close()

    def _activate(self, settings_id: str) -> None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT payload FROM validation_settings WHERE id = ?", (settings_id,)
            ).fetchone()
            if row is None:
                raise StorageError(f"Settings {settings_id} does not exist")

            with conn:
                # Payload mirrors the flag so records round-trip intact
                for other in conn.execute(
                    "SELECT id, payload FROM validation_settings WHERE is_active = 1 AND id != ?",
                    (settings_id,)
                ).fetchall():
                    payload = json.loads(other["payload"])
                    payload["is_active"] = False
                    conn.execute(
                        "UPDATE validation_settings SET is_active = 0, payload = ? WHERE id = ?",
                        (json.dumps(payload), other["id"])
                    )

                payload = json.loads(row["payload"])
                payload["is_active"] = True
                conn.execute(
                    "UPDATE validation_settings SET is_active = 1, payload = ? WHERE id = ?",
                    (json.dumps(payload), settings_id)
                )
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def get_resource(self, resource_type, resource_id):
        return await self._run(
            self._fetch_one,
            "SELECT payload FROM resources WHERE resource_type = ? AND resource_id = ?",
            (resource_type, resource_id)
        )

    async def put_resource(self, resource):
        await self._run(
            self._execute,
            "INSERT OR REPLACE INTO resources (resource_type, resource_id, payload) VALUES (?, ?, ?)",
            (resource.get("resourceType"), resource.get("id"), json.dumps(resource))
        )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def save_result(self, result):
        if result.resource_key is None:
            raise StorageError("Cannot store a result without resource type and id")
        await self._run(
            self._execute,
            """
            INSERT INTO validation_results (
                resource_type, resource_id, validated_at, is_valid,
                validation_score, resource_hash, payload
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.resource_type,
                result.resource_id,
                result.validated_at.isoformat(),
                result.is_valid,
                result.validation_score,
                result.resource_hash,
                json.dumps(result.to_dict()),
            )
        )

    async def get_latest_result(self, resource_type, resource_id):
        payload = await self._run(
            self._fetch_one,
            """
            SELECT payload FROM validation_results
            WHERE resource_type = ? AND resource_id = ?
            ORDER BY validated_at DESC, id DESC LIMIT 1
            """,
            (resource_type, resource_id)
        )
        return ValidationResult.from_dict(payload) if payload else None

    async def get_results(self, resource_type, resource_id):
        payloads = await self._run(
            self._fetch_all,
            """
            SELECT payload FROM validation_results
            WHERE resource_type = ? AND resource_id = ?
            ORDER BY validated_at, id
            """,
            (resource_type, resource_id)
        )
        return [ValidationResult.from_dict(p) for p in payloads]

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_settings(self, settings_id):
        return await self._run(
            self._fetch_one,
            "SELECT payload FROM validation_settings WHERE id = ?",
            (settings_id,)
        )

    async def get_active_settings(self):
        return await self._run(
            self._fetch_one,
            "SELECT payload FROM validation_settings WHERE is_active = 1 LIMIT 1",
            ()
        )

    async def list_settings(self, limit=None):
        if limit:
            return await self._run(
                self._fetch_all,
                "SELECT payload FROM validation_settings LIMIT ?",
                (limit,)
            )
        return await self._run(self._fetch_all, "SELECT payload FROM validation_settings")

    async def list_recent_settings(self, limit=5):
        return await self._run(
            self._fetch_all,
            "SELECT payload FROM validation_settings ORDER BY updated_at DESC LIMIT ?",
            (limit,)
        )

    async def insert_settings(self, record):
        await self._run(
            self._execute,
            "INSERT INTO validation_settings (id, is_active, updated_at, payload) VALUES (?, ?, ?, ?)",
            (record["id"], bool(record.get("is_active")), record.get("updated_at"), json.dumps(record))
        )

    async def update_settings(self, record):
        updated = await self._run(
            self._execute,
            "UPDATE validation_settings SET is_active = ?, updated_at = ?, payload = ? WHERE id = ?",
            (bool(record.get("is_active")), record.get("updated_at"), json.dumps(record), record["id"])
        )
        if not updated:
            raise StorageError(f"Settings {record['id']} does not exist")

    async def delete_settings(self, settings_id):
        deleted = await self._run(
            self._execute,
            "DELETE FROM validation_settings WHERE id = ?",
            (settings_id,)
        )
        return deleted > 0

    async def activate_settings(self, settings_id):
        await self._run(self._activate, settings_id)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def get_rule(self, rule_id):
        return await self._run(
            self._fetch_one,
            "SELECT payload FROM business_rules WHERE id = ?",
            (rule_id,)
        )

    async def list_rules(self, include_deleted=False):
        if include_deleted:
            return await self._run(self._fetch_all, "SELECT payload FROM business_rules")
        return await self._run(
            self._fetch_all,
            "SELECT payload FROM business_rules WHERE deleted_at IS NULL"
        )

    async def insert_rule(self, record):
        await self._run(
            self._execute,
            "INSERT INTO business_rules (id, deleted_at, payload) VALUES (?, ?, ?)",
            (record["id"], record.get("deleted_at"), json.dumps(record))
        )

    async def update_rule(self, record):
        updated = await self._run(
            self._execute,
            "UPDATE business_rules SET deleted_at = ?, payload = ? WHERE id = ?",
            (record.get("deleted_at"), json.dumps(record), record["id"])
        )
        if not updated:
            raise StorageError(f"Rule {record['id']} does not exist")

    async def append_rule_version(self, record):
        await self._run(
            self._execute,
            "INSERT INTO rule_versions (id, rule_id, payload) VALUES (?, ?, ?)",
            (record["id"], record["rule_id"], json.dumps(record))
        )

    async def list_rule_versions(self, rule_id):
        return await self._run(
            self._fetch_all,
            "SELECT payload FROM rule_versions WHERE rule_id = ? ORDER BY seq DESC",
            (rule_id,)
        )
