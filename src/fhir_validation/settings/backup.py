# ============================================================================
# src/fhir_validation/settings/backup.py
# ============================================================================
"""
Settings Backup Service

Full backups of every stored settings record:
- one gzip-compressed JSON file per backup: <backup_id>.json.gz
- sha256 checksum of the uncompressed JSON, kept in index.json
- restore re-inserts records (skip or overwrite existing ones) and
  re-activates the record that was active at backup time
- cleanup keeps the newest N backups and drops anything past retention
"""

import asyncio
import gzip
import hashlib
import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config.base_config import base_settings
from ..config.settings_service_config import settings_service_settings
from ..storage.base import ValidationStorage
from ..utils.exceptions import BackupError, BackupIntegrityError, BackupNotFoundError

INDEX_FILE = "index.json"


@dataclass
class BackupMetadata:
    backup_id: str
    created_at: str
    filename: str
    checksum: str
    size_bytes: int
    settings_count: int
    active_settings_id: Optional[str] = None
    description: str = ""
    created_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupMetadata":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})

    @property
    def created(self) -> datetime:
        return datetime.fromisoformat(self.created_at)


class SettingsBackupService:

    def __init__(
        self,
        storage: ValidationStorage,
        backup_dir: Optional[Path] = None,
        max_backups: Optional[int] = None,
        retention_days: Optional[int] = None,
    ):
        self.storage = storage
        self.backup_dir = Path(backup_dir or base_settings.BACKUP_DIR)
        self.max_backups = max_backups or settings_service_settings.BACKUP_MAX_COUNT
        self.retention_days = retention_days or settings_service_settings.BACKUP_RETENTION_DAYS
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_backup(self, description: str = "", created_by: Optional[str] = None) -> BackupMetadata:
        records = await self.storage.list_settings()
        active = next((r["id"] for r in records if r.get("is_active")), None)

        backup_id = f"backup-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"
        payload = {
            "backup_id": backup_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "settings": records,
        }
        raw = json.dumps(payload, sort_keys=True).encode("utf-8")

        metadata = BackupMetadata(
            backup_id=backup_id,
            created_at=payload["created_at"],
            filename=f"{backup_id}.json.gz",
            checksum=hashlib.sha256(raw).hexdigest(),
            size_bytes=len(raw),
            settings_count=len(records),
            active_settings_id=active,
            description=description,
            created_by=created_by,
        )

        try:
            await self._run(self._write_backup, metadata, raw)
        except OSError as e:
            raise BackupError(f"Could not write backup {backup_id}: {e}") from e

        self.logger.info(f"Created settings backup {backup_id} ({len(records)} record(s))")
        return metadata

    async def list_backups(self) -> List[BackupMetadata]:
        """Newest first."""
        index = await self._run(self._read_index)
        backups = [BackupMetadata.from_dict(entry) for entry in index]
        return sorted(backups, key=lambda b: b.created_at, reverse=True)

    async def verify_backup(self, backup_id: str) -> bool:
        metadata = await self._get_metadata(backup_id)
        try:
            raw = await self._run(self._read_raw, metadata.filename)
        except (OSError, EOFError) as e:
            self.logger.warning(f"Backup {backup_id} unreadable: {e}")
            return False
        return hashlib.sha256(raw).hexdigest() == metadata.checksum

    async def restore_backup(self, backup_id: str, overwrite: bool = False) -> Dict[str, Any]:
        """
        Restore every record of a backup.

        Returns:
            {"restored": [...ids], "skipped": [...ids], "active_settings_id": str | None}
        """
        metadata = await self._get_metadata(backup_id)
        if not await self.verify_backup(backup_id):
            raise BackupIntegrityError(f"Backup {backup_id} failed checksum verification")

        raw = await self._run(self._read_raw, metadata.filename)
        records = json.loads(raw.decode("utf-8"))["settings"]

        restored, skipped = [], []
        for record in records:
            record = dict(record, is_active=False)
            existing = await self.storage.get_settings(record["id"])
            if existing is None:
                await self.storage.insert_settings(record)
                restored.append(record["id"])
            elif overwrite:
                await self.storage.update_settings(record)
                restored.append(record["id"])
            else:
                skipped.append(record["id"])

        active_id = metadata.active_settings_id
        if active_id is None and records and await self.storage.get_active_settings() is None:
            newest = max(records, key=lambda r: (r.get("version") or 0, str(r.get("updated_at") or "")))
            active_id = newest["id"]
            self.logger.warning(f"Backup {backup_id} records no active settings; activating {active_id}")

        if active_id:
            await self.storage.activate_settings(active_id)

        self.logger.info(
            f"Restored backup {backup_id}: {len(restored)} restored, {len(skipped)} skipped"
        )
        return {
            "restored": restored,
            "skipped": skipped,
            "active_settings_id": active_id,
        }

    async def delete_backup(self, backup_id: str) -> bool:
        return await self._run(self._delete_backup, backup_id)

    async def cleanup_old_backups(self) -> int:
        """Keep the newest max_backups within retention; returns the number removed."""
        backups = await self.list_backups()
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.retention_days)

        doomed = [
            backup for index, backup in enumerate(backups)
            if index >= self.max_backups or backup.created < cutoff
        ]
        for backup in doomed:
            await self.delete_backup(backup.backup_id)

        if doomed:
            self.logger.info(f"Removed {len(doomed)} old settings backup(s)")
        return len(doomed)

    # ------------------------------------------------------------------
    # File helpers (run in the default executor)
    # ------------------------------------------------------------------

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    async def _get_metadata(self, backup_id: str) -> BackupMetadata:
        for backup in await self.list_backups():
            if backup.backup_id == backup_id:
                return backup
        raise BackupNotFoundError(f"Backup {backup_id} not found")

    def _index_path(self) -> Path:
        return self.backup_dir / INDEX_FILE

    def _read_index(self) -> List[Dict[str, Any]]:
        path = self._index_path()
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_index(self, index: List[Dict[str, Any]]) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self._index_path().with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(index, f, indent=2)
        tmp_path.replace(self._index_path())

    def _write_backup(self, metadata: BackupMetadata, raw: bytes) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        with gzip.open(self.backup_dir / metadata.filename, "wb") as f:
            f.write(raw)
        index = self._read_index()
        index.append(metadata.to_dict())
        self._write_index(index)

    def _read_raw(self, filename: str) -> bytes:
        with gzip.open(self.backup_dir / filename, "rb") as f:
            return f.read()

    def _delete_backup(self, backup_id: str) -> bool:
        index = self._read_index()
        remaining = [entry for entry in index if entry["backup_id"] != backup_id]
        if len(remaining) == len(index):
            return False

        for entry in index:
            if entry["backup_id"] == backup_id:
                (self.backup_dir / entry["filename"]).unlink(missing_ok=True)
        self._write_index(remaining)
        return True
