# ============================================================================
# tests/unit/test_settings_backup.py
# ============================================================================
"""
Tests for settings backup, verification and restore
"""

import gzip

import pytest

from fhir_validation.settings.backup import SettingsBackupService
from fhir_validation.settings.models import ValidationSettings
from fhir_validation.settings.service import ValidationSettingsService
from fhir_validation.storage.memory_store import InMemoryStorage
from fhir_validation.utils.exceptions import BackupIntegrityError, BackupNotFoundError


async def seed(storage, count=2, active_index=0):
    ids = []
    for index in range(count):
        settings = ValidationSettings(batch_size=100 + index)
        await storage.insert_settings(settings.model_dump(mode="json"))
        ids.append(settings.id)
    await storage.activate_settings(ids[active_index])
    return ids


class TestSettingsBackupService:
    """Test backup files and the index"""

    @pytest.mark.asyncio
    async def test_create_and_verify(self, storage, tmp_path):
        """Test that a new backup is listed and passes its checksum"""
        ids = await seed(storage)
        backups = SettingsBackupService(storage, backup_dir=tmp_path)

        metadata = await backups.create_backup("nightly", created_by="admin")

        assert metadata.settings_count == 2
        assert metadata.active_settings_id == ids[0]
        assert (tmp_path / metadata.filename).exists()
        assert [b.backup_id for b in await backups.list_backups()] == [metadata.backup_id]
        assert await backups.verify_backup(metadata.backup_id)

    @pytest.mark.asyncio
    async def test_corrupted_backup_fails_verification(self, storage, tmp_path):
        """Test that a modified backup file is rejected on restore"""
        await seed(storage)
        backups = SettingsBackupService(storage, backup_dir=tmp_path)
        metadata = await backups.create_backup()

        with gzip.open(tmp_path / metadata.filename, "wb") as f:
            f.write(b'{"settings": []}')

        assert not await backups.verify_backup(metadata.backup_id)
        with pytest.raises(BackupIntegrityError):
            await backups.restore_backup(metadata.backup_id)

    @pytest.mark.asyncio
    async def test_restore_into_empty_store(self, storage, tmp_path):
        """Test that restore re-inserts records and the active marker"""
        ids = await seed(storage, active_index=1)
        backups = SettingsBackupService(storage, backup_dir=tmp_path)
        metadata = await backups.create_backup()

        target = InMemoryStorage()
        summary = await SettingsBackupService(target, backup_dir=tmp_path).restore_backup(metadata.backup_id)

        assert sorted(summary["restored"]) == sorted(ids)
        assert summary["skipped"] == []
        assert target.settings[ids[1]]["is_active"]
        assert not target.settings[ids[0]]["is_active"]

    @pytest.mark.asyncio
    async def test_restore_skip_and_overwrite(self, storage, tmp_path):
        """Test duplicate handling on restore"""
        ids = await seed(storage, count=1)
        backups = SettingsBackupService(storage, backup_dir=tmp_path)
        metadata = await backups.create_backup()
        storage.settings[ids[0]]["batch_size"] = 999

        skipped = await backups.restore_backup(metadata.backup_id)
        assert skipped["skipped"] == ids
        assert storage.settings[ids[0]]["batch_size"] == 999

        overwritten = await backups.restore_backup(metadata.backup_id, overwrite=True)
        assert overwritten["restored"] == ids
        assert storage.settings[ids[0]]["batch_size"] == 100

    @pytest.mark.asyncio
    async def test_restore_without_active_marker(self, storage, tmp_path):
        """Test that the newest version is activated when the backup has no active record"""
        older = ValidationSettings(version=1, batch_size=100)
        newer = ValidationSettings(version=3, batch_size=300)
        for settings in (older, newer):
            await storage.insert_settings(settings.model_dump(mode="json"))
        backups = SettingsBackupService(storage, backup_dir=tmp_path)
        metadata = await backups.create_backup()
        assert metadata.active_settings_id is None

        target = InMemoryStorage()
        summary = await SettingsBackupService(target, backup_dir=tmp_path).restore_backup(metadata.backup_id)

        assert summary["active_settings_id"] == newer.id
        assert target.settings[newer.id]["is_active"]
        assert not target.settings[older.id]["is_active"]

    @pytest.mark.asyncio
    async def test_overwrite_keeps_one_active(self, storage, tmp_path):
        """Test that overwriting the active record from an unmarked backup leaves one record active"""
        settings = ValidationSettings(version=2)
        await storage.insert_settings(settings.model_dump(mode="json"))
        backups = SettingsBackupService(storage, backup_dir=tmp_path)
        metadata = await backups.create_backup()
        await storage.activate_settings(settings.id)

        await backups.restore_backup(metadata.backup_id, overwrite=True)

        assert storage.settings[settings.id]["is_active"]
        assert (await storage.get_active_settings())["id"] == settings.id

    @pytest.mark.asyncio
    async def test_unknown_backup(self, storage, tmp_path):
        """Test lookups of missing backups"""
        backups = SettingsBackupService(storage, backup_dir=tmp_path)

        with pytest.raises(BackupNotFoundError):
            await backups.verify_backup("missing")
        assert not await backups.delete_backup("missing")

    @pytest.mark.asyncio
    async def test_cleanup_keeps_newest(self, storage, tmp_path):
        """Test that cleanup enforces the maximum count"""
        await seed(storage)
        backups = SettingsBackupService(storage, backup_dir=tmp_path, max_backups=2)
        created = [await backups.create_backup(str(i)) for i in range(4)]

        removed = await backups.cleanup_old_backups()

        remaining = {b.backup_id for b in await backups.list_backups()}
        assert removed == 2
        assert len(remaining) == 2
        assert created[3].backup_id in remaining
        assert not (tmp_path / created[0].filename).exists()


class TestServiceRestore:
    """Test restore through the settings service"""

    @pytest.mark.asyncio
    async def test_restore_reloads_active(self, tmp_path, service_config):
        """Test that the service picks up the restored active record"""
        storage = InMemoryStorage()
        service = ValidationSettingsService(
            storage, SettingsBackupService(storage, backup_dir=tmp_path), config=service_config,
        )
        original = await service.get_active_settings()
        metadata = await service.create_backup()

        replacement = await service.create_settings({"batch_size": 77})
        await service.activate_settings(replacement.id)

        await service.restore_backup(metadata.backup_id)

        assert (await service.get_active_settings()).id == original.id
        assert len(await service.list_backups()) == 1
        await service.shutdown()
