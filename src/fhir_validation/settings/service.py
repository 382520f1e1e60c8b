# ============================================================================
# src/fhir_validation/settings/service.py
# ============================================================================
"""
Validation Settings Service

Single source of truth for the active ValidationSettings.

Lifecycle:
- initialize(): load the active record with retry and backoff, repair it
  if it no longer validates, otherwise activate any valid record, otherwise
  create defaults; if storage is unusable fall back to in-memory defaults
  and emit a critical error event. Starts the cache cleanup and backup
  timers.
- shutdown(): cancels the timers.

Invariant: after initialize() exactly one record is active. Activation
goes through storage.activate_settings(), which swaps the flag in one
transaction.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..config.settings_service_config import SettingsServiceSettings, settings_service_settings
from ..core.engine import ValidationEngine
from ..core.events import EventPublisher, SettingsChangeEvent, SettingsChangeType
from ..storage.base import ValidationStorage
from ..utils.exceptions import (
    ActiveSettingsDeletionError,
    InvalidSettingsError,
    SettingsError,
    SettingsNotFoundError,
)
from .backup import BackupMetadata, SettingsBackupService
from .cache import (
    SettingsCache,
    profile_dependency,
    profile_server_dependency,
    settings_dependencies,
    terminology_server_dependency,
)
from .migration import SettingsValidationReport, check_settings, format_validation_error, migrate_settings
from .models import SETTINGS_PRESETS, ValidationSettings

ACTIVE_TAG = "active"
RECENT_TAG = "recent"
BY_ID_TAG = "by-id"

# Nested sections merged key by key on update
NESTED_SECTIONS = (
    "structural", "profile", "terminology", "reference", "business_rule", "metadata",
    "timeouts", "cache", "references",
)

IMMUTABLE_FIELDS = ("id", "is_active", "created_at", "created_by")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ValidationSettingsService(EventPublisher):
    """
    Settings lifecycle, caching and change notification.

    Example:
        service = ValidationSettingsService(storage, backup_service)
        await service.initialize()
        settings = await service.get_active_settings()
        await service.update_settings({"batch_size": 500}, updated_by="admin")
        await service.shutdown()
    """

    def __init__(
        self,
        storage: ValidationStorage,
        backup_service: Optional[SettingsBackupService] = None,
        config: Optional[SettingsServiceSettings] = None,
    ):
        super().__init__()
        self.storage = storage
        self.backup_service = backup_service
        self.config = config or settings_service_settings
        self.logger = logging.getLogger(__name__)

        self._cache = SettingsCache(
            max_size=self.config.SETTINGS_CACHE_MAX_ENTRIES,
            default_ttl=self.config.SETTINGS_CACHE_TTL_SECONDS,
        )
        self._active: Optional[ValidationSettings] = None
        self._initialized = False
        self._started_at = time.monotonic()
        self._last_error: Optional[str] = None
        self._using_fallback = False
        self._tasks: List[asyncio.Task] = []
        self._init_lock = asyncio.Lock()

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def initialize(self) -> None:
        """Load or heal the active settings once; concurrent callers wait for the first."""
        async with self._init_lock:
            if self._initialized:
                return

            self.logger.info("Initializing validation settings service")
            await self._load_active_settings()
            await self.warm_cache()

            self._tasks.append(asyncio.create_task(self._cleanup_loop()))
            if self.config.SETTINGS_AUTO_BACKUP and self.backup_service is not None:
                self._tasks.append(asyncio.create_task(self._backup_loop()))

            self._initialized = True
            self.logger.info(f"Validation settings service ready (active: {self._active.id})")

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._initialized = False
        self.logger.info("Validation settings service shut down")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ========================================================================
    # READ
    # ========================================================================

    async def get_active_settings(self) -> ValidationSettings:
        if not self._initialized:
            await self.initialize()
        return self._active

    async def get_settings_by_id(self, settings_id: str) -> Optional[ValidationSettings]:
        cached = self._cache.get(settings_id)
        if cached is not None:
            return cached

        record = await self.storage.get_settings(settings_id)
        if record is None:
            return None

        settings = ValidationSettings.model_validate(record)
        self._cache_settings(settings, BY_ID_TAG)
        return settings

    async def list_settings(self, limit: Optional[int] = None) -> List[ValidationSettings]:
        records = await self.storage.list_settings(limit)
        return [ValidationSettings.model_validate(r) for r in records]

    # ========================================================================
    # WRITE
    # ========================================================================

    async def create_settings(
        self,
        settings: Union[ValidationSettings, Dict[str, Any], None] = None,
        created_by: Optional[str] = None,
    ) -> ValidationSettings:
        """Create a new, inactive settings record."""
        payload = settings.model_dump(mode="json") if isinstance(settings, ValidationSettings) else dict(settings or {})
        self._reject_unknown_fields(payload)

        payload.update({
            "is_active": False,
            "version": 1,
            "created_at": _now(),
            "created_by": created_by,
            "updated_at": _now(),
            "updated_by": created_by,
        })
        created = self._validate_payload(payload)

        await self.storage.insert_settings(created.model_dump(mode="json"))
        self._cache_settings(created, BY_ID_TAG, RECENT_TAG)

        self.logger.info(f"Created settings {created.id}")
        self._emit_change(SettingsChangeType.CREATED, created.id, created_by, current=created)
        return created

    async def update_settings(
        self,
        changes: Dict[str, Any],
        settings_id: Optional[str] = None,
        updated_by: Optional[str] = None,
        create_new_version: bool = False,
    ) -> ValidationSettings:
        """
        Merge changes into a settings record (the active one by default).

        The version is bumped when create_new_version is set or when the
        settings content actually changed.
        """
        self._reject_unknown_fields(changes)
        current = await self._require(settings_id) if settings_id else await self.get_active_settings()

        payload = current.model_dump(mode="json")
        for key, value in changes.items():
            if key in IMMUTABLE_FIELDS or key == "version":
                continue
            if key in NESTED_SECTIONS and isinstance(value, dict) and isinstance(payload.get(key), dict):
                payload[key] = {**payload[key], **value}
            else:
                payload[key] = value

        candidate = self._validate_payload(payload)
        content_changed = candidate.content_dict() != current.content_dict()

        updated = candidate.model_copy(update={
            "version": current.version + 1 if (create_new_version or content_changed) else current.version,
            "updated_at": _now(),
            "updated_by": updated_by,
        })

        await self.storage.update_settings(updated.model_dump(mode="json"))
        self._cache.delete(updated.id)
        tags = [BY_ID_TAG, RECENT_TAG] + ([ACTIVE_TAG] if updated.is_active else [])
        self._cache_settings(updated, *tags)

        if updated.is_active:
            self._active = updated

        self.logger.info(f"Updated settings {updated.id} to version {updated.version}")
        self._emit_change(SettingsChangeType.UPDATED, updated.id, updated_by, previous=current, current=updated)
        return updated

    async def activate_settings(self, settings_id: str, activated_by: Optional[str] = None) -> ValidationSettings:
        target = await self._require(settings_id)
        previous = self._active

        await self.storage.activate_settings(settings_id)

        activated = target.model_copy(update={"is_active": True})
        self._active = activated
        self._cache.invalidate_by_tag(ACTIVE_TAG)
        if previous is not None:
            self._cache.delete(previous.id)
        self._cache.delete(settings_id)
        self._cache_settings(activated, ACTIVE_TAG)

        self.logger.info(f"Activated settings {settings_id}")
        self._emit_change(SettingsChangeType.ACTIVATED, settings_id, activated_by, previous=previous, current=activated)
        return activated

    async def deactivate_settings(self, settings_id: str, deactivated_by: Optional[str] = None) -> ValidationSettings:
        """
        Mark a record inactive. The active record cannot be deactivated
        directly; activate another record instead.
        """
        target = await self._require(settings_id)
        if target.is_active or (self._active is not None and self._active.id == settings_id):
            raise InvalidSettingsError(
                f"Settings {settings_id} is active; activate another configuration instead"
            )

        self.logger.debug(f"Settings {settings_id} already inactive")
        self._emit_change(SettingsChangeType.DEACTIVATED, settings_id, deactivated_by, current=target)
        return target

    async def delete_settings(self, settings_id: str, deleted_by: Optional[str] = None) -> None:
        target = await self._require(settings_id)
        if target.is_active or (self._active is not None and self._active.id == settings_id):
            raise ActiveSettingsDeletionError(f"Cannot delete active settings {settings_id}")

        await self.storage.delete_settings(settings_id)
        self._cache.delete(settings_id)

        self.logger.info(f"Deleted settings {settings_id}")
        self._emit_change(SettingsChangeType.DELETED, settings_id, deleted_by, previous=target)

    # ========================================================================
    # VALIDATION, TESTING, PRESETS
    # ========================================================================

    def validate_settings(self, payload: Any) -> SettingsValidationReport:
        """Schema errors and advisory warnings; never raises."""
        return check_settings(payload)

    async def test_settings(
        self,
        settings: Union[ValidationSettings, Dict[str, Any]],
        sample_resource: Dict[str, Any],
        engine=None,
    ) -> Dict[str, Any]:
        """
        Dry-run a settings candidate against one sample resource.

        Returns:
            {"isValid", "issues", "performance": {"totalTimeMs", "aspectTimes"},
             "validationResult"}
        """
        start = time.perf_counter()
        report = check_settings(settings)
        if not report.is_valid:
            return {
                "isValid": False,
                "issues": [{"type": "settings_error", "message": e} for e in report.errors],
                "performance": {"totalTimeMs": (time.perf_counter() - start) * 1000, "aspectTimes": {}},
                "validationResult": None,
            }

        if not isinstance(settings, ValidationSettings):
            settings = ValidationSettings.model_validate(settings)

        if engine is None:
            engine = ValidationEngine()

        result = await engine.validate_resource(sample_resource, settings)
        return {
            "isValid": result.is_valid,
            "issues": [issue.to_dict() for issue in result.issues],
            "performance": {
                "totalTimeMs": (time.perf_counter() - start) * 1000,
                "aspectTimes": {
                    aspect.value: outcome.duration_ms
                    for aspect, outcome in result.aspect_outcomes.items()
                },
            },
            "validationResult": result.to_dict(),
        }

    def get_presets(self) -> List[Dict[str, Any]]:
        return [
            {"id": preset_id, "name": preset["name"], "description": preset["description"],
             "settings": preset["settings"]}
            for preset_id, preset in SETTINGS_PRESETS.items()
        ]

    async def apply_preset(self, preset_id: str, created_by: Optional[str] = None) -> ValidationSettings:
        """Create a settings record from a preset and activate it."""
        preset = SETTINGS_PRESETS.get(preset_id)
        if preset is None:
            raise InvalidSettingsError(f"Unknown preset: {preset_id}", issues=[f"preset: {preset_id}"])

        created = await self.create_settings(dict(preset["settings"]), created_by=created_by)
        return await self.activate_settings(created.id, activated_by=created_by)

    # ========================================================================
    # HEALTH AND RECOVERY
    # ========================================================================

    def health_status(self) -> Dict[str, Any]:
        return {
            "is_healthy": self._initialized and self._active is not None and not self._using_fallback,
            "is_initialized": self._initialized,
            "has_active_settings": self._active is not None,
            "active_settings_id": self._active.id if self._active else None,
            "using_fallback": self._using_fallback,
            "cache_size": len(self._cache),
            "last_error": self._last_error,
            "uptime_seconds": time.monotonic() - self._started_at,
        }

    async def recover_from_error(self) -> None:
        """Clear cached state and run the self-healing load again."""
        self.logger.info("Recovering validation settings service")
        await self.shutdown()
        self._cache.clear()
        self._active = None
        self._last_error = None
        try:
            await self.initialize()
        except Exception as e:
            self._publish("on_critical_error", "recover_from_error", e)
            raise SettingsError(f"Recovery failed: {e}") from e

    def validate_configuration(self) -> Dict[str, Any]:
        """Check the service configuration; returns issues and recommendations."""
        issues, recommendations = [], []

        if self.config.SETTINGS_CACHE_TTL_SECONDS < 60:
            issues.append("Cache TTL is very short (less than 1 minute)")
            recommendations.append("Increase the cache TTL to at least 5 minutes")
        if self.config.SETTINGS_MAX_VERSIONS < 5:
            recommendations.append("Keep at least 10 settings versions for history tracking")
        if not self.config.SETTINGS_AUTO_BACKUP:
            recommendations.append("Enable automatic backups")
        elif self.config.SETTINGS_BACKUP_INTERVAL_SECONDS < 1800:
            recommendations.append("Increase the backup interval to at least 30 minutes")
        if self.backup_service is None:
            recommendations.append("Configure a backup service")

        return {"is_valid": not issues, "issues": issues, "recommendations": recommendations}

    # ========================================================================
    # CACHE
    # ========================================================================

    async def warm_cache(self) -> None:
        if self._active is not None:
            self._cache_settings(self._active, ACTIVE_TAG)
        try:
            for record in await self.storage.list_recent_settings(5):
                settings = ValidationSettings.model_validate(record)
                if settings.id not in self._cache:
                    self._cache_settings(settings, RECENT_TAG)
        except Exception as e:
            self.logger.warning(f"Could not warm settings cache: {e}")

    def cache_statistics(self) -> Dict[str, Any]:
        return self._cache.get_statistics()

    def clear_cache(self) -> int:
        count = self._cache.clear()
        self._publish("on_cache_invalidated", "cleared", count)
        return count

    def invalidate_by_tag(self, tag: str) -> int:
        count = self._cache.invalidate_by_tag(tag)
        if count:
            self._publish("on_cache_invalidated", f"tag:{tag}", count)
        return count

    def invalidate_by_dependency(self, dependency: str) -> int:
        count = self._cache.invalidate_by_dependency(dependency)
        if count:
            self._publish("on_cache_invalidated", f"dependency:{dependency}", count)
        return count

    def notify_server_configuration_changed(self, kind: str, server_id: str) -> int:
        """Invalidate only the records that reference the changed server."""
        if kind == "terminology":
            dependency = terminology_server_dependency(server_id)
        else:
            dependency = profile_server_dependency(server_id)
        self.logger.info(f"Server configuration changed: {dependency}")
        return self.invalidate_by_dependency(dependency)

    def notify_profile_changed(self, profile_url: str) -> int:
        self.logger.info(f"Profile changed: {profile_url}")
        return self.invalidate_by_dependency(profile_dependency(profile_url))

    # ========================================================================
    # BACKUPS
    # ========================================================================

    async def create_backup(self, description: str = "", created_by: Optional[str] = None) -> BackupMetadata:
        metadata = await self._backups().create_backup(description, created_by)
        self._publish("on_backup_created", metadata)
        return metadata

    async def list_backups(self) -> List[BackupMetadata]:
        return await self._backups().list_backups()

    async def verify_backup(self, backup_id: str) -> bool:
        return await self._backups().verify_backup(backup_id)

    async def delete_backup(self, backup_id: str) -> bool:
        return await self._backups().delete_backup(backup_id)

    async def cleanup_old_backups(self) -> int:
        return await self._backups().cleanup_old_backups()

    async def restore_backup(self, backup_id: str, overwrite: bool = False) -> Dict[str, Any]:
        summary = await self._backups().restore_backup(backup_id, overwrite=overwrite)

        self._cache.clear()
        record = await self.storage.get_active_settings()
        if record is not None:
            self._active = ValidationSettings.model_validate(record)
            self._cache_settings(self._active, ACTIVE_TAG)
            self._emit_change(SettingsChangeType.RESTORED, self._active.id, current=self._active)
        return summary

    # ========================================================================
    # PRIVATE METHODS
    # ========================================================================

    async def _load_active_settings(self) -> None:
        try:
            record = await self._load_with_retry()
        except Exception as e:
            self.logger.error(f"Could not load active settings: {e}", exc_info=True)
            self._last_error = str(e)
            record = None

        try:
            if record is not None:
                repaired = await self._repair_active(record)
                if repaired is not None:
                    self._active = repaired
                    return

            candidate = await self._find_any_valid_settings()
            if candidate is not None:
                self.logger.warning(f"No usable active settings; activating {candidate.id}")
                await self.storage.activate_settings(candidate.id)
                self._active = candidate.model_copy(update={"is_active": True})
                return

            self._active = await self._create_default_settings()

        except Exception as e:
            self.logger.error(f"Settings self-healing failed, using built-in defaults: {e}", exc_info=True)
            self._last_error = str(e)
            self._using_fallback = True
            self._active = ValidationSettings(is_active=True, created_by="system")
            self._publish("on_critical_error", "initialize", e)

    async def _load_with_retry(self) -> Optional[Dict[str, Any]]:
        attempts = max(1, self.config.SETTINGS_LOAD_RETRIES)
        for attempt in range(attempts):
            try:
                return await self.storage.get_active_settings()
            except Exception as e:
                if attempt == attempts - 1:
                    raise
                delay = min(
                    self.config.SETTINGS_RETRY_BASE_SECONDS * (2 ** attempt),
                    self.config.SETTINGS_RETRY_MAX_SECONDS,
                )
                self.logger.warning(
                    f"Loading active settings failed (attempt {attempt + 1}/{attempts}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    async def _validated_or_migrated(self, record: Dict[str, Any]) -> ValidationSettings:
        report = check_settings(record)
        if report.is_valid:
            return ValidationSettings.model_validate(record)

        migrated, fixed = migrate_settings(record)
        migrated = migrated.model_copy(update={"is_active": True, "updated_at": _now(), "updated_by": "system"})
        await self.storage.update_settings(migrated.model_dump(mode="json"))

        self.logger.warning(f"Active settings {migrated.id} migrated: {'; '.join(fixed)}")
        self._emit_change(SettingsChangeType.MIGRATED, migrated.id, "system", current=migrated)
        return migrated

    async def _repair_active(self, record: Dict[str, Any]) -> Optional[ValidationSettings]:
        """The active record, migrated if needed; None when it cannot be repaired."""
        try:
            return await self._validated_or_migrated(record)
        except Exception as e:
            self.logger.warning(f"Active settings {record.get('id')} could not be repaired: {e}")
            self._last_error = str(e)
            return None

    async def _find_any_valid_settings(self) -> Optional[ValidationSettings]:
        for record in await self.storage.list_recent_settings(self.config.SETTINGS_MAX_VERSIONS):
            if check_settings(record).is_valid:
                return ValidationSettings.model_validate(record)
        return None

    async def _create_default_settings(self) -> ValidationSettings:
        defaults = ValidationSettings(created_by="system", updated_by="system")
        await self.storage.insert_settings(defaults.model_dump(mode="json"))
        await self.storage.activate_settings(defaults.id)

        self.logger.info(f"Created default settings {defaults.id}")
        created = defaults.model_copy(update={"is_active": True})
        self._emit_change(SettingsChangeType.CREATED, created.id, "system", current=created)
        return created

    async def _require(self, settings_id: str) -> ValidationSettings:
        settings = await self.get_settings_by_id(settings_id)
        if settings is None:
            raise SettingsNotFoundError(f"Settings {settings_id} not found", settings_id=settings_id)
        return settings

    def _validate_payload(self, payload: Dict[str, Any]) -> ValidationSettings:
        try:
            return ValidationSettings.model_validate(payload)
        except ValidationError as e:
            issues = format_validation_error(e)
            raise InvalidSettingsError(f"Invalid settings: {'; '.join(issues)}", issues=issues) from e

    @staticmethod
    def _reject_unknown_fields(payload: Dict[str, Any]) -> None:
        unknown = sorted(set(payload) - set(ValidationSettings.model_fields))
        if unknown:
            raise InvalidSettingsError(
                f"Unknown settings fields: {', '.join(unknown)}",
                issues=[f"{name}: unknown field" for name in unknown],
            )

    def _cache_settings(self, settings: ValidationSettings, *tags: str) -> None:
        self._cache.set(settings.id, settings, tags=tags, dependencies=settings_dependencies(settings))

    def _backups(self) -> SettingsBackupService:
        if self.backup_service is None:
            raise SettingsError("Settings backups are not configured")
        return self.backup_service

    def _emit_change(
        self,
        change_type: SettingsChangeType,
        settings_id: str,
        changed_by: Optional[str] = None,
        previous: Optional[ValidationSettings] = None,
        current: Optional[ValidationSettings] = None,
    ) -> None:
        self._publish("on_settings_changed", SettingsChangeEvent(
            change_type=change_type,
            settings_id=settings_id,
            changed_by=changed_by,
            previous=previous,
            current=current,
        ))

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.SETTINGS_CLEANUP_INTERVAL_SECONDS)
            removed = self._cache.cleanup_expired()
            if removed:
                self._publish("on_cache_invalidated", "expired", removed)

    async def _backup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.SETTINGS_BACKUP_INTERVAL_SECONDS)
            try:
                await self.create_backup(description="Automatic backup", created_by="system")
                await self.cleanup_old_backups()
            except Exception as e:
                self.logger.error(f"Automatic settings backup failed: {e}", exc_info=True)
