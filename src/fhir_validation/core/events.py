# ============================================================================
# src/fhir_validation/core/events.py
# ============================================================================
"""
Explicit observer interfaces.

Services that emit state changes derive from EventPublisher and accept
subscribers implementing one of the listener interfaces below. Listener
methods are no-ops by default so subscribers override only what they need.
Subscriber failures are logged and never reach the publisher.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

logger = logging.getLogger(__name__)


class SettingsChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"
    DELETED = "deleted"
    MIGRATED = "migrated"
    RESTORED = "restored"


@dataclass
class SettingsChangeEvent:
    change_type: SettingsChangeType
    settings_id: str
    changed_by: Optional[str] = None
    previous: Optional[Any] = None
    current: Optional[Any] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ValidationListener:
    """Receives one call per completed validation pipeline run."""

    def on_validation_completed(self, result) -> None:
        pass


class SettingsListener:
    """Receives settings service events."""

    def on_settings_changed(self, event: SettingsChangeEvent) -> None:
        pass

    def on_cache_invalidated(self, reason: str, count: int) -> None:
        pass

    def on_critical_error(self, operation: str, error: Exception) -> None:
        pass

    def on_backup_created(self, metadata) -> None:
        pass


class BulkProgressListener:
    """Receives bulk orchestrator progress and state transitions."""

    def on_progress(self, progress) -> None:
        pass

    def on_state_changed(self, previous, current) -> None:
        pass


class RuleListener:
    """Receives business rule administration changes."""

    def on_rules_changed(self, rule_id: Optional[str]) -> None:
        pass


class EventPublisher:
    """Minimal publish/subscribe base."""

    def __init__(self):
        self._subscribers: List[Any] = []

    def subscribe(self, subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def subscribers(self) -> List[Any]:
        return list(self._subscribers)

    def _publish(self, method_name: str, *args) -> None:
        for subscriber in list(self._subscribers):
            handler = getattr(subscriber, method_name, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception as e:
                logger.error(
                    f"Subscriber {type(subscriber).__name__}.{method_name} failed: {e}",
                    exc_info=True
                )
