# ============================================================================
# src/fhir_validation/bulk/progress.py
# ============================================================================
"""
Bulk validation progress.

Single-writer: only the orchestrator loop mutates a progress object.
sanitize() restores the counter invariants after every update:
- processed_resources <= total_resources
- valid_resources + error_resources <= processed_resources
  (error_resources is reduced first)

Time spent paused is excluded from the time-remaining estimate.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..config.validation_config import validation_settings


@dataclass
class BulkValidationProgress:
    total_resources: int = 0
    processed_resources: int = 0
    valid_resources: int = 0
    error_resources: int = 0
    current_resource_type: Optional[str] = None
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    estimated_time_remaining: Optional[float] = None
    is_complete: bool = False
    errors: List[str] = field(default_factory=list)
    paused_seconds: float = 0.0
    paused_at: Optional[datetime] = None

    def sanitize(self) -> "BulkValidationProgress":
        self.total_resources = max(0, self.total_resources)
        self.processed_resources = min(max(0, self.processed_resources), self.total_resources)
        self.valid_resources = min(max(0, self.valid_resources), self.processed_resources)
        self.error_resources = max(0, self.error_resources)

        overflow = self.valid_resources + self.error_resources - self.processed_resources
        if overflow > 0:
            self.error_resources = max(0, self.error_resources - overflow)
        return self

    def mark_paused(self, now: Optional[datetime] = None) -> None:
        if self.paused_at is None:
            self.paused_at = now or datetime.now(timezone.utc)

    def mark_resumed(self, now: Optional[datetime] = None) -> None:
        if self.paused_at is not None:
            now = now or datetime.now(timezone.utc)
            self.paused_seconds += max(0.0, (now - self.paused_at).total_seconds())
            self.paused_at = None

    def active_seconds(self, now: Optional[datetime] = None) -> float:
        """Wall time since start minus time spent paused."""
        now = now or datetime.now(timezone.utc)
        paused = self.paused_seconds
        if self.paused_at is not None:
            paused += max(0.0, (now - self.paused_at).total_seconds())
        return max(0.0, (now - self.start_time).total_seconds() - paused)

    def update_eta(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds remaining, extrapolated from the average time per resource so far."""
        if self.processed_resources < validation_settings.ETA_MIN_PROCESSED:
            self.estimated_time_remaining = None
            return None

        now = now or datetime.now(timezone.utc)
        elapsed = self.active_seconds(now)
        per_resource = elapsed / self.processed_resources
        remaining = (self.total_resources - self.processed_resources) * per_resource

        self.estimated_time_remaining = min(max(0.0, remaining), validation_settings.ETA_MAX_SECONDS)
        return self.estimated_time_remaining

    @property
    def percent_complete(self) -> float:
        if self.total_resources == 0:
            return 100.0 if self.is_complete else 0.0
        return round(self.processed_resources / self.total_resources * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_resources": self.total_resources,
            "processed_resources": self.processed_resources,
            "valid_resources": self.valid_resources,
            "error_resources": self.error_resources,
            "current_resource_type": self.current_resource_type,
            "start_time": self.start_time.isoformat(),
            "estimated_time_remaining": self.estimated_time_remaining,
            "is_complete": self.is_complete,
            "percent_complete": self.percent_complete,
            "errors": list(self.errors),
            "paused_seconds": round(self.paused_seconds, 3),
        }
