# ============================================================================
# src/fhir_validation/core/context.py
# ============================================================================
"""
Validation Context

Per-invocation state threaded through the aspect validators:
- the enclosing Bundle (if any), used to resolve bundle-local references
- the contained resources of the root resource, used for "#id" fragments
- the active reference path, used for cycle detection
- a small cache of targets fetched while following references
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set


@dataclass
class ValidationContext:
    bundle: Optional[Dict[str, Any]] = None
    contained: List[Dict[str, Any]] = field(default_factory=list)
    max_depth: int = 3
    visited: Set[str] = field(default_factory=set)
    depth: int = 0
    fetched: Dict[str, Optional[Dict[str, Any]]] = field(default_factory=dict)

    @classmethod
    def for_resource(
        cls,
        resource: Dict[str, Any],
        bundle: Optional[Dict[str, Any]] = None,
        max_depth: int = 3,
    ) -> "ValidationContext":
        contained = resource.get("contained") if isinstance(resource, dict) else None
        return cls(
            bundle=bundle,
            contained=[c for c in contained or [] if isinstance(c, dict)],
            max_depth=max_depth,
        )

    # ------------------------------------------------------------------
    # Active path (cycle detection)
    # ------------------------------------------------------------------

    def is_active(self, key: str) -> bool:
        return key in self.visited

    def push(self, key: str) -> None:
        self.visited.add(key)
        self.depth += 1

    def pop(self, key: str) -> None:
        self.visited.discard(key)
        self.depth = max(0, self.depth - 1)

    @property
    def can_descend(self) -> bool:
        return self.depth < self.max_depth

    # ------------------------------------------------------------------
    # Container lookups
    # ------------------------------------------------------------------

    def find_contained(self, fragment_id: str) -> Optional[Dict[str, Any]]:
        for resource in self.contained:
            if resource.get("id") == fragment_id:
                return resource
        return None

    def bundle_entries(self) -> List[Dict[str, Any]]:
        if not self.bundle:
            return []
        return [e for e in self.bundle.get("entry", []) or [] if isinstance(e, dict)]

    def find_in_bundle(self, reference: str) -> Optional[Dict[str, Any]]:
        """
        Find a bundle entry resource by fullUrl or Type/id.

        Absolute fullUrls match when they end with the relative reference.
        """
        for entry in self.bundle_entries():
            full_url = entry.get("fullUrl") or ""
            resource = entry.get("resource") or {}
            if full_url and (full_url == reference or full_url.endswith("/" + reference)):
                return resource
            key = f"{resource.get('resourceType')}/{resource.get('id')}"
            if key == reference:
                return resource
        return None
