# ============================================================================
# src/fhir_validation/core/tree_walker.py
# ============================================================================
"""
Resource Tree Walker

Generic traversal of FHIR JSON resources. Paths use the
"field.nested[i].leaf" form, matching ValidationIssue.path.

- iter_nodes: every (path, value) pair in the tree
- find_codings: Coding-shaped objects (system + code), each counted once
- find_references: Reference-shaped objects (string "reference")
- find_extensions: every extension / modifierExtension entry
- get_values_at_path: values reached by a simple dotted element path
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Tuple


@dataclass
class CodingNode:
    path: str
    system: str
    code: Any
    display: Any = None


@dataclass
class ReferenceNode:
    path: str
    reference: str
    node: Dict[str, Any]


def join_path(parent: str, key: str) -> str:
    return f"{parent}.{key}" if parent else key


def iter_nodes(value: Any, path: str = "") -> Iterator[Tuple[str, Any]]:
    """Depth-first walk yielding (path, value) for every node."""
    yield path, value
    if isinstance(value, dict):
        for key, child in value.items():
            yield from iter_nodes(child, join_path(path, key))
    elif isinstance(value, list):
        for index, child in enumerate(value):
            yield from iter_nodes(child, f"{path}[{index}]")


def find_codings(resource: Dict[str, Any]) -> List[CodingNode]:
    """
    Collect every object carrying both "system" and "code".

    A Coding inside a CodeableConcept is reached exactly once through
    the traversal, so nothing is double counted.
    """
    codings = []
    for path, node in iter_nodes(resource):
        if isinstance(node, dict) and "system" in node and "code" in node:
            codings.append(CodingNode(
                path=path,
                system=node.get("system"),
                code=node.get("code"),
                display=node.get("display"),
            ))
    return codings


def find_references(resource: Dict[str, Any], skip_contained: bool = True) -> List[ReferenceNode]:
    """Collect every object whose "reference" member is a string."""
    references = []
    for path, node in iter_nodes(resource):
        if skip_contained and path.startswith("contained"):
            continue
        if isinstance(node, dict) and isinstance(node.get("reference"), str):
            references.append(ReferenceNode(path=path, reference=node["reference"], node=node))
    return references


def find_extensions(resource: Dict[str, Any]) -> List[Tuple[str, Any]]:
    """Collect (path, extension) for every extension and modifierExtension entry."""
    found = []
    for path, node in iter_nodes(resource):
        if not isinstance(node, dict):
            continue
        for key in ("extension", "modifierExtension"):
            entries = node.get(key)
            if isinstance(entries, list):
                for index, extension in enumerate(entries):
                    found.append((f"{join_path(path, key)}[{index}]", extension))
    return found


def get_values_at_path(resource: Dict[str, Any], element_path: str) -> List[Any]:
    """
    Resolve a simple element path such as "Patient.name.given".

    The leading resource type is optional. Arrays are flattened at every
    step, missing members yield nothing.
    """
    parts = element_path.split(".")
    if parts and parts[0] == resource.get("resourceType"):
        parts = parts[1:]

    current: List[Any] = [resource]
    for part in parts:
        next_values: List[Any] = []
        for value in current:
            if not isinstance(value, dict) or part not in value:
                continue
            child = value[part]
            if isinstance(child, list):
                next_values.extend(child)
            else:
                next_values.append(child)
        current = next_values
        if not current:
            break
    return current


def has_choice_value(node: Dict[str, Any], prefix: str) -> bool:
    """True if node has any "<prefix>X" member (FHIR choice type, e.g. value[x])."""
    for key in node:
        if key.startswith(prefix) and len(key) > len(prefix) and key[len(prefix)].isupper():
            return True
    return False
