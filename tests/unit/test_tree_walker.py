# ============================================================================
# tests/unit/test_tree_walker.py
# ============================================================================
"""
Tests for resource traversal, hashing and FHIR primitive helpers
"""

from fhir_validation.core.fhir_types import has_timezone, is_valid_id, parse_fhir_datetime
from fhir_validation.core.hashing import content_hash, rolling_hash, stable_stringify
from fhir_validation.core.tree_walker import (
    find_codings,
    find_extensions,
    find_references,
    get_values_at_path,
    has_choice_value,
    iter_nodes,
)


class TestTreeWalker:
    """Test path-aware traversal"""

    def test_paths_use_dot_and_bracket_notation(self):
        """Test that generated paths match the issue path format"""
        resource = {"name": [{"given": ["A", "B"]}]}
        paths = [path for path, _ in iter_nodes(resource)]
        assert "name[0].given[1]" in paths

    def test_find_codings_counts_each_once(self):
        """Test that a Coding inside a CodeableConcept is found once"""
        resource = {
            "code": {"coding": [{"system": "http://loinc.org", "code": "8867-4"}]},
            "category": [{"coding": [{"system": "http://terminology.hl7.org/cs", "code": "vital-signs"}]}],
        }
        codings = find_codings(resource)
        assert [c.code for c in codings] == ["8867-4", "vital-signs"]
        assert codings[0].path == "code.coding[0]"

    def test_find_references_skips_contained(self):
        """Test that references inside contained resources are optional"""
        resource = {
            "subject": {"reference": "Patient/1"},
            "contained": [{"resourceType": "Practitioner", "id": "x", "partOf": {"reference": "Organization/2"}}],
        }
        assert [r.reference for r in find_references(resource)] == ["Patient/1"]
        assert len(find_references(resource, skip_contained=False)) == 2

    def test_find_extensions_nested(self):
        """Test that extensions at any depth are collected"""
        resource = {
            "extension": [{"url": "http://a"}],
            "name": [{"extension": [{"url": "http://b"}], "modifierExtension": [{"url": "http://c"}]}],
        }
        paths = [path for path, _ in find_extensions(resource)]
        assert paths == ["extension[0]", "name[0].extension[0]", "name[0].modifierExtension[0]"]

    def test_get_values_at_path_flattens_arrays(self):
        """Test that arrays are flattened at every step"""
        resource = {"resourceType": "Patient", "name": [{"given": ["A"]}, {"given": ["B", "C"]}]}
        assert get_values_at_path(resource, "Patient.name.given") == ["A", "B", "C"]
        assert get_values_at_path(resource, "telecom.value") == []

    def test_has_choice_value(self):
        """Test choice-type detection"""
        assert has_choice_value({"valueQuantity": {}}, "value")
        assert not has_choice_value({"values": 1}, "value")


class TestHashing:
    """Test change-detection hashes"""

    def test_stable_stringify_sorts_keys(self):
        """Test that key order does not matter"""
        assert stable_stringify({"b": 1, "a": 2}) == stable_stringify({"a": 2, "b": 1})

    def test_content_hash_ignores_meta_bookkeeping(self):
        """Test that only versionId and lastUpdated matter in meta"""
        a = {"resourceType": "Patient", "id": "1", "meta": {"versionId": "1", "source": "a"}}
        b = {"resourceType": "Patient", "id": "1", "meta": {"versionId": "1", "source": "b"}}
        c = {"resourceType": "Patient", "id": "1", "meta": {"versionId": "2"}}
        assert content_hash(a) == content_hash(b)
        assert content_hash(a) != content_hash(c)

    def test_rolling_hash_is_base36(self):
        """Test rolling hash output shape and sensitivity"""
        first = rolling_hash({"id": "1"})
        assert first.isalnum() and first == first.lower()
        assert first == rolling_hash({"id": "1"})
        assert first != rolling_hash({"id": "2"})


class TestFhirTypes:
    """Test primitive helpers"""

    def test_ids(self):
        """Test FHIR id pattern"""
        assert is_valid_id("abc-123.x")
        assert not is_valid_id("has space")
        assert not is_valid_id("x" * 65)

    def test_parse_partial_dates(self):
        """Test that partial dates parse to their first instant"""
        assert parse_fhir_datetime("2024").month == 1
        assert parse_fhir_datetime("2024-03").day == 1
        assert parse_fhir_datetime("2024-03-05T10:00:00Z").hour == 10
        assert parse_fhir_datetime("not a date") is None
        assert parse_fhir_datetime(None) is None

    def test_parse_fractional_seconds(self):
        """Test fractions of any length and leap seconds"""
        assert parse_fhir_datetime("2024-03-05T10:00:00.1Z").microsecond == 100000
        assert parse_fhir_datetime("2024-03-05T10:00:00.12345678+02:00").microsecond == 123456
        assert parse_fhir_datetime("2024-03-05T10:00:00.5-05:00").utcoffset().total_seconds() == -5 * 3600
        assert parse_fhir_datetime("2016-12-31T23:59:60Z").second == 59

    def test_has_timezone(self):
        """Test zone detection on dateTime strings"""
        assert has_timezone("2024-01-01T10:00:00Z")
        assert has_timezone("2024-01-01T10:00:00+02:00")
        assert not has_timezone("2024-01-01T10:00:00")
