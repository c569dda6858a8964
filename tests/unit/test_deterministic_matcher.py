"""
Unit tests for deterministic_matcher module.
"""

import random

from course_reconciler.agents.deterministic_matcher import DeterministicMatcher
from course_reconciler.models.catalog import CatalogEntry
from course_reconciler.models.config import MatchingConfig, ReconciliationConfig
from course_reconciler.models.mapping import MatchMethod
from course_reconciler.models.source_record import SourceRecord
from course_reconciler.utils.catalog_index import CatalogIndex


class TestDeterministicMatcher:
    """Test cases for DeterministicMatcher class."""

    def test_exact_match_after_normalization(self, catalog_index, config, exact_record):
        """Test that a formatted code matches its catalog entry exactly."""
        # Arrange
        matcher = DeterministicMatcher(catalog_index, config)

        # Act
        result = matcher.match([exact_record])

        # Assert
        assert len(result.matched) == 1
        match = result.matched[0]
        assert match.entry.code == "1001310"
        assert match.method == MatchMethod.EXACT_CODE
        assert match.confidence == 100
        assert result.unmatched == []
        assert result.exact_matches == 1

    def test_differently_formatted_codes_match_same_entry(self, config):
        """Test that "CS-101" and "cs101" both match catalog code CS101 exactly."""
        # Arrange
        index = CatalogIndex([CatalogEntry(code="CS101", name="Intro to Computer Science")])
        records = [
            SourceRecord(id="dashed", name="Intro to CS", raw_code="CS-101"),
            SourceRecord(id="lower", name="Computer Science I", raw_code="cs101"),
        ]
        matcher = DeterministicMatcher(index, config)

        # Act
        result = matcher.match(records)

        # Assert
        assert [m.record.id for m in result.matched] == ["dashed", "lower"]
        for match in result.matched:
            assert match.entry.code == "CS101"
            assert match.method == MatchMethod.EXACT_CODE
            assert match.confidence == 100
        assert result.exact_matches == 2
        assert result.unmatched == []

    def test_prefix_match_uses_configured_confidence(
        self, catalog_index, config, prefix_record
    ):
        """Test that a code sharing the first seven characters is a prefix match."""
        # Arrange
        matcher = DeterministicMatcher(catalog_index, config)

        # Act
        result = matcher.match([prefix_record])

        # Assert
        match = result.matched[0]
        assert match.entry.code == "1200310"
        assert match.method == MatchMethod.PREFIX_MATCH
        assert match.confidence == 90
        assert result.prefix_matches == 1

    def test_prefix_match_lists_other_candidates(self, config):
        """Test that tied prefix candidates become alternatives."""
        # Arrange
        index = CatalogIndex(
            [
                CatalogEntry(code="1000310B", name="Reading B"),
                CatalogEntry(code="1000310A", name="Reading A"),
            ]
        )
        matcher = DeterministicMatcher(index, config)
        record = SourceRecord(id="r1", name="Reading", raw_code="1000310-X")

        # Act
        result = matcher.match([record])

        # Assert
        match = result.matched[0]
        assert match.entry.code == "1000310A"
        assert match.alternative_codes == ["1000310B"]

    def test_custom_prefix_length(self, catalog_index):
        """Test that prefix length comes from configuration."""
        # Arrange
        config = ReconciliationConfig(matching=MatchingConfig(prefix_length=4))
        matcher = DeterministicMatcher(catalog_index, config)
        record = SourceRecord(id="r1", name="Mystery Math", raw_code="1200999")

        # Act
        result = matcher.match([record])

        # Assert
        assert result.matched[0].entry.code == "1200310"

    def test_records_without_usable_code_pass_through(self, catalog_index, config):
        """Test that missing, punctuation-only and unknown codes stay unmatched."""
        # Arrange
        matcher = DeterministicMatcher(catalog_index, config)
        records = [
            SourceRecord(id="r1", name="Biology"),
            SourceRecord(id="r2", name="Chemistry", raw_code="--"),
            SourceRecord(id="r3", name="Physics", raw_code="PHY"),
            SourceRecord(id="r4", name="Art", raw_code="9999999"),
        ]

        # Act
        result = matcher.match(records)

        # Assert
        assert result.matched == []
        assert [r.id for r in result.unmatched] == ["r1", "r2", "r3", "r4"]

    def test_unmatched_records_are_untouched(self, catalog_index, config):
        """Test that unmatched records are passed on as the same objects."""
        # Arrange
        matcher = DeterministicMatcher(catalog_index, config)
        record = SourceRecord(id="r1", name="Biology", description="Cells")

        # Act
        result = matcher.match([record])

        # Assert
        assert result.unmatched[0] is record

    def test_output_independent_of_record_order(
        self, catalog_index, config, exact_record, prefix_record, semantic_records
    ):
        """Test that shuffling input does not change any record's decision."""
        # Arrange
        matcher = DeterministicMatcher(catalog_index, config)
        records = [exact_record, prefix_record, *semantic_records]
        shuffled = records[:]
        random.Random(7).shuffle(shuffled)

        # Act
        first = matcher.match(records)
        second = matcher.match(shuffled)

        # Assert
        def decisions(result):
            return {
                m.record.id: (m.entry.code, m.method, m.confidence) for m in result.matched
            }

        assert decisions(first) == decisions(second)
        assert {r.id for r in first.unmatched} == {r.id for r in second.unmatched}
