"""
Unit tests for normalizer module.
"""

import pytest

from course_reconciler.utils.normalizer import normalize


class TestNormalize:
    """Test cases for normalize function."""

    @pytest.mark.parametrize("raw", ["CS-101", "cs 101", "CS101", " C.S. 101 ", "cs_101!"])
    def test_formatting_variants_collapse_to_same_key(self, raw):
        """Test that case, whitespace and punctuation differences disappear."""
        # Act
        result = normalize(raw)

        # Assert
        assert result == "cs101"

    @pytest.mark.parametrize(
        "raw", ["1200-310", "Algebra 1 (Honors)", "ÉCOLE 12", "\t\nMATH 101", "", "---"]
    )
    def test_is_idempotent(self, raw):
        """Test that normalizing twice equals normalizing once."""
        # Act
        once = normalize(raw)
        twice = normalize(once)

        # Assert
        assert once == twice

    def test_only_lowercase_alphanumerics_survive(self):
        """Test that non-ASCII letters are stripped along with punctuation."""
        # Act
        result = normalize("Café 101")

        # Assert
        assert result == "caf101"

    @pytest.mark.parametrize("raw", [None, 101, "", "   ", "-./"])
    def test_empty_or_non_string_yields_empty(self, raw):
        """Test that unusable input normalizes to the empty string."""
        # Act
        result = normalize(raw)

        # Assert
        assert result == ""
