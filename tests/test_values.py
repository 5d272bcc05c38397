"""
Tests for the row value model and canonical formatting.
"""

import pytest

from cardsmith.values import DataRow, ImagePath, MISSING, format_value, is_missing, normalize_value, value_kind


class TestFormatValue:
    """Test locale-independent canonical formatting."""

    @pytest.mark.parametrize("value,expected", [
        (True, "true"),
        (False, "false"),
        (0, "0"),
        (-42, "-42"),
        (3.0, "3"),
        (1.5, "1.5"),
        (0.1, "0.1"),
        (1234567.25, "1234567.25"),
        (1e15, "1000000000000000"),
        ("text", "text"),
        (MISSING, ""),
    ])
    def test_canonical_format(self, value, expected):
        """Test canonical strings for each value kind."""
        assert format_value(value) == expected

    def test_small_floats_have_no_exponent(self):
        """Test that small magnitudes are written positionally."""
        assert format_value(0.00001) == "0.00001"

    def test_no_thousands_separator(self):
        """Test large integers are plain digits."""
        assert format_value(1000000) == "1000000"


class TestValueKinds:
    """Test value normalisation and kinds."""

    def test_none_becomes_missing(self):
        """Test readers supplying None get MISSING."""
        assert normalize_value(None) is MISSING
        assert is_missing(MISSING)
        assert not MISSING

    def test_kinds(self):
        """Test kind names for each variant."""
        assert value_kind(MISSING) == "missing"
        assert value_kind(True) == "boolean"
        assert value_kind(ImagePath("a.png")) == "image"
        assert value_kind(2) == "number"
        assert value_kind("x") == "text"

    def test_unsupported_type(self):
        """Test that containers are not row values."""
        with pytest.raises(TypeError):
            normalize_value([1, 2])


class TestDataRow:
    """Test the immutable row mapping."""

    def test_lookup_and_missing(self):
        """Test lookups of present and absent fields."""
        row = DataRow({'name': 'Aria', 'cost': None})

        assert row['name'] == 'Aria'
        assert row.lookup('cost') is MISSING
        assert row.lookup('nope') is MISSING

    def test_order_is_preserved(self):
        """Test field order follows the source mapping."""
        row = DataRow({'b': 1, 'a': 2, 'c': 3})

        assert list(row) == ['b', 'a', 'c']

    def test_immutable(self):
        """Test that rows cannot be changed."""
        row = DataRow(name='Aria')

        with pytest.raises(TypeError):
            row['name'] = 'Borin'
        with pytest.raises(TypeError):
            row.extra = 1

    def test_hashable_and_equal(self):
        """Test rows compare by content."""
        assert DataRow({'a': 1}) == DataRow(a=1)
        assert hash(DataRow({'a': 1})) == hash(DataRow(a=1))
