"""
Tests for inline span markup.
"""

import pytest

from cardsmith.errors import MarkupError
from cardsmith.markup import Span, escape_markup, parse_markup, plain_text
from cardsmith.template import TextStyle


@pytest.fixture
def style():
    return TextStyle(size=20, color='#000000')


class TestParseMarkup:
    """Test parsing span markup into styled spans."""

    def test_plain_text_is_one_span(self, style):
        """Test text without tags inherits the region style."""
        assert parse_markup("Deal 3 damage", style) == [Span("Deal 3 damage", "default", 20, "#000000")]

    def test_span_overrides_style(self, style):
        """Test colour and size attributes."""
        spans = parse_markup('Deal <span color="#C00000" size="30"/3> damage', style)

        assert spans == [
            Span("Deal ", "default", 20, "#000000"),
            Span("3", "default", 30, "#C00000"),
            Span(" damage", "default", 20, "#000000"),
        ]

    def test_nested_spans_inherit(self, style):
        """Test inner spans start from the enclosing span's style."""
        spans = parse_markup('<span color="red"/a<span scale="1.5"/b>c>', style)

        assert spans == [
            Span("a", "default", 20, "red"),
            Span("b", "default", 30, "red"),
            Span("c", "default", 20, "red"),
        ]

    def test_adjacent_equal_spans_merge(self, style):
        """Test that spans with the same style collapse into one."""
        spans = parse_markup('a<span color="#000000"/b>c', style)

        assert spans == [Span("abc", "default", 20, "#000000")]

    def test_escaped_brackets(self, style):
        """Test escaped angle brackets render literally."""
        spans = parse_markup(r"1 \< 2 \> 0", style)

        assert plain_text(spans) == "1 < 2 > 0"

    def test_escape_markup(self, style):
        """Test that escaped row values never open spans."""
        value = 'x<span color="red"/y>'

        assert plain_text(parse_markup(escape_markup(value), style)) == value

    def test_font_must_be_known(self, style):
        """Test span fonts are checked against the template fonts."""
        assert parse_markup('<span font="title"/x>', style, ['default', 'title'])[0].font == 'title'
        with pytest.raises(MarkupError):
            parse_markup('<span font="fancy"/x>', style, ['default'])

    @pytest.mark.parametrize('text', [
        '<span color="red"/never closed',
        'stray > bracket',
        '<b/bold>',
        '<span weight="bold"/x>',
        '<span color="sparkly"/x>',
        '<span size="big"/x>',
        '<span scale="0"/x>',
        '<span color=red/x>',
    ])
    def test_malformed_markup(self, style, text):
        """Test that malformed markup is rejected with its position."""
        with pytest.raises(MarkupError) as exc:
            parse_markup(text, style)

        assert exc.value.position >= 0
