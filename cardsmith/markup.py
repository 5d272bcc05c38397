"""
Inline span markup for text regions.

A text region with ``markup: true`` may style parts of its text:

    Deal <span color="#C00000" font="bold"/3> damage to <span scale="1.5"/all> foes

A span opens with ``<span``, takes ``key="value"`` attributes, switches to
content at ``/`` and closes at ``>``. Spans nest. ``\\<``, ``\\>`` and
``\\\\`` stand for the literal characters.

Supported attributes: ``font`` (a template font key), ``size`` (pixels),
``scale`` (multiplier of the enclosing size) and ``color``.
"""

import re
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional

from cardsmith.errors import MarkupError
from cardsmith.template import TextStyle, parse_color


_ATTR = re.compile(r'\s*([a-z][a-z0-9-]*)\s*=\s*"((?:[^"\\]|\\.)*)"')
_TAG_NAME = re.compile(r'\s*span\b')
_ESCAPABLE = '<>\\'

MAX_SPAN_SIZE = 1000


@dataclass(frozen=True)
class Span:
    """A piece of text with fully resolved style."""
    text: str
    font: str
    size: int
    color: str

    def same_style(self, other: 'Span') -> bool:
        return (self.font, self.size, self.color) == (other.font, other.size, other.color)


def escape_markup(text) -> str:
    """Escape a value so it renders literally inside a markup region."""
    return re.sub(r'([<>\\])', r'\\\1', str(text))


class _Parser:

    def __init__(self, source: str, known_fonts: Optional[Iterable[str]]):
        self.source = source
        self.pos = 0
        self.known_fonts = set(known_fonts) if known_fonts is not None else None

    def error(self, reason: str) -> MarkupError:
        return MarkupError(reason, self.pos)

    def parse(self, base: Span) -> List[Span]:
        out: List[Span] = []
        self._content(base, out, nested=False)
        return out

    def _content(self, style: Span, out: List[Span], nested: bool) -> None:
        buf = []

        def flush():
            if buf:
                out.append(replace(style, text=''.join(buf)))
                buf.clear()

        src = self.source
        while self.pos < len(src):
            ch = src[self.pos]
            if ch == '\\' and self.pos + 1 < len(src) and src[self.pos + 1] in _ESCAPABLE:
                buf.append(src[self.pos + 1])
                self.pos += 2
            elif ch == '<':
                flush()
                self.pos += 1
                self._span(style, out)
            elif ch == '>':
                if not nested:
                    raise self.error("'>' without an open span")
                flush()
                self.pos += 1
                return
            else:
                buf.append(ch)
                self.pos += 1

        flush()
        if nested:
            raise self.error("span is never closed with '>'")

    def _span(self, style: Span, out: List[Span]) -> None:
        match = _TAG_NAME.match(self.source, self.pos)
        if match is None:
            raise self.error("expected 'span' after '<'")
        self.pos = match.end()

        while True:
            while self.pos < len(self.source) and self.source[self.pos].isspace():
                self.pos += 1
            if self.source.startswith('/', self.pos):
                self.pos += 1
                break
            match = _ATTR.match(self.source, self.pos)
            if match is None:
                raise self.error('expected key="value" or \'/\'')
            style = self._apply(style, match.group(1), re.sub(r'\\(.)', r'\1', match.group(2)))
            self.pos = match.end()

        self._content(style, out, nested=True)

    def _apply(self, style: Span, key: str, value: str) -> Span:
        if key == 'font':
            if self.known_fonts is not None and value not in self.known_fonts:
                raise self.error(f"unknown font '{value}'")
            return replace(style, font=value)
        if key == 'size':
            try:
                size = int(value)
            except ValueError:
                raise self.error(f"size must be a whole number of pixels, got {value!r}")
            if not 0 < size <= MAX_SPAN_SIZE:
                raise self.error(f"size must be between 1 and {MAX_SPAN_SIZE}")
            return replace(style, size=size)
        if key == 'scale':
            try:
                factor = float(value)
            except ValueError:
                raise self.error(f"scale must be a number, got {value!r}")
            if not 0 < factor <= 100:
                raise self.error("scale must be above 0 and at most 100")
            return replace(style, size=min(MAX_SPAN_SIZE, max(1, round(style.size * factor))))
        if key == 'color':
            try:
                parse_color(value)
            except ValueError:
                raise self.error(f"invalid colour {value!r}")
            return replace(style, color=value)
        raise self.error(f"unsupported span attribute '{key}'")


def parse_markup(text: str, style: TextStyle, known_fonts: Optional[Iterable[str]] = None) -> List[Span]:
    """
    Parse marked-up text into styled spans.

    Unstyled text inherits the region style. Adjacent spans with the same
    style are merged and empty spans dropped.
    """
    base = Span("", style.font, style.size, style.color)
    spans: List[Span] = []
    for span in _Parser(text, known_fonts).parse(base):
        if not span.text:
            continue
        if spans and spans[-1].same_style(span):
            spans[-1] = replace(spans[-1], text=spans[-1].text + span.text)
        else:
            spans.append(span)
    return spans


def plain_text(spans: Iterable[Span]) -> str:
    return ''.join(span.text for span in spans)
