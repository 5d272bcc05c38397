"""
Text shaping: line breaking, overflow handling and alignment.

The shaper turns a string into a GlyphLayout: a list of positioned text
runs relative to the region box. Complex-script shaping (bidi, ligatures)
is left to Pillow's Raqm layout when available; the decisions about where
lines break and what happens when text does not fit are made here.

Shaping is deterministic: the same text, box, style and font files always
produce an equal GlyphLayout with the same fingerprint.
"""

import hashlib
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple

from loguru import logger
from PIL import ImageFont, features

from cardsmith.errors import ShapingError
from cardsmith.fonts import FontCache
from cardsmith.markup import Span, parse_markup, plain_text
from cardsmith.template import Align, Overflow, TextStyle, VAlign, WrapMode


Measure = Callable[[str], float]

_RAQM = features.check_feature("raqm")


@dataclass(frozen=True)
class GlyphRun:
    """
    A piece of text drawn at one position, relative to the box origin.

    Runs of marked-up text carry their own font, size and colour and are
    placed on a shared baseline; plain runs use the region style.
    """
    text: str
    x: float
    y: float
    width: float
    font_key: Optional[str] = None
    font_size: Optional[int] = None
    color: Optional[str] = None
    baseline: Optional[float] = None


@dataclass(frozen=True)
class ShapedLine:
    text: str
    x: float
    y: float
    width: float
    runs: Tuple[GlyphRun, ...]


@dataclass(frozen=True)
class GlyphLayout:
    text: str
    box: Tuple[int, int]
    font_key: str
    font_size: int
    ascent: int
    descent: int
    line_height: float
    lines: Tuple[ShapedLine, ...]
    overflowed: bool = False
    dropped_lines: int = 0
    block_height: Optional[float] = None

    @property
    def shaped_text(self) -> str:
        return "\n".join(line.text for line in self.lines)

    @property
    def height(self) -> float:
        if self.block_height is not None:
            return self.block_height
        if not self.lines:
            return 0.0
        return (len(self.lines) - 1) * self.line_height + self.ascent + self.descent

    def fingerprint(self) -> str:
        """Stable digest of the glyph placement, for snapshot comparisons."""
        return hashlib.sha256(repr(self).encode('utf-8')).hexdigest()


def _measure_for(font: ImageFont.FreeTypeFont, style: TextStyle) -> Measure:
    kwargs = {}
    if _RAQM:
        if style.direction:
            kwargs['direction'] = style.direction
        if style.language:
            kwargs['language'] = style.language

    def measure(text: str) -> float:
        if not text:
            return 0.0
        return float(font.getlength(text, **kwargs))

    return measure


def _break_chars(text: str, measure: Measure, max_width: float) -> List[str]:
    """Greedy character wrap; every line holds at least one character."""
    pieces = []
    current = ""
    for char in text:
        candidate = current + char
        if current and measure(candidate) > max_width:
            pieces.append(current)
            current = char
        else:
            current = candidate
    pieces.append(current)
    return pieces


def wrap_text(text: str, measure: Measure, max_width: float, mode: WrapMode) -> List[Tuple[str, bool]]:
    """
    Break text into lines no wider than max_width.

    Returns (line, ends_paragraph) pairs. Explicit newlines always break.
    Word wrap collapses runs of whitespace and hard-splits words that are
    wider than the box on their own.
    """
    lines: List[Tuple[str, bool]] = []
    for paragraph in text.split("\n"):
        if mode == WrapMode.NONE:
            out = [paragraph]
        elif mode == WrapMode.CHAR:
            out = _break_chars(paragraph, measure, max_width) if paragraph else [""]
        else:
            out = []
            current = ""
            for word in paragraph.split():
                candidate = f"{current} {word}" if current else word
                if measure(candidate) <= max_width:
                    current = candidate
                    continue
                if current:
                    out.append(current)
                    current = ""
                if measure(word) <= max_width:
                    current = word
                else:
                    pieces = _break_chars(word, measure, max_width)
                    out.extend(pieces[:-1])
                    current = pieces[-1]
            out.append(current)
        lines.extend((line, i == len(out) - 1) for i, line in enumerate(out))
    return lines


def _line_x(align: Align, line_width: float, box_width: int, rtl: bool) -> float:
    if align == Align.CENTER:
        return (box_width - line_width) / 2
    if (align == Align.END) != rtl:
        return box_width - line_width
    return 0.0


def _place_line(text: str, ends_paragraph: bool, y: float, measure: Measure,
                style: TextStyle, box_width: int, rtl: bool) -> ShapedLine:
    width = measure(text)
    words = text.split(" ")
    if style.align == Align.JUSTIFY and not ends_paragraph and len(words) > 1:
        widths = [measure(word) for word in words]
        gap = (box_width - sum(widths)) / (len(words) - 1)
        runs = []
        x = 0.0
        for word, word_width in zip(words, widths):
            runs.append(GlyphRun(word, x, y, word_width))
            x += word_width + gap
        if rtl:
            runs = [GlyphRun(r.text, box_width - r.x - r.width, y, r.width) for r in runs]
        return ShapedLine(text, 0.0, y, float(box_width), tuple(runs))

    align = Align.START if style.align == Align.JUSTIFY else style.align
    x = _line_x(align, width, box_width, rtl)
    return ShapedLine(text, x, y, width, (GlyphRun(text, x, y, width),))


def _fits(lines: List[Tuple[str, bool]], measure: Measure, box: Tuple[int, int],
          metrics: Tuple[int, int], line_height: float) -> bool:
    ascent, descent = metrics
    block = (len(lines) - 1) * line_height + ascent + descent if lines else 0
    if block > box[1]:
        return False
    return all(measure(line) <= box[0] for line, _ in lines)


Atom = Tuple[str, int]


class _SpanMetrics:
    """Fonts and measurements of every span at one shrink step."""

    def __init__(self, spans: List[Span], fonts: FontCache, style: TextStyle, scale: float):
        self.sizes = [max(1, round(span.size * scale)) for span in spans]
        loaded = [fonts.get(span.font, size) for span, size in zip(spans, self.sizes)]
        self.measures = [_measure_for(font, style) for font in loaded]
        self.metrics = [font.getmetrics() for font in loaded]

    def width(self, atoms: List[Atom]) -> float:
        return sum(self.measures[index](text) for text, index in _group(atoms))

    def line_metrics(self, atoms: List[Atom], fallback: Tuple[int, int]) -> Tuple[int, int]:
        indexes = {index for _, index in atoms}
        if not indexes:
            return fallback
        return max(self.metrics[i][0] for i in indexes), max(self.metrics[i][1] for i in indexes)


def _group(atoms: List[Atom], split_spaces: bool = False) -> List[Tuple[str, int]]:
    """Merge consecutive characters of the same span into runs."""
    groups: List[Tuple[str, int]] = []
    for char, index in atoms:
        if groups and groups[-1][1] == index and not (
                split_spaces and (char.isspace() or groups[-1][0][-1].isspace())):
            groups[-1] = (groups[-1][0] + char, index)
        else:
            groups.append((char, index))
    return groups


def _break_atoms(atoms: List[Atom], width: Callable[[List[Atom]], float], max_width: float) -> List[List[Atom]]:
    pieces = []
    current: List[Atom] = []
    for atom in atoms:
        candidate = current + [atom]
        if current and width(candidate) > max_width:
            pieces.append(current)
            current = [atom]
        else:
            current = candidate
    pieces.append(current)
    return pieces


def _split_words(atoms: List[Atom]) -> List[Tuple[Optional[Atom], List[Atom]]]:
    """Words with the (single, normalised) space that precedes them."""
    words = []
    current: List[Atom] = []
    space = None
    for char, index in atoms:
        if char.isspace():
            if current:
                words.append((space, current))
                current = []
                space = None
            if space is None:
                space = (' ', index)
        else:
            current.append((char, index))
    if current:
        words.append((space, current))
    return words


def wrap_atoms(atoms: List[Atom], width: Callable[[List[Atom]], float],
               max_width: float, mode: WrapMode) -> List[Tuple[List[Atom], bool]]:
    """Line breaking for styled text; same rules as wrap_text."""
    paragraphs: List[List[Atom]] = [[]]
    for atom in atoms:
        if atom[0] == "\n":
            paragraphs.append([])
        else:
            paragraphs[-1].append(atom)

    lines: List[Tuple[List[Atom], bool]] = []
    for paragraph in paragraphs:
        if mode == WrapMode.NONE:
            out = [paragraph]
        elif mode == WrapMode.CHAR:
            out = _break_atoms(paragraph, width, max_width) if paragraph else [[]]
        else:
            out = []
            current: List[Atom] = []
            for space, word in _split_words(paragraph):
                candidate = current + [space] + word if current and space else current + word
                if width(candidate) <= max_width:
                    current = candidate
                    continue
                if current:
                    out.append(current)
                    current = []
                if width(word) <= max_width:
                    current = word
                else:
                    pieces = _break_atoms(word, width, max_width)
                    out.extend(pieces[:-1])
                    current = pieces[-1]
            out.append(current)
        lines.extend((line, i == len(out) - 1) for i, line in enumerate(out))
    return lines


def _place_markup_line(atoms: List[Atom], ends_paragraph: bool, top: float, metrics: Tuple[int, int],
                       spans: List[Span], sm: _SpanMetrics, style: TextStyle, box_width: int,
                       rtl: bool) -> ShapedLine:
    justify = style.align == Align.JUSTIFY and not ends_paragraph and any(c.isspace() for c, _ in atoms)
    groups = _group(atoms, split_spaces=justify)
    widths = [sm.measures[index](text) for text, index in groups]
    natural = sum(widths)

    if justify:
        gaps = sum(1 for text, _ in groups if text.isspace())
        extra = (box_width - natural) / gaps
        x0, line_width = 0.0, float(box_width)
    else:
        extra = 0.0
        align = Align.START if style.align == Align.JUSTIFY else style.align
        x0, line_width = _line_x(align, natural, box_width, rtl), natural

    runs = []
    x = x0
    baseline = top + metrics[0]
    for (text, index), width in zip(groups, widths):
        if justify and text.isspace():
            x += width + extra
            continue
        span = spans[index]
        runs.append(GlyphRun(text, x, top, width, span.font, sm.sizes[index], span.color, baseline))
        x += width
    if justify and rtl:
        runs = [replace(run, x=box_width - run.x - run.width) for run in runs]

    return ShapedLine("".join(c for c, _ in atoms), x0, top, line_width, tuple(runs))


def _stack(metrics: List[Tuple[int, int]], line_spacing: float) -> List[float]:
    tops = []
    y = 0.0
    for ascent, descent in metrics:
        tops.append(y)
        y += (ascent + descent) * line_spacing
    return tops


def _shape_markup(text: str, box: Tuple[int, int], style: TextStyle, fonts: FontCache,
                  strict: bool, region_id: Optional[str]) -> GlyphLayout:
    box_width, box_height = box
    rtl = style.direction == 'rtl'
    spans = parse_markup(text, style, fonts.keys)
    atoms = [(char, index) for index, span in enumerate(spans) for char in span.text]
    size = style.size

    while True:
        sm = _SpanMetrics(spans, fonts, style, size / style.size)
        base = fonts.get(style.font, size).getmetrics()
        lines = wrap_atoms(atoms, sm.width, box_width, style.wrap)
        metrics = [sm.line_metrics(line, base) for line, _ in lines]
        tops = _stack(metrics, style.line_spacing)
        block = tops[-1] + sum(metrics[-1])
        fits = block <= box_height and all(sm.width(line) <= box_width for line, _ in lines)
        if fits or style.overflow != Overflow.SHRINK or size <= style.min_size:
            break
        size -= 1

    plain = plain_text(spans)
    if not fits and style.overflow == Overflow.ERROR and strict:
        raise ShapingError(plain, box, region_id=region_id)

    kept = len(lines)
    if not fits:
        kept = 0
        while kept < len(lines) and tops[kept] + sum(metrics[kept]) <= box_height:
            kept += 1
        logger.debug(f"Text overflow in {region_id or 'region'}: kept {kept}/{len(lines)} lines at {size}px")

    block = tops[kept - 1] + sum(metrics[kept - 1]) if kept else 0.0
    if style.valign == VAlign.MIDDLE:
        offset = (box_height - block) / 2
    elif style.valign == VAlign.BOTTOM:
        offset = box_height - block
    else:
        offset = 0.0

    shaped = tuple(
        _place_markup_line(lines[i][0], lines[i][1], offset + tops[i], metrics[i], spans, sm, style, box_width, rtl)
        for i in range(kept)
    )

    return GlyphLayout(
        text=plain,
        box=(box_width, box_height),
        font_key=style.font,
        font_size=size,
        ascent=base[0],
        descent=base[1],
        line_height=(base[0] + base[1]) * style.line_spacing,
        lines=shaped,
        overflowed=not fits,
        dropped_lines=len(lines) - kept,
        block_height=block,
    )


def shape(text: str,
          box: Tuple[int, int],
          style: TextStyle,
          fonts: FontCache,
          strict: bool = True,
          region_id: Optional[str] = None) -> GlyphLayout:
    """
    Shape text into a box.

    Overflow policies: ``shrink`` steps the font size down to min_size and
    clips if the text still does not fit; ``clip`` drops lines falling
    below the box; ``error`` raises ShapingError, or clips when strict is
    False.

    With ``markup`` set the text is parsed into styled spans first; lines
    then sit on a baseline set by their tallest span.
    """
    if style.markup:
        return _shape_markup(text, box, style, fonts, strict, region_id)

    box_width, box_height = box
    rtl = style.direction == 'rtl'
    size = style.size

    while True:
        font = fonts.get(style.font, size)
        measure = _measure_for(font, style)
        metrics = font.getmetrics()
        line_height = (metrics[0] + metrics[1]) * style.line_spacing
        lines = wrap_text(text, measure, box_width, style.wrap)
        fits = _fits(lines, measure, box, metrics, line_height)
        if fits or style.overflow != Overflow.SHRINK or size <= style.min_size:
            break
        size -= 1

    if not fits and style.overflow == Overflow.ERROR and strict:
        raise ShapingError(text, box, region_id=region_id)

    ascent, descent = metrics
    kept = lines
    if not fits:
        kept = [entry for i, entry in enumerate(lines) if i * line_height + ascent + descent <= box_height]
        logger.debug(f"Text overflow in {region_id or 'region'}: kept {len(kept)}/{len(lines)} lines at {size}px")

    block = (len(kept) - 1) * line_height + ascent + descent if kept else 0
    if style.valign == VAlign.MIDDLE:
        top = (box_height - block) / 2
    elif style.valign == VAlign.BOTTOM:
        top = box_height - block
    else:
        top = 0.0

    shaped = tuple(
        _place_line(line, ends, top + i * line_height, measure, style, box_width, rtl)
        for i, (line, ends) in enumerate(kept)
    )

    return GlyphLayout(
        text=text,
        box=(box_width, box_height),
        font_key=style.font,
        font_size=size,
        ascent=ascent,
        descent=descent,
        line_height=line_height,
        lines=shaped,
        overflowed=not fits,
        dropped_lines=len(lines) - len(kept),
    )
