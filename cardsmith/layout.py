"""
Layout resolver for Cardsmith.

This module handles:
- Binding every template region to a concrete value for one row
  (literal, field lookup or script call)
- Fallbacks for missing values and kind checks for script results
- Materializing region content: shaped text, decoded images, shape fills
- Applying the missing asset policy when a region fails
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple, Union

from loguru import logger
from PIL import Image

from cardsmith.assets import AssetStore
from cardsmith.config import RenderSettings, get_config
from cardsmith.errors import RegionError, RenderError, RowDataError, ScriptRuntimeError, ScriptTypeMismatchError
from cardsmith.fonts import FontCache
from cardsmith.scripts import JinjaScriptEngine, ScriptEngine
from cardsmith.shaping import GlyphLayout, shape
from cardsmith.template import Region, RegionKind, Template, parse_color, validate_template
from cardsmith.values import DataRow, ImagePath, MISSING, format_value, is_missing, value_kind


ABORT = 'abort'
PLACEHOLDER = 'placeholder'
REJECT = 'reject'
COERCE = 'coerce'


class RenderContext:
    """
    Shared, read-mostly resources for every render task of a batch.

    Holds the font and asset caches, the script engine and the failure
    policies. One context is created per batch and passed explicitly to
    each task.
    """

    def __init__(self,
                 fonts: FontCache,
                 assets: AssetStore,
                 engine: Optional[ScriptEngine] = None,
                 missing_asset_policy: str = ABORT,
                 kind_mismatch_policy: str = REJECT,
                 strict_overflow: bool = True,
                 output_format: str = 'PNG'):
        if missing_asset_policy not in (ABORT, PLACEHOLDER):
            raise ValueError(f"Unknown missing asset policy: {missing_asset_policy}")
        if kind_mismatch_policy not in (REJECT, COERCE):
            raise ValueError(f"Unknown kind mismatch policy: {kind_mismatch_policy}")
        self.fonts = fonts
        self.assets = assets
        self.engine = engine
        self.missing_asset_policy = missing_asset_policy
        self.kind_mismatch_policy = kind_mismatch_policy
        self.strict_overflow = strict_overflow
        self.output_format = output_format
        self._owns_engine = False

    @classmethod
    def from_settings(cls,
                      template: Template,
                      settings: Optional[RenderSettings] = None,
                      engine: Optional[ScriptEngine] = None,
                      cancel_event: Optional[threading.Event] = None) -> 'RenderContext':
        """Build caches and a script engine for one template from settings."""
        settings = settings or get_config()
        fonts = FontCache(template.fonts, settings.FONT_DIRS)
        assets = AssetStore(
            settings.ASSET_ROOT,
            artwork_folder=settings.ARTWORK_FOLDER,
            extensions=settings.ARTWORK_EXTENSIONS,
            placeholder=settings.PLACEHOLDER_IMAGE,
        )
        owns_engine = engine is None
        if engine is None:
            engine = JinjaScriptEngine.from_settings(template.scripts, settings, cancel_event=cancel_event)
        context = cls(
            fonts,
            assets,
            engine=engine,
            missing_asset_policy=settings.MISSING_ASSET_POLICY,
            kind_mismatch_policy=settings.KIND_MISMATCH_POLICY,
            strict_overflow=settings.STRICT_OVERFLOW,
            output_format=settings.OUTPUT_FORMAT,
        )
        context._owns_engine = owns_engine
        return context

    def validate(self, template: Template) -> None:
        """Check the template against the scripts and fonts this context provides."""
        known_scripts = getattr(self.engine, 'names', ()) if self.engine is not None else ()
        validate_template(template, known_scripts=known_scripts, known_fonts=self.fonts.keys)

    def close(self) -> None:
        if self._owns_engine and hasattr(self.engine, 'close'):
            self.engine.close()


@dataclass(frozen=True)
class ResolvedText:
    region: Region
    text: str
    layout: GlyphLayout


@dataclass(frozen=True)
class ResolvedImage:
    region: Region
    image: Image.Image = field(compare=False)
    source: str


@dataclass(frozen=True)
class ResolvedShape:
    region: Region
    fill: Optional[str]


@dataclass(frozen=True)
class ResolvedPlaceholder:
    """Stand-in for a region whose content failed under the placeholder policy."""
    region: Region
    error: RegionError = field(compare=False)


ResolvedRegion = Union[ResolvedText, ResolvedImage, ResolvedShape, ResolvedPlaceholder]


@dataclass(frozen=True)
class ResolvedCard:
    """Per-row content for every region, in template order."""
    row_index: Optional[int]
    regions: Tuple[ResolvedRegion, ...]
    absorbed: Tuple[RegionError, ...] = field(default=(), compare=False)

    def __len__(self) -> int:
        return len(self.regions)

    def __iter__(self):
        return iter(self.regions)

    def get(self, region_id: str) -> ResolvedRegion:
        for resolved in self.regions:
            if resolved.region.id == region_id:
                return resolved
        raise KeyError(region_id)


_EXPECTED = {
    RegionKind.TEXT: "text",
    RegionKind.IMAGE: "image path",
    RegionKind.SHAPE: "colour text",
}


def _accepts(kind: RegionKind, value: Any) -> bool:
    if kind == RegionKind.TEXT:
        return not isinstance(value, ImagePath)
    return isinstance(value, str)


def bind_value(region: Region, row: DataRow, engine: Optional[ScriptEngine]) -> Any:
    """
    Produce the raw value for a region, applying its fallback.

    Returns MISSING only for unbound shapes.
    """
    binding = region.binding
    if binding is None:
        return MISSING

    if binding.mode == 'literal':
        return binding.literal

    if binding.mode == 'field':
        value = row.lookup(binding.field)
        source = binding.field
    else:
        if engine is None:
            raise RowDataError(binding.script, region.id, reason="bound to a script but no script engine is available")
        try:
            value = engine.evaluate(binding.script, row)
        except RegionError as e:
            raise e.for_region(region.id)
        source = binding.script

    if is_missing(value):
        if region.fallback is not None:
            logger.debug(f"Region {region.id}: '{source}' missing, using fallback")
            return region.fallback
        if binding.mode == 'field':
            raise RowDataError(binding.field, region.id)
        raise RowDataError(source, region.id, reason="missing (script returned no value)")
    return value


def coerce_for_kind(region: Region, value: Any, policy: str = REJECT) -> Any:
    """
    Check a bound value against the region kind.

    Numbers and booleans are always accepted by text regions and
    stringified canonically. Other mismatches raise under ``reject`` and
    are stringified under ``coerce``.
    """
    kind = region.kind
    if kind == RegionKind.SHAPE and is_missing(value):
        return value

    if not _accepts(kind, value):
        binding = region.binding
        if policy == REJECT:
            if binding is not None and binding.mode == 'script':
                raise ScriptTypeMismatchError(binding.script, _EXPECTED[kind], value_kind(value), region_id=region.id)
            name = binding.field if binding is not None and binding.field is not None else region.id
            raise RowDataError(name, region.id, reason=f"{value_kind(value)}, expected {_EXPECTED[kind]}")
        logger.debug(f"Region {region.id}: coercing {value_kind(value)} to {_EXPECTED[kind]}")

    try:
        text = format_value(value)
    except ValueError as e:
        binding = region.binding
        if binding is not None and binding.mode == 'script':
            raise ScriptRuntimeError(binding.script, f"result cannot be formatted: {e}", region_id=region.id) from e
        name = binding.field if binding is not None and binding.field is not None else region.id
        raise RowDataError(name, region.id, reason=f"not formattable ({e})") from e

    if kind == RegionKind.IMAGE:
        return ImagePath(text)
    return text


def _materialize(region: Region, value: Any, context: RenderContext) -> ResolvedRegion:
    if region.kind == RegionKind.TEXT:
        layout = shape(value, region.geometry.size, region.style, context.fonts,
                       strict=context.strict_overflow, region_id=region.id)
        return ResolvedText(region, value, layout)

    if region.kind == RegionKind.IMAGE:
        try:
            path, image = context.assets.open(value)
        except RegionError as e:
            raise e.for_region(region.id)
        return ResolvedImage(region, image, str(path))

    if is_missing(value):
        return ResolvedShape(region, region.style.fill)
    try:
        parse_color(value)
    except ValueError:
        raise RowDataError(region.binding.field or region.binding.script or region.id, region.id,
                           reason=f"not a colour: {value!r}")
    return ResolvedShape(region, value)


def resolve_region(region: Region, row: DataRow, context: RenderContext) -> ResolvedRegion:
    """Resolve and materialize a single region."""
    value = bind_value(region, row, context.engine)
    value = coerce_for_kind(region, value, context.kind_mismatch_policy)
    return _materialize(region, value, context)


def resolve(template: Template, row: DataRow, context: RenderContext, row_index: Optional[int] = None) -> ResolvedCard:
    """
    Resolve every region of a template against one row.

    All regions are attempted so the resulting RenderError reports every
    failing region at once. Under the placeholder policy region failures
    are absorbed into the card instead.
    """
    if not isinstance(row, DataRow):
        row = DataRow(row)

    resolved = []
    errors = []
    for region in template.regions:
        try:
            resolved.append(resolve_region(region, row, context))
        except RegionError as e:
            if e.region_id is None:
                e.for_region(region.id)
            errors.append(e)
            if context.missing_asset_policy == PLACEHOLDER:
                logger.warning(f"Row {row_index}: region {region.id} replaced by placeholder: {e.message}")
                resolved.append(ResolvedPlaceholder(region, e))

    if errors and context.missing_asset_policy == ABORT:
        raise RenderError.from_region_errors(errors, row_index=row_index)

    logger.debug(f"Row {row_index}: resolved {len(resolved)} regions")
    return ResolvedCard(row_index, tuple(resolved), tuple(errors))
