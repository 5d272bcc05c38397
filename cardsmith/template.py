"""
Template model for Cardsmith.

A template declares the canvas and an ordered list of regions. The order
of the regions is the paint order. Templates are immutable once built and
are shared read-only by every render task of a batch.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import yaml
from loguru import logger
from PIL import ImageColor
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from cardsmith.errors import TemplateError


class RegionKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    SHAPE = "shape"


class FitMode(str, Enum):
    STRETCH = "stretch"
    CONTAIN = "contain"
    COVER = "cover"
    NONE = "none"


class Align(str, Enum):
    START = "start"
    CENTER = "center"
    END = "end"
    JUSTIFY = "justify"


class VAlign(str, Enum):
    TOP = "top"
    MIDDLE = "middle"
    BOTTOM = "bottom"


class WrapMode(str, Enum):
    WORD = "word"
    CHAR = "char"
    NONE = "none"


class Overflow(str, Enum):
    SHRINK = "shrink"
    CLIP = "clip"
    ERROR = "error"


class ShapeType(str, Enum):
    RECTANGLE = "rectangle"
    ROUNDED = "rounded"
    ELLIPSE = "ellipse"
    LINE = "line"


class BlendMode(str, Enum):
    NORMAL = "normal"
    MULTIPLY = "multiply"
    SCREEN = "screen"
    OVERLAY = "overlay"


def parse_color(value: str) -> Tuple[int, int, int, int]:
    """Parse a colour string (#RRGGBB, #RRGGBBAA or a CSS name) to RGBA."""
    rgb = ImageColor.getrgb(value)
    if len(rgb) == 3:
        return (rgb[0], rgb[1], rgb[2], 255)
    return tuple(rgb)


def _check_color(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        parse_color(value)
    except ValueError:
        raise ValueError(f"invalid colour {value!r}")
    return value


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra='forbid')


class Geometry(_Frozen):
    """Region box on the canvas, in pixels."""
    x: int
    y: int
    w: int = Field(gt=0)
    h: int = Field(gt=0)
    rotation: float = 0.0  # degrees, counter-clockwise about the box centre

    @property
    def size(self) -> Tuple[int, int]:
        return (self.w, self.h)

    @property
    def box(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.w, self.y + self.h)


class Stroke(_Frozen):
    width: int = Field(default=1, ge=0)
    color: str = "#000000"

    check_color = field_validator('color')(_check_color)


class Binding(_Frozen):
    """Exactly one of literal, field or script."""
    literal: Optional[Union[bool, int, float, str]] = None
    field: Optional[str] = None
    script: Optional[str] = None

    @model_validator(mode='after')
    def check_one_source(self):
        chosen = [name for name in ('literal', 'field', 'script') if getattr(self, name) is not None]
        if len(chosen) != 1:
            raise ValueError(f"binding needs exactly one of literal/field/script, got {chosen or 'none'}")
        return self

    @property
    def mode(self) -> str:
        if self.literal is not None:
            return 'literal'
        if self.field is not None:
            return 'field'
        return 'script'


class TextStyle(_Frozen):
    font: str = "default"
    size: int = Field(default=24, gt=0)
    min_size: int = Field(default=8, gt=0)
    color: str = "#000000"
    line_spacing: float = Field(default=1.2, gt=0)
    align: Align = Align.START
    valign: VAlign = VAlign.TOP
    wrap: WrapMode = WrapMode.WORD
    overflow: Overflow = Overflow.SHRINK
    stroke: Optional[Stroke] = None
    opacity: float = Field(default=1.0, ge=0, le=1)
    blend: BlendMode = BlendMode.NORMAL
    direction: Optional[str] = None  # rtl/ltr/ttb, needs libraqm
    language: Optional[str] = None
    markup: bool = False

    check_color = field_validator('color')(_check_color)

    @model_validator(mode='after')
    def check_sizes(self):
        if self.min_size > self.size:
            raise ValueError(f"min_size {self.min_size} larger than size {self.size}")
        return self


class ImageStyle(_Frozen):
    fit: FitMode = FitMode.COVER
    opacity: float = Field(default=1.0, ge=0, le=1)
    blend: BlendMode = BlendMode.NORMAL
    stroke: Optional[Stroke] = None


class ShapeStyle(_Frozen):
    shape: ShapeType = ShapeType.RECTANGLE
    fill: Optional[str] = "#000000"
    stroke: Optional[Stroke] = None
    radius: int = Field(default=0, ge=0)
    opacity: float = Field(default=1.0, ge=0, le=1)
    blend: BlendMode = BlendMode.NORMAL

    check_fill = field_validator('fill')(_check_color)


STYLE_TYPES = {
    RegionKind.TEXT: TextStyle,
    RegionKind.IMAGE: ImageStyle,
    RegionKind.SHAPE: ShapeStyle,
}


class Region(_Frozen):
    """One declared layout slot."""
    id: str = Field(min_length=1)
    kind: RegionKind
    geometry: Geometry
    binding: Optional[Binding] = None
    fallback: Optional[Union[bool, int, float, str]] = None
    style: Union[TextStyle, ImageStyle, ShapeStyle]

    @model_validator(mode='before')
    @classmethod
    def style_for_kind(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        try:
            kind = RegionKind(data.get('kind'))
        except ValueError:
            return data  # reported by field validation
        style = data.get('style')
        style_type = STYLE_TYPES[kind]
        if style is None:
            data['style'] = style_type()
        elif isinstance(style, dict):
            data['style'] = style_type(**style)
        return data

    @model_validator(mode='after')
    def check_binding_for_kind(self):
        if not isinstance(self.style, STYLE_TYPES[self.kind]):
            raise ValueError(f"region {self.id}: style does not match kind {self.kind.value}")
        if self.binding is None and self.kind != RegionKind.SHAPE:
            raise ValueError(f"region {self.id}: {self.kind.value} regions need a binding")
        return self


class Canvas(_Frozen):
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    background: str = "#FFFFFFFF"

    check_background = field_validator('background')(_check_color)

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)


class Template(_Frozen):
    """Immutable card template."""
    name: str = "template"
    canvas: Canvas
    fonts: Dict[str, str] = Field(default_factory=dict)
    scripts: Dict[str, str] = Field(default_factory=dict)
    regions: Tuple[Region, ...] = ()

    @model_validator(mode='after')
    def check_unique_ids(self):
        seen = set()
        for region in self.regions:
            if region.id in seen:
                raise ValueError(f"duplicate region id: {region.id}")
            seen.add(region.id)
        return self

    def region(self, region_id: str) -> Region:
        for region in self.regions:
            if region.id == region_id:
                return region
        raise KeyError(region_id)

    @property
    def script_names(self) -> Tuple[str, ...]:
        return tuple(r.binding.script for r in self.regions if r.binding and r.binding.script is not None)


def build_template(data: Dict[str, Any]) -> Template:
    """Build a template from a plain mapping, raising TemplateError on invalid input."""
    try:
        return Template(**data)
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise TemplateError(
            f"Invalid template: {len(problems)} problem(s)",
            details={'problems': problems},
            suggestions=["Fix the listed template fields and re-run the batch"]
        ) from e
    except TypeError as e:
        raise TemplateError(f"Invalid template: {e}") from e


def validate_template(template: Template, known_scripts: Iterable[str] = (), known_fonts: Iterable[str] = ()) -> None:
    """
    Cross-check a template against the scripts and fonts available to a batch.

    Structural validation happens when the template is built; this checks
    references that can only be resolved once the environment is known.
    """
    if not isinstance(template, Template):
        raise TemplateError(f"Expected a Template, got {type(template).__name__}")

    problems = []
    scripts = set(known_scripts) | set(template.scripts)
    fonts = set(known_fonts) | set(template.fonts) | {"default"}

    for region in template.regions:
        if region.binding and region.binding.script is not None and region.binding.script not in scripts:
            problems.append(f"regions.{region.id}: unknown script '{region.binding.script}'")
        if isinstance(region.style, TextStyle) and region.style.font not in fonts:
            problems.append(f"regions.{region.id}: unknown font '{region.style.font}'")

    if problems:
        raise TemplateError(
            f"Template '{template.name}' references undefined resources",
            details={'problems': problems},
            suggestions=["Declare every script and font the regions reference"]
        )
    logger.debug(f"Template '{template.name}' validated: {len(template.regions)} regions")


def load_template(path: Union[str, Path], scripts_path: Optional[Union[str, Path]] = None) -> Template:
    """
    Load a template document from YAML.

    Font paths are resolved relative to the template file. An optional
    scripts file (YAML mapping name -> expression) extends the template's
    own scripts table.
    """
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise TemplateError(f"Failed to open template {path}: {e}", details={'path': str(path)}) from e

    if not isinstance(data, dict):
        raise TemplateError(f"Template {path} must be a mapping", details={'path': str(path)})

    fonts = data.get('fonts') or {}
    data['fonts'] = {key: str((path.parent / font).resolve()) for key, font in fonts.items()}
    data.setdefault('name', path.parent.name or path.stem)

    if scripts_path is not None:
        scripts_path = Path(scripts_path)
        try:
            with open(scripts_path, 'r', encoding='utf-8') as f:
                extra = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise TemplateError(f"Failed to open scripts {scripts_path}: {e}") from e
        data['scripts'] = {**(data.get('scripts') or {}), **extra}

    template = build_template(data)
    logger.info(f"Loaded template '{template.name}' from {path} ({len(template.regions)} regions)")
    return template
