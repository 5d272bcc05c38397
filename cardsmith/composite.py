"""
Composite module for Cardsmith.

This module handles:
- Creating the per-card canvas
- Painting resolved regions in declaration order
- Fit modes for images, rasterizing shapes and drawing glyph layouts
- Opacity, rotation and blend modes for every region
- Encoding the finished canvas
"""

import io
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageEnhance, features
from loguru import logger

from cardsmith.assets import placeholder_image
from cardsmith.errors import CanvasError, CardsmithError
from cardsmith.fonts import FontCache
from cardsmith.layout import ResolvedCard, ResolvedImage, ResolvedPlaceholder, ResolvedRegion, ResolvedShape, ResolvedText
from cardsmith.template import BlendMode, Canvas, FitMode, RegionKind, ShapeType, Stroke, parse_color


_RAQM = features.check_feature("raqm")


def fit_image(image: Image.Image, size: Tuple[int, int], mode: FitMode,
              resample=Image.Resampling.LANCZOS) -> Tuple[Image.Image, Tuple[int, int]]:
    """
    Scale an image into a box.

    Returns the scaled image and its offset inside the box. Offsets can be
    negative for ``none``; pasting clips to the box.
    """
    box_width, box_height = size
    width, height = image.size

    if mode == FitMode.STRETCH:
        return image.resize((box_width, box_height), resample), (0, 0)

    if mode == FitMode.CONTAIN:
        scale = min(box_width / width, box_height / height)
        new_size = (max(1, round(width * scale)), max(1, round(height * scale)))
        scaled = image.resize(new_size, resample)
        return scaled, ((box_width - new_size[0]) // 2, (box_height - new_size[1]) // 2)

    if mode == FitMode.COVER:
        scale = max(box_width / width, box_height / height)
        new_size = (max(box_width, round(width * scale)), max(box_height, round(height * scale)))
        scaled = image.resize(new_size, resample)
        left = (new_size[0] - box_width) // 2
        top = (new_size[1] - box_height) // 2
        return scaled.crop((left, top, left + box_width, top + box_height)), (0, 0)

    return image, ((box_width - width) // 2, (box_height - height) // 2)


def blend_arrays(base: np.ndarray, top: np.ndarray, mode: BlendMode) -> np.ndarray:
    """
    Blend two RGBA float arrays (0..1) and composite top over base.

    Uses the separable blend formulas with source-over compositing, so
    transparent parts of the top layer leave the base untouched.
    """
    cb, ab = base[..., :3], base[..., 3:4]
    cs, as_ = top[..., :3], top[..., 3:4]

    if mode == BlendMode.MULTIPLY:
        blended = cb * cs
    elif mode == BlendMode.SCREEN:
        blended = 1 - (1 - cb) * (1 - cs)
    elif mode == BlendMode.OVERLAY:
        blended = np.where(cb < 0.5, 2 * cb * cs, 1 - 2 * (1 - cb) * (1 - cs))
    else:
        blended = cs

    mixed = (1 - ab) * cs + ab * blended
    alpha = as_ + ab * (1 - as_)
    premultiplied = as_ * mixed + ab * cb * (1 - as_)
    color = np.divide(premultiplied, alpha, out=np.zeros_like(premultiplied), where=alpha > 0)
    return np.concatenate([color, alpha], axis=-1)


class CompositeEngine:
    """Paints resolved cards onto canvases."""

    def __init__(self, fonts: FontCache, resample=Image.Resampling.LANCZOS):
        self.fonts = fonts
        self.resample = resample

    def create_canvas(self, canvas: Canvas) -> Image.Image:
        """Create a new RGBA canvas filled with the template background."""
        background = parse_color(canvas.background)
        image = Image.new('RGBA', canvas.size, background)
        logger.debug(f"Created canvas: {canvas.size} with background {background}")
        return image

    def composite(self, canvas: Image.Image, card: ResolvedCard) -> bool:
        """
        Paint every resolved region onto the canvas, in order.

        Later regions paint over earlier ones. The canvas is mutated in place.
        """
        if canvas.mode != 'RGBA':
            raise CanvasError(f"Canvas must be RGBA, got {canvas.mode}", details={'row_index': card.row_index})

        for i, resolved in enumerate(card.regions):
            region = resolved.region
            try:
                layer = self._render_region(resolved)
                if layer is None:
                    continue
                self._place_layer(canvas, layer, region.geometry, region.style.opacity, region.style.blend)
            except CardsmithError:
                raise
            except (OSError, ValueError, MemoryError) as e:
                raise CanvasError(
                    f"Failed to composite region {region.id}: {e}",
                    details={'region_id': region.id, 'row_index': card.row_index}
                ) from e
            logger.debug(f"Composited region {i + 1}/{len(card.regions)}: {region.id} ({region.kind.value})")

        return True

    def _render_region(self, resolved: ResolvedRegion) -> Optional[Image.Image]:
        """Draw one region into a layer the size of its box."""
        if isinstance(resolved, ResolvedText):
            return self._render_text(resolved)
        if isinstance(resolved, ResolvedImage):
            return self._render_image(resolved.image, resolved.region)
        if isinstance(resolved, ResolvedShape):
            return self._render_shape(resolved)
        if isinstance(resolved, ResolvedPlaceholder):
            if resolved.region.kind == RegionKind.IMAGE:
                return placeholder_image(resolved.region.geometry.size)
            return None
        raise CanvasError(f"Unknown resolved region type: {type(resolved).__name__}")

    def _render_text(self, resolved: ResolvedText) -> Optional[Image.Image]:
        layout = resolved.layout
        if not layout.lines:
            return None
        style = resolved.region.style
        layer = Image.new('RGBA', resolved.region.geometry.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        font = self.fonts.get(layout.font_key, layout.font_size)

        kwargs = {}
        if style.stroke is not None and style.stroke.width > 0:
            kwargs['stroke_width'] = style.stroke.width
            kwargs['stroke_fill'] = parse_color(style.stroke.color)
        if _RAQM:
            if style.direction:
                kwargs['direction'] = style.direction
            if style.language:
                kwargs['language'] = style.language

        fill = parse_color(style.color)
        for line in layout.lines:
            for run in line.runs:
                if run.font_key is None:
                    draw.text((run.x, run.y), run.text, font=font, fill=fill, anchor='la', **kwargs)
                else:
                    draw.text((run.x, run.baseline), run.text, font=self.fonts.get(run.font_key, run.font_size),
                              fill=parse_color(run.color), anchor='ls', **kwargs)
        return layer

    def _render_image(self, image: Image.Image, region) -> Image.Image:
        size = region.geometry.size
        style = region.style
        fitted, offset = fit_image(image, size, style.fit, self.resample)
        layer = Image.new('RGBA', size, (0, 0, 0, 0))
        layer.paste(fitted, offset)

        if style.stroke is not None and style.stroke.width > 0:
            left = max(0, offset[0])
            top = max(0, offset[1])
            right = min(size[0], offset[0] + fitted.width) - 1
            bottom = min(size[1], offset[1] + fitted.height) - 1
            ImageDraw.Draw(layer).rectangle(
                [left, top, right, bottom],
                outline=parse_color(style.stroke.color),
                width=style.stroke.width
            )
        return layer

    def _render_shape(self, resolved: ResolvedShape) -> Image.Image:
        style = resolved.region.style
        width, height = resolved.region.geometry.size
        layer = Image.new('RGBA', (width, height), (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)

        fill = parse_color(resolved.fill) if resolved.fill else None
        stroke: Optional[Stroke] = style.stroke
        outline = parse_color(stroke.color) if stroke is not None and stroke.width > 0 else None
        stroke_width = stroke.width if outline is not None else 0
        bounds = [0, 0, width - 1, height - 1]

        if style.shape == ShapeType.RECTANGLE:
            draw.rectangle(bounds, fill=fill, outline=outline, width=stroke_width)
        elif style.shape == ShapeType.ROUNDED:
            radius = min(style.radius, width // 2, height // 2)
            draw.rounded_rectangle(bounds, radius=radius, fill=fill, outline=outline, width=stroke_width)
        elif style.shape == ShapeType.ELLIPSE:
            draw.ellipse(bounds, fill=fill, outline=outline, width=stroke_width)
        else:
            # Lines run along the longer axis of the box, through its centre
            color = outline or fill
            if width >= height:
                line_width = stroke_width or height
                draw.line([(0, height // 2), (width - 1, height // 2)], fill=color, width=line_width)
            else:
                line_width = stroke_width or width
                draw.line([(width // 2, 0), (width // 2, height - 1)], fill=color, width=line_width)
        return layer

    def _place_layer(self, canvas: Image.Image, layer: Image.Image, geometry,
                     opacity: float = 1.0, blend: BlendMode = BlendMode.NORMAL) -> None:
        """Apply opacity and rotation to a layer and composite it, clipped to the canvas."""
        if opacity < 1.0:
            alpha = ImageEnhance.Brightness(layer.getchannel('A')).enhance(opacity)
            layer.putalpha(alpha)

        left, top = geometry.x, geometry.y
        if geometry.rotation:
            layer = layer.rotate(geometry.rotation, resample=Image.Resampling.BICUBIC, expand=True)
            left = round(geometry.x + geometry.w / 2 - layer.width / 2)
            top = round(geometry.y + geometry.h / 2 - layer.height / 2)

        box = (max(0, left), max(0, top), min(canvas.width, left + layer.width), min(canvas.height, top + layer.height))
        if box[0] >= box[2] or box[1] >= box[3]:
            return
        layer = layer.crop((box[0] - left, box[1] - top, box[2] - left, box[3] - top))

        if blend == BlendMode.NORMAL:
            canvas.alpha_composite(layer, dest=(box[0], box[1]))
            return

        base = np.asarray(canvas.crop(box), dtype=np.float32) / 255.0
        top_layer = np.asarray(layer, dtype=np.float32) / 255.0
        result = blend_arrays(base, top_layer, blend)
        result = np.clip(np.rint(result * 255), 0, 255).astype(np.uint8)
        canvas.paste(Image.fromarray(result, 'RGBA'), (box[0], box[1]))


def encode(canvas: Image.Image, output_format: str = 'PNG') -> bytes:
    """Encode a finished canvas losslessly."""
    save_kwargs = {'format': output_format.upper()}
    if save_kwargs['format'] == 'PNG':
        save_kwargs['compress_level'] = 6
    elif save_kwargs['format'] == 'WEBP':
        save_kwargs['lossless'] = True
    elif save_kwargs['format'] == 'TIFF':
        save_kwargs['compression'] = 'tiff_lzw'

    buffer = io.BytesIO()
    try:
        canvas.save(buffer, **save_kwargs)
    except (OSError, ValueError, KeyError) as e:
        raise CanvasError(f"Failed to encode canvas as {output_format}: {e}", details={'format': output_format}) from e
    return buffer.getvalue()


def create_composite_engine(fonts: FontCache) -> CompositeEngine:
    """Factory function to create a CompositeEngine instance."""
    return CompositeEngine(fonts)
