"""
Asset resolution and the decoded image cache.

This module handles:
- Resolving image paths relative to the asset root
- Looking up per-row artwork by key across the configured extensions
- Decoding images once per process (insert-if-absent cache)
- Building placeholder images for regions whose asset could not be loaded
"""

from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

from PIL import Image, ImageDraw, UnidentifiedImageError
from loguru import logger

from cardsmith.errors import ImageDecodeError


PLACEHOLDER_FILL = (200, 200, 200, 255)
PLACEHOLDER_LINE = (150, 150, 150, 255)


class AssetStore:
    """Resolves and decodes image assets for all render tasks of a process."""

    def __init__(self,
                 asset_root: Union[str, Path],
                 artwork_folder: str = "artwork",
                 extensions: Iterable[str] = ("png", "jpg", "jpeg"),
                 placeholder: Optional[str] = None):
        self.asset_root = Path(asset_root).resolve()
        self.artwork_root = (self.asset_root / artwork_folder).resolve()
        self.extensions = [ext.lstrip('.').lower() for ext in extensions]
        self.placeholder = placeholder
        self._image_cache: Dict[Path, Image.Image] = {}

    def _inside_root(self, path: Path) -> Path:
        resolved = path.resolve()
        try:
            resolved.relative_to(self.asset_root)
        except ValueError:
            raise ImageDecodeError(str(path), "path escapes the asset root")
        return resolved

    def resolve(self, value: str) -> Path:
        """
        Resolve an image value to a file path.

        Values with a file extension are paths relative to the asset root.
        Bare keys are artwork names, tried with every configured extension
        before falling back to the placeholder image.
        """
        if not value or not str(value).strip():
            raise ImageDecodeError(str(value), "empty image path")

        candidate = Path(str(value))
        if candidate.suffix:
            return self._inside_root(self.asset_root / candidate)

        for ext in self.extensions:
            found = self._inside_root(self.artwork_root / f"{candidate}.{ext}")
            if found.is_file():
                return found

        if self.placeholder:
            logger.debug(f"Artwork '{value}' not found, using placeholder {self.placeholder}")
            return self._inside_root(self.asset_root / self.placeholder)

        raise ImageDecodeError(
            str(self.artwork_root / str(candidate)),
            f"no artwork found with extensions {', '.join(self.extensions)}"
        )

    def load(self, path: Path) -> Image.Image:
        """Load and decode an image. Cached images must not be mutated by callers."""
        cached = self._image_cache.get(path)
        if cached is not None:
            return cached

        if not path.is_file():
            raise ImageDecodeError(str(path), "file not found")

        try:
            with Image.open(path) as source:
                image = source.convert('RGBA')
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise ImageDecodeError(str(path), str(e)) from e

        logger.debug(f"Decoded image asset: {path} ({image.size})")
        return self._image_cache.setdefault(path, image)

    def open(self, value: str) -> Tuple[Path, Image.Image]:
        """Resolve and decode in one step."""
        path = self.resolve(value)
        return path, self.load(path)

    def __len__(self) -> int:
        return len(self._image_cache)


def placeholder_image(size: Tuple[int, int]) -> Image.Image:
    """Grey box with a cross, drawn where an image could not be loaded."""
    width, height = max(1, size[0]), max(1, size[1])
    image = Image.new('RGBA', (width, height), PLACEHOLDER_FILL)
    draw = ImageDraw.Draw(image)
    draw.line([(0, 0), (width - 1, height - 1)], fill=PLACEHOLDER_LINE, width=2)
    draw.line([(0, height - 1), (width - 1, 0)], fill=PLACEHOLDER_LINE, width=2)
    draw.rectangle([0, 0, width - 1, height - 1], outline=PLACEHOLDER_LINE, width=2)
    return image
