"""
Font registry and cache.

Maps the font keys a template uses to font files and keeps loaded
FreeType fonts per (key, size). The cache is shared by all render tasks
of a process and is populated insert-if-absent, so two tasks loading the
same font at once simply keep whichever instance landed first.
"""

from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from loguru import logger
from PIL import ImageFont

from cardsmith.errors import TemplateError


DEFAULT_FONT_KEY = "default"


class FontCache:
    """Process-scoped font lookup with insert-if-absent population."""

    def __init__(self, fonts: Dict[str, str] = None, font_dirs: Iterable[str] = ()):
        self.font_dirs = [Path(d) for d in font_dirs]
        self._paths: Dict[str, Optional[Path]] = {}
        self._cache: Dict[Tuple[str, int], ImageFont.FreeTypeFont] = {}
        for key, path in (fonts or {}).items():
            self.register(key, path)

    def register(self, key: str, path: str) -> None:
        """Register a font file under a key, searching FONT_DIRS for bare names."""
        resolved = self._find_font_file(path)
        if resolved is None:
            raise TemplateError(
                f"Font file not found for '{key}': {path}",
                details={'font': key, 'path': path, 'font_dirs': [str(d) for d in self.font_dirs]},
                suggestions=["Check the fonts table of the template", "Add the font folder to FONT_DIRS"]
            )
        self._paths.setdefault(key, resolved)
        logger.debug(f"Registered font '{key}': {resolved}")

    def _find_font_file(self, path: str) -> Optional[Path]:
        candidate = Path(path)
        if candidate.is_file():
            return candidate
        for folder in self.font_dirs:
            found = folder / candidate.name
            if found.is_file():
                return found
        return None

    @property
    def keys(self) -> Tuple[str, ...]:
        return tuple(self._paths) + (DEFAULT_FONT_KEY,)

    def get(self, key: str, size: int) -> ImageFont.FreeTypeFont:
        """Return the font for key at the given pixel size."""
        cache_key = (key, size)
        font = self._cache.get(cache_key)
        if font is not None:
            return font
        font = self._load(key, size)
        return self._cache.setdefault(cache_key, font)

    def _load(self, key: str, size: int) -> ImageFont.FreeTypeFont:
        path = self._paths.get(key)
        if path is None:
            if key != DEFAULT_FONT_KEY:
                raise TemplateError(f"Unknown font: {key}", details={'font': key})
            # Pillow bundles a scalable default font when FreeType is available
            return ImageFont.load_default(size=size)
        try:
            return ImageFont.truetype(str(path), size)
        except OSError as e:
            raise TemplateError(f"Failed to load font {path}: {e}", details={'font': key, 'path': str(path)}) from e

    def __len__(self) -> int:
        return len(self._cache)
