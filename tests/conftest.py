"""
Pytest configuration and fixtures for Cardsmith tests.

Provides temporary asset roots with generated images, sample templates,
render settings and contexts shared across the test modules.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import Dict, Any
from PIL import Image

from cardsmith.assets import AssetStore
from cardsmith.config import RenderSettings
from cardsmith.fonts import FontCache
from cardsmith.layout import RenderContext
from cardsmith.scripts import JinjaScriptEngine
from cardsmith.template import build_template


@pytest.fixture
def temp_work_dir():
    """Create a temporary work directory for test processing."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def asset_root(temp_work_dir):
    """Asset folder with a few generated images and a corrupt file."""
    root = temp_work_dir / "assets"
    (root / "artwork").mkdir(parents=True)
    (root / "frames").mkdir()

    Image.new('RGBA', (400, 400), (255, 0, 0, 255)).save(root / "red.png")
    Image.new('RGBA', (40, 20), (0, 0, 255, 255)).save(root / "frames" / "blue.png")
    Image.new('RGB', (64, 64), (0, 128, 0)).save(root / "artwork" / "hero.jpg")
    Image.new('RGBA', (10, 10), (128, 128, 128, 255)).save(root / "placeholder.png")
    (root / "broken.png").write_bytes(b"not an image at all")
    return root


@pytest.fixture
def settings(asset_root) -> RenderSettings:
    """Render settings pointing at the temporary asset root."""
    return RenderSettings(ASSET_ROOT=str(asset_root), WORKERS=2, SCRIPT_TIMEOUT=2.0)


@pytest.fixture
def fonts() -> FontCache:
    """Font cache with only the bundled default font."""
    return FontCache()


def make_template(regions, width: int = 200, height: int = 300, scripts: Dict[str, str] = None, **extra) -> Any:
    """Build a template from region dicts."""
    data = {
        'name': 'test-cards',
        'canvas': {'width': width, 'height': height, 'background': '#FFFFFF'},
        'scripts': scripts or {},
        'regions': regions,
    }
    data.update(extra)
    return build_template(data)


@pytest.fixture
def sample_template_data() -> Dict[str, Any]:
    """Plain mapping for a small card with image, text and shape regions."""
    return {
        'name': 'hero-cards',
        'canvas': {'width': 200, 'height': 300, 'background': '#FFFFFF'},
        'scripts': {'shout': 'name | upper', 'cost_label': "cost ~ ' gold'"},
        'regions': [
            {
                'id': 'frame',
                'kind': 'shape',
                'geometry': {'x': 0, 'y': 0, 'w': 200, 'h': 300},
                'style': {'shape': 'rectangle', 'fill': '#EEEEEE'},
            },
            {
                'id': 'art',
                'kind': 'image',
                'geometry': {'x': 10, 'y': 10, 'w': 180, 'h': 120},
                'binding': {'field': 'artwork'},
                'style': {'fit': 'cover'},
            },
            {
                'id': 'name',
                'kind': 'text',
                'geometry': {'x': 10, 'y': 140, 'w': 180, 'h': 40},
                'binding': {'field': 'name'},
                'fallback': 'Unnamed',
                'style': {'size': 20, 'align': 'center'},
            },
            {
                'id': 'cost',
                'kind': 'text',
                'geometry': {'x': 10, 'y': 190, 'w': 180, 'h': 30},
                'binding': {'script': 'cost_label'},
                'style': {'size': 16},
            },
        ],
    }


@pytest.fixture
def sample_template(sample_template_data):
    """Validated sample template."""
    return build_template(sample_template_data)


@pytest.fixture
def context(sample_template, settings):
    """Render context for the sample template."""
    ctx = RenderContext.from_settings(sample_template, settings)
    yield ctx
    ctx.close()


@pytest.fixture
def sample_rows():
    """A few well-formed rows for the sample template."""
    return [
        {'name': 'Aria', 'artwork': 'red.png', 'cost': 3},
        {'name': 'Borin', 'artwork': 'hero', 'cost': 5},
        {'name': 'Cass', 'artwork': 'frames/blue.png', 'cost': 1.5},
    ]


@pytest.fixture
def make_context(asset_root):
    """Factory for render contexts over a template's own scripts."""
    created = []

    def factory(template, **policies):
        engine = JinjaScriptEngine(template.scripts)
        created.append(engine)
        return RenderContext(FontCache(), AssetStore(asset_root), engine=engine, **policies)

    yield factory
    for engine in created:
        engine.close()
