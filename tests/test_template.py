"""
Tests for the template model, validation and YAML loading.
"""

import pytest
import yaml

from cardsmith.errors import TemplateError
from cardsmith.template import (
    Binding, FitMode, ImageStyle, Overflow, RegionKind, ShapeStyle, TextStyle,
    build_template, load_template, parse_color, validate_template
)


class TestTemplateModel:
    """Test building templates from plain data."""

    def test_build_sample(self, sample_template):
        """Test that the sample template builds with typed styles."""
        assert sample_template.name == 'hero-cards'
        assert [r.id for r in sample_template.regions] == ['frame', 'art', 'name', 'cost']
        assert isinstance(sample_template.region('frame').style, ShapeStyle)
        assert isinstance(sample_template.region('art').style, ImageStyle)
        assert sample_template.region('art').style.fit == FitMode.COVER
        assert isinstance(sample_template.region('name').style, TextStyle)
        assert sample_template.script_names == ('cost_label',)

    def test_default_styles(self, sample_template_data):
        """Test that regions without a style get the kind's defaults."""
        del sample_template_data['regions'][2]['style']

        template = build_template(sample_template_data)

        style = template.region('name').style
        assert isinstance(style, TextStyle)
        assert style.overflow == Overflow.SHRINK

    def test_template_is_immutable(self, sample_template):
        """Test that a built template cannot be mutated."""
        with pytest.raises(Exception):
            sample_template.name = 'other'

    def test_duplicate_region_ids(self, sample_template_data):
        """Test that region ids must be unique."""
        sample_template_data['regions'][1]['id'] = 'frame'

        with pytest.raises(TemplateError) as exc:
            build_template(sample_template_data)

        assert any('duplicate region id' in p for p in exc.value.details['problems'])

    def test_text_region_needs_binding(self, sample_template_data):
        """Test that only shapes may omit a binding."""
        del sample_template_data['regions'][2]['binding']

        with pytest.raises(TemplateError):
            build_template(sample_template_data)

    def test_binding_exactly_one_source(self):
        """Test binding source exclusivity."""
        assert Binding(field='name').mode == 'field'
        assert Binding(literal=0).mode == 'literal'
        with pytest.raises(ValueError):
            Binding(field='name', script='shout')
        with pytest.raises(ValueError):
            Binding()

    def test_invalid_geometry_and_colour(self, sample_template_data):
        """Test that every problem is reported."""
        sample_template_data['regions'][0]['style']['fill'] = 'not-a-colour'
        sample_template_data['regions'][1]['geometry']['w'] = 0

        with pytest.raises(TemplateError) as exc:
            build_template(sample_template_data)

        assert len(exc.value.details['problems']) >= 2

    def test_min_size_above_size(self, sample_template_data):
        """Test text size bounds."""
        sample_template_data['regions'][2]['style'] = {'size': 10, 'min_size': 20}

        with pytest.raises(TemplateError):
            build_template(sample_template_data)

    def test_unknown_kind(self, sample_template_data):
        """Test that region kinds are a closed set."""
        sample_template_data['regions'][0]['kind'] = 'video'

        with pytest.raises(TemplateError):
            build_template(sample_template_data)

    def test_parse_color(self):
        """Test colour parsing to RGBA."""
        assert parse_color('#FF0000') == (255, 0, 0, 255)
        assert parse_color('#00FF0080') == (0, 255, 0, 128)
        assert parse_color('white') == (255, 255, 255, 255)


class TestValidateTemplate:
    """Test cross-checking templates against available scripts and fonts."""

    def test_valid(self, sample_template):
        """Test that the sample template references only declared resources."""
        validate_template(sample_template)

    def test_unknown_script(self, sample_template_data):
        """Test a region referencing an undefined script."""
        sample_template_data['regions'][3]['binding'] = {'script': 'nope'}
        template = build_template(sample_template_data)

        with pytest.raises(TemplateError) as exc:
            validate_template(template)

        assert "regions.cost: unknown script 'nope'" in exc.value.details['problems']

    def test_unknown_font(self, sample_template_data):
        """Test a text style referencing an undeclared font."""
        sample_template_data['regions'][2]['style']['font'] = 'title'
        template = build_template(sample_template_data)

        with pytest.raises(TemplateError):
            validate_template(template)
        validate_template(template, known_fonts=['title'])

    def test_rejects_non_template(self):
        """Test validation of a wrong object type."""
        with pytest.raises(TemplateError):
            validate_template({'regions': []})


class TestLoadTemplate:
    """Test loading template documents from YAML."""

    def test_load_yaml(self, temp_work_dir, sample_template_data):
        """Test round trip through a YAML file."""
        path = temp_work_dir / "hero.yaml"
        path.write_text(yaml.safe_dump(sample_template_data), encoding='utf-8')

        template = load_template(path)

        assert template.name == 'hero-cards'
        assert template.region('art').kind == RegionKind.IMAGE

    def test_font_paths_relative_to_template(self, temp_work_dir, sample_template_data):
        """Test that font files resolve next to the template."""
        sample_template_data['fonts'] = {'title': 'fonts/Title.ttf'}
        path = temp_work_dir / "hero.yaml"
        path.write_text(yaml.safe_dump(sample_template_data), encoding='utf-8')

        template = load_template(path)

        assert template.fonts['title'] == str((temp_work_dir / 'fonts' / 'Title.ttf').resolve())

    def test_extra_scripts_file(self, temp_work_dir, sample_template_data):
        """Test extending the scripts table from a second file."""
        path = temp_work_dir / "hero.yaml"
        path.write_text(yaml.safe_dump(sample_template_data), encoding='utf-8')
        scripts = temp_work_dir / "scripts.yaml"
        scripts.write_text("title_case: name | title\n", encoding='utf-8')

        template = load_template(path, scripts_path=scripts)

        assert template.scripts['title_case'] == 'name | title'
        assert 'shout' in template.scripts

    def test_missing_file(self, temp_work_dir):
        """Test a clear error for missing template files."""
        with pytest.raises(TemplateError):
            load_template(temp_work_dir / "missing.yaml")

    def test_not_a_mapping(self, temp_work_dir):
        """Test that a YAML list is rejected."""
        path = temp_work_dir / "list.yaml"
        path.write_text("- a\n- b\n", encoding='utf-8')

        with pytest.raises(TemplateError):
            load_template(path)
