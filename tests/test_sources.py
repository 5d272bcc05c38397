"""
Tests for CSV row reading, result writing and the command line.
"""

import json

import pytest
import yaml
from PIL import Image

from cardsmith.cli import EXIT_OK, EXIT_ROW_FAILURES, EXIT_TEMPLATE_ERROR, main
from cardsmith.errors import RenderError
from cardsmith.render import RenderResult
from cardsmith.scripts import JinjaScriptEngine
from cardsmith.sources import convert_cell, filter_rows, output_name, read_csv_rows, write_results
from cardsmith.values import DataRow, ImagePath, MISSING


class TestReadCsvRows:
    """Test reading rows from delimited files."""

    def test_reads_typed_rows(self, temp_work_dir):
        """Test typed columns and empty cells."""
        path = temp_work_dir / "cards.csv"
        path.write_text("id,name,cost,rare,art\nh1,Aria,3,yes,red.png\nh2,,1.5,no,\n", encoding='utf-8')

        rows = list(read_csv_rows(path, types={'cost': 'number', 'rare': 'boolean', 'art': 'image'}))

        assert rows[0] == DataRow(id='h1', name='Aria', cost=3, rare=True, art=ImagePath('red.png'))
        assert isinstance(rows[0]['art'], ImagePath)
        assert rows[1]['name'] is MISSING
        assert rows[1]['cost'] == 1.5
        assert rows[1]['rare'] is False
        assert rows[1]['art'] is MISSING

    def test_tsv_delimiter(self, temp_work_dir):
        """Test tab-separated files are detected by extension."""
        path = temp_work_dir / "cards.tsv"
        path.write_text("id\tname\nh1\tAria Stormborn\n", encoding='utf-8')

        rows = list(read_csv_rows(path))

        assert rows[0]['name'] == 'Aria Stormborn'

    def test_bad_cell_kept_as_text(self, temp_work_dir):
        """Test unconvertible cells stay text."""
        path = temp_work_dir / "cards.csv"
        path.write_text("id,cost\nh1,lots\n", encoding='utf-8')

        rows = list(read_csv_rows(path, types={'cost': 'number'}))

        assert rows[0]['cost'] == 'lots'

    def test_unknown_column_type(self, temp_work_dir):
        """Test that column types are validated up front."""
        path = temp_work_dir / "cards.csv"
        path.write_text("id\nh1\n", encoding='utf-8')

        with pytest.raises(ValueError):
            list(read_csv_rows(path, types={'id': 'date'}))

    def test_convert_cell(self):
        """Test single-cell conversion."""
        assert convert_cell(" 42 ", 'number') == 42
        assert convert_cell("", 'number') is MISSING
        assert convert_cell("TRUE", 'boolean') is True


class TestFilterRows:
    """Test selecting rows by predicate and id."""

    ROWS = [
        {'id': 'h1', 'rarity': 'rare', 'cost': 3},
        {'id': 'h2', 'rarity': 'common', 'cost': 1},
        {'id': 'h3', 'rarity': 'rare', 'cost': 1},
    ]

    def test_predicate(self):
        """Test keeping rows a script expression accepts."""
        with JinjaScriptEngine({}) as engine:
            rows = list(filter_rows(self.ROWS, engine.predicate("rarity == 'rare'")))

        assert [row['id'] for row in rows] == ['h1', 'h3']
        assert all(isinstance(row, DataRow) for row in rows)

    def test_ids(self):
        """Test selecting rows by id."""
        rows = list(filter_rows(self.ROWS, ids=['h3', 'h2']))

        assert [row['id'] for row in rows] == ['h2', 'h3']

    def test_predicate_and_ids_combine(self):
        """Test both filters must pass."""
        with JinjaScriptEngine({}) as engine:
            rows = list(filter_rows(self.ROWS, engine.predicate("cost > 2"), ids=['h1', 'h2']))

        assert [row['id'] for row in rows] == ['h1']

    def test_failing_predicate_skips_row(self):
        """Test rows the filter cannot evaluate are left out."""
        rows = [{'id': 'h1', 'cost': 3}, {'id': 'h2'}]
        with JinjaScriptEngine({}) as engine:
            kept = list(filter_rows(rows, engine.predicate("cost > 2")))

        assert [row['id'] for row in kept] == ['h1']


class TestWriteResults:
    """Test naming and writing output files."""

    def test_output_name(self):
        """Test building names from row fields."""
        row = DataRow(id='h1', name='Aria Stormborn')

        assert output_name("{id}", row, 0) == 'h1'
        assert output_name("{id}-{name}", row, 0) == 'h1-Aria_Stormborn'
        assert output_name("{row_index}", row, 7) == '7'
        assert output_name("{missing}", row, 3) == 'row_3'

    def test_writes_successful_results(self, temp_work_dir):
        """Test that only successful rows produce files."""
        results = [
            RenderResult(0, image_bytes=b'one', row=DataRow(id='a')),
            RenderResult(1, error=RenderError("bad", row_index=1), row=DataRow(id='b')),
            RenderResult(2, image_bytes=b'two', row=DataRow(id='a')),
        ]

        summary = write_results(results, temp_work_dir / "out", "{id}")

        assert (temp_work_dir / "out" / "a.png").read_bytes() == b'one'
        assert (temp_work_dir / "out" / "a_2.png").read_bytes() == b'two'
        assert not (temp_work_dir / "out" / "b.png").exists()
        assert summary.succeeded == 2
        assert summary.failed == 1


class TestCli:
    """Test the render command end to end."""

    @pytest.fixture
    def project(self, temp_work_dir, asset_root, sample_template_data):
        template = temp_work_dir / "hero.yaml"
        template.write_text(yaml.safe_dump(sample_template_data), encoding='utf-8')
        rows = temp_work_dir / "heroes.csv"
        rows.write_text("id,name,artwork,cost\nh1,Aria,red.png,3\nh2,Borin,hero,5\n", encoding='utf-8')
        return temp_work_dir, template, rows

    def test_render_all_rows(self, project, asset_root, monkeypatch):
        """Test a clean batch exits 0 and writes one file per row."""
        work_dir, template, rows = project
        monkeypatch.chdir(work_dir)
        out = work_dir / "out"

        code = main(['render', str(template), str(rows), '-o', str(out), '--asset-root', str(asset_root),
                     '--workers', '1', '--summary', str(work_dir / 'summary.json')])

        assert code == EXIT_OK
        assert sorted(p.name for p in out.iterdir()) == ['h1.png', 'h2.png']
        with Image.open(out / 'h1.png') as image:
            assert image.size == (200, 300)
        assert json.loads((work_dir / 'summary.json').read_text())['succeeded'] == 2

    def test_row_failure_exit_code(self, project, asset_root, monkeypatch):
        """Test a failing row gives exit code 1."""
        work_dir, template, rows = project
        monkeypatch.chdir(work_dir)
        rows.write_text("id,name,artwork,cost\nh1,Aria,broken.png,3\nh2,Borin,hero,5\n", encoding='utf-8')

        code = main(['render', str(template), str(rows), '-o', str(work_dir / 'out'), '--asset-root', str(asset_root)])

        assert code == EXIT_ROW_FAILURES
        assert [p.name for p in (work_dir / 'out').iterdir()] == ['h2.png']

    def test_template_error_exit_code(self, temp_work_dir, monkeypatch):
        """Test an invalid template gives exit code 2."""
        monkeypatch.chdir(temp_work_dir)
        template = temp_work_dir / "bad.yaml"
        template.write_text("canvas: {width: -1, height: 10}\n", encoding='utf-8')
        rows = temp_work_dir / "rows.csv"
        rows.write_text("id\n1\n", encoding='utf-8')

        code = main(['render', str(template), str(rows), '-o', str(temp_work_dir / 'out')])

        assert code == EXIT_TEMPLATE_ERROR

    def test_filter_and_ids(self, project, asset_root, monkeypatch):
        """Test that only selected rows are rendered."""
        work_dir, template, rows = project
        monkeypatch.chdir(work_dir)
        rows.write_text("id,name,artwork,cost\nh1,Aria,red.png,3\nh2,Borin,hero,5\nh3,Cass,hero,7\n",
                        encoding='utf-8')
        out = work_dir / "out"

        code = main(['render', str(template), str(rows), '-o', str(out), '--asset-root', str(asset_root),
                     '--types', str(self.types(work_dir)), '--filter', 'cost > 4', '--ids', 'h1,h3'])

        assert code == EXIT_OK
        assert [p.name for p in out.iterdir()] == ['h3.png']

    def test_bad_filter_exit_code(self, project, asset_root, monkeypatch):
        """Test a filter that does not compile gives exit code 2."""
        work_dir, template, rows = project
        monkeypatch.chdir(work_dir)

        code = main(['render', str(template), str(rows), '-o', str(work_dir / 'out'), '--filter', 'cost >'])

        assert code == EXIT_TEMPLATE_ERROR

    @staticmethod
    def types(work_dir):
        path = work_dir / "types.yaml"
        path.write_text("cost: number\n", encoding='utf-8')
        return path
