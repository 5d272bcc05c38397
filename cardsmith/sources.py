"""
Row readers and result writers.

Reads data rows from CSV/TSV files and writes rendered results to disk
with a naming pattern built from row fields.
"""

import csv
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Union

from loguru import logger

from cardsmith.errors import CardsmithError
from cardsmith.render import BatchSummary, RenderResult
from cardsmith.values import DataRow, ImagePath, MISSING, format_value


COLUMN_TYPES = ('text', 'number', 'boolean', 'image')

_TRUE = {'true', 'yes', 'y', '1'}
_FALSE = {'false', 'no', 'n', '0'}
_UNSAFE_NAME = re.compile(r'[^\w.\-]+')
_FIELD = re.compile(r'\{(\w+)\}')


def _to_number(val: str) -> Union[int, float]:
    try:
        return int(val)
    except ValueError:
        return float(val)


def convert_cell(value: Optional[str], column_type: str = 'text'):
    """Convert one CSV cell. Empty cells become MISSING."""
    if value is None or not value.strip():
        return MISSING
    value = value.strip()
    if column_type == 'number':
        return _to_number(value)
    if column_type == 'boolean':
        lowered = value.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"not a boolean: {value!r}")
    if column_type == 'image':
        return ImagePath(value)
    return value


def read_csv_rows(path: Union[str, Path],
                  types: Optional[Dict[str, str]] = None,
                  delimiter: Optional[str] = None,
                  encoding: str = 'utf-8-sig') -> Iterator[DataRow]:
    """
    Yield DataRows from a CSV file, lazily.

    Columns listed in ``types`` are converted to number, boolean or image
    values; everything else stays text. A cell that cannot be converted is
    kept as text and logged. ``.tsv`` files default to tab delimiters.
    """
    path = Path(path)
    types = types or {}
    for column, column_type in types.items():
        if column_type not in COLUMN_TYPES:
            raise ValueError(f"Unknown column type for '{column}': {column_type}")
    if delimiter is None:
        delimiter = '\t' if path.suffix.lower() == '.tsv' else ','

    with open(path, newline='', encoding=encoding) as f:
        reader = csv.DictReader(f, delimiter=delimiter)
        for line_no, record in enumerate(reader, start=2):
            fields = {}
            for column, cell in record.items():
                if column is None:
                    logger.warning(f"{path.name}:{line_no}: extra cells ignored")
                    continue
                try:
                    fields[column] = convert_cell(cell, types.get(column, 'text'))
                except ValueError as e:
                    logger.warning(f"{path.name}:{line_no}: column '{column}' kept as text ({e})")
                    fields[column] = cell.strip()
            yield DataRow(fields)


def filter_rows(rows: Iterable[Mapping[str, Any]],
                predicate: Optional[Callable[[DataRow], bool]] = None,
                ids: Optional[Iterable[str]] = None,
                id_field: str = 'id') -> Iterator[DataRow]:
    """
    Keep the rows whose id is listed in ``ids`` and for which ``predicate`` holds.

    Rows the predicate fails on (a script error or timeout) are skipped
    with a warning.
    """
    wanted = {str(i) for i in ids} if ids else None
    skipped = 0
    for index, row in enumerate(rows):
        if not isinstance(row, DataRow):
            row = DataRow(row)
        if wanted is not None and format_value(row.lookup(id_field)) not in wanted:
            skipped += 1
            continue
        if predicate is not None:
            try:
                keep = predicate(row)
            except CardsmithError as e:
                logger.warning(f"Input row {index}: filter failed, row skipped ({e})")
                keep = False
            if not keep:
                skipped += 1
                continue
        yield row
    logger.info(f"Row filter skipped {skipped} row(s)")


def output_name(pattern: str, row: Optional[DataRow], row_index: int) -> str:
    """
    Build a file stem from a ``{field}`` pattern.

    ``{row_index}`` is always available. Falls back to ``row_<index>`` when
    a referenced field is missing or the name comes out empty.
    """
    values = {'row_index': str(row_index)}
    if row is not None:
        values.update({key: format_value(value) for key, value in row.items()})

    missing = [name for name in _FIELD.findall(pattern) if not values.get(name)]
    if missing:
        logger.warning(f"Row {row_index}: name pattern fields missing {missing}, using row index")
        return f"row_{row_index}"

    name = _FIELD.sub(lambda m: values[m.group(1)], pattern)
    name = _UNSAFE_NAME.sub('_', name).strip('._')
    return name or f"row_{row_index}"


def write_results(results: Iterable[RenderResult],
                  output_dir: Union[str, Path],
                  name_pattern: str = "{id}",
                  extension: str = "png") -> BatchSummary:
    """
    Write every successful result to ``output_dir`` and summarize the batch.

    Files whose names collide get the row index appended.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    summary = BatchSummary()
    used = set()

    for result in results:
        summary.add(result)
        if not result.ok:
            continue
        stem = output_name(name_pattern, result.row, result.row_index)
        if stem in used:
            stem = f"{stem}_{result.row_index}"
        used.add(stem)
        path = output_dir / f"{stem}.{extension.lower()}"
        path.write_bytes(result.image_bytes)
        logger.debug(f"Wrote {path} ({len(result.image_bytes):,} bytes)")

    summary.log()
    return summary
