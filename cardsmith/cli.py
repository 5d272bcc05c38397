"""
Command line entry point.

    cardsmith render TEMPLATE ROWS.csv -o OUT [--workers N] [--asset-root DIR]
                     [--name-pattern PATTERN] [--policy abort|placeholder] [--env ENV]
                     [--filter EXPR] [--ids ID,ID,...]

Exit codes: 0 when every row rendered, 1 when some row failed, 2 on a
template or configuration error.
"""

import argparse
import json
import sys
import threading
from pathlib import Path
from typing import List, Optional

from loguru import logger

from cardsmith import __version__, setup_logging
from cardsmith.config import load_config, load_yaml_config
from cardsmith.errors import TemplateError
from cardsmith.render import render_batch
from cardsmith.scripts import JinjaScriptEngine
from cardsmith.sources import filter_rows, read_csv_rows, write_results
from cardsmith.template import load_template


EXIT_OK = 0
EXIT_ROW_FAILURES = 1
EXIT_TEMPLATE_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cardsmith",
        description="Render one card image per data row from a card template",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cardsmith render cards/hero.yaml data/heroes.csv -o out/
  cardsmith render cards/hero.yaml data/heroes.csv -o out/ --workers 8 --policy placeholder
  cardsmith render cards/hero.yaml data/heroes.csv -o out/ --filter "rarity == 'rare' and cost > 2"
  cardsmith render cards/hero.yaml data/heroes.csv -o out/ --ids h01,h07
        """
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    subcommands = parser.add_subparsers(dest='command', required=True)

    render = subcommands.add_parser('render', help='Render a batch of cards')
    render.add_argument('template', type=Path, help='Template YAML file')
    render.add_argument('rows', type=Path, help='CSV/TSV file with one row per card')
    render.add_argument('-o', '--output', type=Path, required=True, help='Output directory')
    render.add_argument('--workers', type=int, help='Number of render workers')
    render.add_argument('--asset-root', help='Folder image paths are resolved against')
    render.add_argument('--name-pattern', help='Output file name pattern, e.g. "{id}"')
    render.add_argument('--policy', choices=['abort', 'placeholder'], help='Missing asset policy')
    render.add_argument('--scripts', type=Path, help='Extra scripts YAML file')
    render.add_argument('--types', type=Path, help='YAML/JSON mapping of column name to type')
    render.add_argument('--env', default=None, help='Configuration environment')
    render.add_argument('--config-dir', default='config', help='Folder holding settings*.yaml')
    render.add_argument('--summary', type=Path, help='Write the batch summary as JSON')
    render.add_argument('--filter', help='Only render rows for which this script expression is true')
    render.add_argument('--ids', help='Comma-separated ids of the rows to render')
    render.add_argument('--id-field', default='id', help='Column holding row ids for --ids')
    return parser


def _load_types(path: Optional[Path]):
    if path is None:
        return None
    return load_yaml_config(str(path))


def _split_ids(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [part.strip() for part in value.split(',') if part.strip()]


def run_render(args: argparse.Namespace) -> int:
    settings = load_config(args.env or 'development', config_dir=args.config_dir)
    overrides = {}
    if args.workers is not None:
        overrides['WORKERS'] = args.workers
    if args.asset_root is not None:
        overrides['ASSET_ROOT'] = args.asset_root
    if args.name_pattern is not None:
        overrides['NAME_PATTERN'] = args.name_pattern
    if args.policy is not None:
        overrides['MISSING_ASSET_POLICY'] = args.policy
    if overrides:
        try:
            settings = settings.model_validate({**settings.model_dump(), **overrides})
        except ValueError as e:
            logger.error(f"Invalid command line settings: {e}")
            return EXIT_TEMPLATE_ERROR

    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    cancel_event = threading.Event()
    filter_engine = None
    try:
        template = load_template(args.template, scripts_path=args.scripts)
        rows = read_csv_rows(args.rows, types=_load_types(args.types))
        if args.filter or args.ids:
            predicate = None
            if args.filter:
                filter_engine = JinjaScriptEngine.from_settings({}, settings, cancel_event=cancel_event)
                predicate = filter_engine.predicate(args.filter)
            rows = filter_rows(rows, predicate, ids=_split_ids(args.ids), id_field=args.id_field)
        results = render_batch(template, rows, settings=settings, cancel_event=cancel_event)
        summary = write_results(results, args.output, settings.NAME_PATTERN, settings.OUTPUT_FORMAT)
    except TemplateError as e:
        logger.error(f"Template error: {e.message}")
        for problem in e.details.get('problems', []):
            logger.error(f"  {problem}")
        for suggestion in e.suggestions:
            logger.info(f"  hint: {suggestion}")
        return EXIT_TEMPLATE_ERROR
    except KeyboardInterrupt:
        cancel_event.set()
        logger.warning("Interrupted, stopping batch")
        return EXIT_ROW_FAILURES
    except OSError as e:
        logger.error(f"Failed to read rows or write output: {e}")
        return EXIT_TEMPLATE_ERROR
    finally:
        if filter_engine is not None:
            filter_engine.close()

    if args.summary is not None:
        args.summary.parent.mkdir(parents=True, exist_ok=True)
        args.summary.write_text(json.dumps(summary.to_dict(), indent=2, default=str), encoding='utf-8')

    return EXIT_OK if summary.all_ok else EXIT_ROW_FAILURES


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == 'render':
        return run_render(args)
    parser.error(f"Unknown command: {args.command}")
    return EXIT_TEMPLATE_ERROR


if __name__ == '__main__':
    sys.exit(main())
