"""
Render driver for Cardsmith.

This module handles:
- Rendering one row to an encoded image (render_card)
- Running a batch over an iterable of rows on a worker pool
- Isolating per-row failures into RenderResults
- Summarizing a batch
"""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

from loguru import logger

from cardsmith.composite import CompositeEngine, create_composite_engine, encode
from cardsmith.config import RenderSettings, get_config
from cardsmith.errors import CardsmithError, RegionError, RenderError, describe_failure
from cardsmith.layout import RenderContext, resolve
from cardsmith.template import Template
from cardsmith.values import DataRow


@dataclass(frozen=True)
class RenderResult:
    """Outcome of one row: encoded image bytes or the error that stopped it."""
    row_index: int
    image_bytes: Optional[bytes] = field(default=None, repr=False)
    error: Optional[CardsmithError] = None
    row: Optional[DataRow] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if (self.image_bytes is None) == (self.error is None):
            raise ValueError("RenderResult needs exactly one of image_bytes or error")

    @property
    def ok(self) -> bool:
        return self.error is None


def render_card(template: Template,
                row: Mapping[str, Any],
                context: RenderContext,
                row_index: Optional[int] = None,
                compositor: Optional[CompositeEngine] = None) -> bytes:
    """
    Render a single row to encoded image bytes.

    Raises RenderError when a region fails under the abort policy and
    CanvasError when the surface cannot be produced. No partial image is
    ever returned.
    """
    card = resolve(template, row, context, row_index=row_index)
    compositor = compositor or create_composite_engine(context.fonts)
    canvas = compositor.create_canvas(template.canvas)
    try:
        compositor.composite(canvas, card)
        return encode(canvas, context.output_format)
    finally:
        canvas.close()


def _as_row_error(error: Exception, row_index: int) -> CardsmithError:
    if isinstance(error, RenderError):
        if error.row_index is None:
            error.row_index = row_index
            error.details['row_index'] = row_index
        return error
    if isinstance(error, RegionError):
        return RenderError.from_region_errors([error], row_index=row_index)
    if isinstance(error, CardsmithError):
        error.details.setdefault('row_index', row_index)
        return error
    return RenderError(f"Unexpected failure: {error.__class__.__name__}: {error}", row_index=row_index)


def _render_row(template: Template, row: Any, row_index: int,
                context: RenderContext, compositor: CompositeEngine) -> RenderResult:
    data_row = None
    try:
        data_row = row if isinstance(row, DataRow) else DataRow(row)
        image_bytes = render_card(template, data_row, context, row_index=row_index, compositor=compositor)
    except Exception as e:
        error = _as_row_error(e, row_index)
        logger.error(f"Row {row_index} failed: {describe_failure(error)}")
        return RenderResult(row_index, error=error, row=data_row)
    logger.debug(f"Row {row_index} rendered ({len(image_bytes):,} bytes)")
    return RenderResult(row_index, image_bytes=image_bytes, row=data_row)


def render_batch(template: Template,
                 rows: Iterable[Mapping[str, Any]],
                 context: Optional[RenderContext] = None,
                 settings: Optional[RenderSettings] = None,
                 workers: Optional[int] = None,
                 cancel_event: Optional[threading.Event] = None) -> Iterator[RenderResult]:
    """
    Render every row of a batch, yielding one RenderResult per started row.

    The template is validated (and its scripts compiled) before any row is
    read; a TemplateError surfaces from the first ``next()``. With more
    than one worker results arrive as they complete, tagged with their row
    index. Setting cancel_event stops new rows from being started and
    aborts running scripts at their next step. A caller-supplied context
    whose engine has no cancel event of its own borrows this one for the
    duration of the batch.
    """
    settings = settings or get_config()
    owns_context = context is None
    borrowed_cancel = False
    if context is None:
        context = RenderContext.from_settings(template, settings, cancel_event=cancel_event)
    elif cancel_event is not None and getattr(context.engine, 'cancel_event', False) is None:
        context.engine.cancel_event = cancel_event
        borrowed_cancel = True

    try:
        context.validate(template)
        workers = workers or settings.WORKERS
        compositor = create_composite_engine(context.fonts)
        logger.info(f"Rendering batch for template '{template.name}' with {workers} worker(s)")

        if workers <= 1:
            for row_index, row in enumerate(rows):
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Batch cancelled before row {row_index}")
                    break
                yield _render_row(template, row, row_index, context, compositor)
            return

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cardsmith-render") as executor:
            row_iter = enumerate(rows)
            pending = set()
            exhausted = False
            while True:
                while not exhausted and len(pending) < workers * 2:
                    if cancel_event is not None and cancel_event.is_set():
                        logger.warning("Batch cancelled, no further rows will be started")
                        exhausted = True
                        break
                    try:
                        row_index, row = next(row_iter)
                    except StopIteration:
                        exhausted = True
                        break
                    pending.add(executor.submit(_render_row, template, row, row_index, context, compositor))

                if not pending:
                    break
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    yield future.result()
    finally:
        if borrowed_cancel:
            context.engine.cancel_event = None
        if owns_context:
            context.close()


@dataclass
class BatchSummary:
    """Per-row success/failure summary of a batch."""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: Dict[int, CardsmithError] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)
    elapsed: float = 0.0

    def add(self, result: RenderResult) -> RenderResult:
        self.total += 1
        if result.ok:
            self.succeeded += 1
        else:
            self.failed += 1
            self.errors[result.row_index] = result.error
        self.elapsed = time.monotonic() - self.started_at
        return result

    @classmethod
    def collect(cls, results: Iterable[RenderResult]) -> 'BatchSummary':
        """Consume a result stream into a summary."""
        summary = cls()
        for result in results:
            summary.add(result)
        return summary

    @property
    def all_ok(self) -> bool:
        return self.failed == 0

    def log(self) -> None:
        logger.info(
            f"Batch finished: {self.succeeded}/{self.total} rendered, {self.failed} failed in {self.elapsed:.2f}s"
        )
        for row_index in sorted(self.errors):
            logger.error(f"  row {row_index}: {describe_failure(self.errors[row_index])}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'elapsed': round(self.elapsed, 3),
            'errors': {index: error.to_dict() for index, error in sorted(self.errors.items())},
        }
