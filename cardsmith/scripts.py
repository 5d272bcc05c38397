"""
Script engine for per-field transforms.

Scripts are named Jinja expressions evaluated in an immutable sandbox
against the fields of one row. A script whose source contains template
tags (``{{ }}`` or ``{% %}``) is rendered as text instead.

Every evaluation runs under a step budget (attribute/item lookups, calls,
arithmetic, loop iterations and output all count as steps) and a
wall-clock timeout. Each evaluation gets its own thread, so a script that
overruns releases its caller without holding up any other evaluation.
"""

import threading
import time
from concurrent.futures import Future, TimeoutError as FuturesTimeout
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol

from jinja2 import StrictUndefined, TemplateSyntaxError, Undefined, nodes
from jinja2.exceptions import SecurityError
from jinja2.sandbox import ImmutableSandboxedEnvironment
from loguru import logger

from cardsmith.errors import (
    ScriptError, ScriptNotFoundError, ScriptRuntimeError, ScriptTimeoutError, ScriptTypeMismatchError, TemplateError
)
from cardsmith.markup import escape_markup
from cardsmith.values import DataRow, ImagePath, MISSING, format_value, is_missing


MAX_REPEAT = 100_000
MAX_POWER_BITS = 1_000_000


class ScriptEngine(Protocol):
    """The single capability the layout resolver needs from a scripting host."""

    def evaluate(self, script_name: str, row: DataRow) -> Any:
        ...


class _BudgetExceeded(Exception):
    pass


class _Budget:
    """Step and deadline accounting for one evaluation."""

    def __init__(self, max_steps: int, deadline: float, cancel_event: Optional[threading.Event]):
        self.max_steps = max_steps
        self.deadline = deadline
        self.cancel_event = cancel_event
        self.steps = 0

    def tick(self) -> None:
        self.steps += 1
        if self.steps > self.max_steps:
            raise _BudgetExceeded(f"{self.max_steps} step limit")
        if time.monotonic() > self.deadline:
            raise _BudgetExceeded("time limit")
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise _BudgetExceeded("time limit (batch cancelled)")


_active = threading.local()


def _tick() -> None:
    budget = getattr(_active, 'budget', None)
    if budget is not None:
        budget.tick()


def _finalize(value: Any) -> Any:
    _tick()
    return value


def _metered(iterable: Iterable[Any]) -> Iterator[Any]:
    for item in iterable:
        _tick()
        yield item


def _check_operands(operator: str, left: Any, right: Any) -> None:
    if operator == '*':
        for seq, count in ((left, right), (right, left)):
            if isinstance(seq, (str, list, tuple)) and isinstance(count, int) and len(seq) * count > MAX_REPEAT:
                raise SecurityError(f"repetition longer than {MAX_REPEAT} items")
    elif operator == '**' and isinstance(left, int) and isinstance(right, int):
        if abs(left) > 1 and right * left.bit_length() > MAX_POWER_BITS:
            raise SecurityError("power result too large")


class MeteredSandbox(ImmutableSandboxedEnvironment):
    """Immutable Jinja sandbox that charges a step for every operation."""

    intercepted_binops = frozenset(['+', '-', '*', '/', '//', '%', '**'])
    intercepted_unops = frozenset(['-', '+'])

    def _parse(self, source, name, filename):
        tree = super()._parse(source, name, filename)
        # every for loop pulls its items through the metering filter
        for loop in tree.find_all(nodes.For):
            loop.iter = nodes.Filter(loop.iter, '_metered', [], [], None, None, lineno=loop.lineno)
        return tree

    def call(self, context, obj, /, *args, **kwargs):
        _tick()
        return super().call(context, obj, *args, **kwargs)

    def call_binop(self, context, operator, left, right):
        _tick()
        _check_operands(operator, left, right)
        return super().call_binop(context, operator, left, right)

    def call_unop(self, context, operator, arg):
        _tick()
        return super().call_unop(context, operator, arg)

    def getattr(self, obj, attribute):
        _tick()
        return super().getattr(obj, attribute)

    def getitem(self, obj, argument):
        _tick()
        return super().getitem(obj, argument)


def _asset(path: Any) -> ImagePath:
    return ImagePath(format_value(path))


def _default_if_missing(value: Any, default: Any = "") -> Any:
    if value is None or isinstance(value, Undefined):
        return default
    return value


def _truth(result: Any, script_name: str) -> bool:
    return bool(result)


def to_value(result: Any, script_name: str) -> Any:
    """Map a script result onto the row Value set."""
    if isinstance(result, Undefined):
        raise ScriptRuntimeError(script_name, "result is undefined")
    if result is None or result is MISSING:
        return MISSING
    if isinstance(result, ImagePath):
        return result
    if isinstance(result, str):
        return str(result)
    if isinstance(result, (bool, int, float)):
        return result
    raise ScriptTypeMismatchError(script_name, "text, number, boolean or image", type(result).__name__)


class CompiledScript:
    """A script compiled once and evaluated many times."""

    def __init__(self, name: str, source: str, environment: MeteredSandbox):
        self.name = name
        self.source = source
        self.is_template = '{{' in source or '{%' in source
        try:
            if self.is_template:
                template = environment.from_string(source)
                self._call: Callable[..., Any] = template.render
            else:
                self._call = environment.compile_expression(source, undefined_to_none=False)
        except TemplateSyntaxError as e:
            raise TemplateError(
                f"Script '{name}' has a syntax error: {e.message}",
                details={'script': name, 'line': e.lineno, 'source': source},
                suggestions=["Scripts are Jinja expressions, e.g. \"name | upper\""]
            ) from e

    def __call__(self, context: Dict[str, Any]) -> Any:
        return self._call(**context)


class JinjaScriptEngine:
    """Sandboxed script engine backed by Jinja2."""

    def __init__(self,
                 scripts: Dict[str, str],
                 timeout: float = 2.0,
                 max_steps: int = 10_000,
                 cancel_event: Optional[threading.Event] = None):
        self.timeout = timeout
        self.max_steps = max_steps
        self.cancel_event = cancel_event
        self.environment = MeteredSandbox(undefined=StrictUndefined, finalize=_finalize, autoescape=False)
        self.environment.globals.update({
            'asset': _asset,
            'fmt': format_value,
        })
        self.environment.filters['canonical'] = format_value
        self.environment.filters['default_if_missing'] = _default_if_missing
        self.environment.filters['markup_escape'] = escape_markup
        self.environment.filters['_metered'] = _metered
        self.environment.tests['missing'] = lambda value: value is None or isinstance(value, Undefined)

        self._scripts = {name: CompiledScript(name, source, self.environment) for name, source in scripts.items()}
        self._overdue: List[threading.Thread] = []
        logger.debug(f"Compiled {len(self._scripts)} scripts")

    @classmethod
    def from_settings(cls, scripts: Dict[str, str], settings, cancel_event: Optional[threading.Event] = None) -> 'JinjaScriptEngine':
        return cls(
            scripts,
            timeout=settings.SCRIPT_TIMEOUT,
            max_steps=settings.SCRIPT_MAX_STEPS,
            cancel_event=cancel_event,
        )

    @property
    def names(self):
        return tuple(self._scripts)

    def _context(self, row: DataRow) -> Dict[str, Any]:
        fields = {name: (None if is_missing(value) else value) for name, value in row.items()}
        context = dict(fields)
        context['row'] = fields
        return context

    def _run(self, script: CompiledScript, row: DataRow, convert: Callable[[Any, str], Any]) -> Any:
        _active.budget = _Budget(self.max_steps, time.monotonic() + self.timeout, self.cancel_event)
        try:
            return convert(script(self._context(row)), script.name)
        except _BudgetExceeded as e:
            raise ScriptTimeoutError(script.name, str(e))
        except ScriptError:
            raise
        except Exception as e:
            raise ScriptRuntimeError(script.name, f"{e.__class__.__name__}: {e}") from e
        finally:
            _active.budget = None

    def _run_into(self, future: Future, script: CompiledScript, row: DataRow,
                  convert: Callable[[Any, str], Any]) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(self._run(script, row, convert))
        except Exception as e:
            future.set_exception(e)

    def _evaluate(self, script: CompiledScript, row: DataRow, convert: Callable[[Any, str], Any]) -> Any:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ScriptTimeoutError(script.name, "time limit (batch cancelled)")

        future: Future = Future()
        worker = threading.Thread(
            target=self._run_into,
            args=(future, script, row, convert),
            name=f"cardsmith-script-{script.name}",
            daemon=True,
        )
        worker.start()
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            self._overdue.append(worker)
            logger.warning(f"Script '{script.name}' timed out after {self.timeout:g}s")
            raise ScriptTimeoutError(script.name, f"{self.timeout:g}s time limit")

    def evaluate(self, script_name: str, row: DataRow) -> Any:
        """Evaluate a named script against one row, returning a Value."""
        script = self._scripts.get(script_name)
        if script is None:
            raise ScriptNotFoundError(script_name)
        return self._evaluate(script, row, to_value)

    def predicate(self, source: str, name: str = "filter") -> Callable[[DataRow], bool]:
        """
        Compile a row filter such as ``rarity == 'rare' and cost > 2``.

        The returned callable runs under the same sandbox and limits as
        named scripts and reports the truth of the expression for a row.
        Raises TemplateError when the expression does not compile.
        """
        script = CompiledScript(name, source, self.environment)

        def matches(row: DataRow) -> bool:
            return self._evaluate(script, row, _truth)

        return matches

    @property
    def overdue(self) -> int:
        """Timed-out evaluations whose threads are still running."""
        self._overdue = [worker for worker in self._overdue if worker.is_alive()]
        return len(self._overdue)

    def close(self) -> None:
        if self.overdue:
            logger.warning(f"{self.overdue} timed-out script evaluation(s) still running at close")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
