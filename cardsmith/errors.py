"""
Error handling for Cardsmith.

Provides specific exception types for each failure scope of the
rendering pipeline (template, row, region) with enough context to
report per-row failures in a batch summary.
"""

from typing import Dict, List, Optional, Any


class CardsmithError(Exception):
    """Base exception for all Cardsmith errors."""

    def __init__(self, message: str, details: Dict[str, Any] = None, suggestions: List[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.suggestions = suggestions or []

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            'error_type': self.__class__.__name__,
            'message': self.message,
            'details': self.details,
            'suggestions': self.suggestions
        }


class TemplateError(CardsmithError):
    """Raised when a template is malformed or invalid. Fatal to the whole batch."""
    pass


class RegionError(CardsmithError):
    """Base class for failures scoped to a single region of a card."""

    def __init__(self, message: str, region_id: Optional[str] = None,
                 details: Dict[str, Any] = None, suggestions: List[str] = None):
        super().__init__(message, details=details, suggestions=suggestions)
        self.region_id = region_id
        if region_id is not None:
            self.details.setdefault('region_id', region_id)

    def for_region(self, region_id: str) -> 'RegionError':
        """Tag this error with the region it occurred in."""
        self.region_id = region_id
        self.details['region_id'] = region_id
        return self

    def __str__(self) -> str:
        if self.region_id:
            return f"[{self.region_id}] {self.message}"
        return self.message


class RowDataError(RegionError):
    """Raised when a row is missing a field or a field has the wrong type."""

    def __init__(self, field: str, region_id: Optional[str] = None, reason: str = "missing"):
        super().__init__(
            f"Field '{field}' is {reason}",
            region_id=region_id,
            details={'field': field, 'reason': reason},
            suggestions=[
                f"Add a value for '{field}' to the data source",
                "Declare a fallback on the region to use when the field is empty"
            ]
        )
        self.field = field


class ScriptError(RegionError):
    """Base class for script evaluation failures."""

    def __init__(self, message: str, script_name: str, region_id: Optional[str] = None,
                 details: Dict[str, Any] = None, suggestions: List[str] = None):
        details = dict(details or {})
        details['script'] = script_name
        super().__init__(message, region_id=region_id, details=details, suggestions=suggestions)
        self.script_name = script_name


class ScriptNotFoundError(ScriptError):
    """Raised when a region references a script that was never loaded."""

    def __init__(self, script_name: str, region_id: Optional[str] = None):
        super().__init__(
            f"Script not found: {script_name}",
            script_name,
            region_id=region_id,
            suggestions=[
                f"Define '{script_name}' in the template scripts table",
                "Check the script name for typos"
            ]
        )


class ScriptRuntimeError(ScriptError):
    """Raised when a script fails while evaluating."""

    def __init__(self, script_name: str, fault: str, region_id: Optional[str] = None):
        super().__init__(
            f"Script '{script_name}' failed: {fault}",
            script_name,
            region_id=region_id,
            details={'fault': fault}
        )
        self.fault = fault


class ScriptTypeMismatchError(ScriptError):
    """Raised when a script result does not match the kind of its region."""

    def __init__(self, script_name: str, expected: str, actual: str, region_id: Optional[str] = None):
        super().__init__(
            f"Script '{script_name}' returned {actual}, expected {expected}",
            script_name,
            region_id=region_id,
            details={'expected': expected, 'actual': actual},
            suggestions=[
                "Return a value matching the region kind",
                "Set KIND_MISMATCH_POLICY to 'coerce' to convert results automatically"
            ]
        )


class ScriptTimeoutError(ScriptError):
    """Raised when a script exceeds its time or step budget."""

    def __init__(self, script_name: str, limit: str, region_id: Optional[str] = None):
        super().__init__(
            f"Script '{script_name}' exceeded its {limit}",
            script_name,
            region_id=region_id,
            details={'limit': limit},
            suggestions=["Simplify the script or raise SCRIPT_TIMEOUT / SCRIPT_MAX_STEPS"]
        )


class ShapingError(RegionError):
    """Raised when text cannot fit its box under a strict overflow policy."""

    def __init__(self, text: str, box_size: tuple, region_id: Optional[str] = None):
        preview = text if len(text) <= 40 else text[:37] + "..."
        super().__init__(
            f"Text does not fit {box_size[0]}x{box_size[1]} box: {preview!r}",
            region_id=region_id,
            details={'box': list(box_size), 'length': len(text)},
            suggestions=[
                "Use overflow 'shrink' with a smaller min_size",
                "Enlarge the region or shorten the text"
            ]
        )


class MarkupError(RegionError):
    """Raised when inline span markup in a text value is malformed."""

    def __init__(self, reason: str, position: int, region_id: Optional[str] = None):
        super().__init__(
            f"Invalid text markup at offset {position}: {reason}",
            region_id=region_id,
            details={'reason': reason, 'position': position},
            suggestions=[
                'Spans look like <span color="#C00000" size="18"/text>',
                "Escape literal angle brackets as \\< and \\>, or use the markup_escape filter"
            ]
        )
        self.position = position


class ImageDecodeError(RegionError):
    """Raised when an image asset is missing or cannot be decoded."""

    def __init__(self, path: str, reason: str, region_id: Optional[str] = None):
        super().__init__(
            f"Failed to load image {path}: {reason}",
            region_id=region_id,
            details={'path': path, 'reason': reason},
            suggestions=[
                f"Ensure the asset exists at: {path}",
                "Check the ASSET_ROOT setting",
                "Use the 'placeholder' missing asset policy to render the card anyway"
            ]
        )
        self.path = path


class CanvasError(CardsmithError):
    """Raised when the final surface of a card cannot be produced."""
    pass


class RenderError(CardsmithError):
    """Per-row failure aggregating the region errors that aborted the card."""

    def __init__(self, message: str, row_index: Optional[int] = None,
                 region_errors: List[CardsmithError] = None, details: Dict[str, Any] = None):
        region_errors = list(region_errors or [])
        details = dict(details or {})
        details['row_index'] = row_index
        details['regions'] = [getattr(e, 'region_id', None) for e in region_errors]
        suggestions = []
        for error in region_errors:
            for suggestion in error.suggestions:
                if suggestion not in suggestions:
                    suggestions.append(suggestion)
        super().__init__(message, details=details, suggestions=suggestions)
        self.row_index = row_index
        self.region_errors = region_errors

    @classmethod
    def from_region_errors(cls, errors: List[CardsmithError], row_index: Optional[int] = None) -> 'RenderError':
        """Build a row error from one or more region failures."""
        summary = "; ".join(str(e) for e in errors)
        return cls(f"Card failed: {summary}", row_index=row_index, region_errors=errors)

    @property
    def region_ids(self) -> List[str]:
        return [e.region_id for e in self.region_errors if getattr(e, 'region_id', None)]

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['region_errors'] = [e.to_dict() for e in self.region_errors]
        return result


def describe_failure(error: Exception) -> str:
    """One-line description of any error for batch summaries."""
    if isinstance(error, RenderError) and error.region_errors:
        return "; ".join(describe_failure(e) for e in error.region_errors)
    return f"{error.__class__.__name__}: {error}"
