"""
JSON Schema checks for everything storyloop persists.

state.json, iteration records, and prd.json are validated when read and
before they are written. A failing document is reported with every
offending path, not just the first, so a hand-edited prd.json can be fixed
in one pass.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Optional

import jsonschema

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"

# Per-document cap on reported problems
MAX_REPORTED_ERRORS = 5


class ValidationError(Exception):
    """A persisted document doesn't match its schema."""

    def __init__(self, schema_name: str, message: str, path: Optional[str] = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


@lru_cache(maxsize=None)
def _validator(schema_name: str) -> jsonschema.Draft7Validator:
    schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    try:
        schema = json.loads(schema_path.read_text())
    except FileNotFoundError:
        raise ValidationError(schema_name, f"No bundled schema at {schema_path}") from None
    return jsonschema.Draft7Validator(schema)


def _error_path(error: jsonschema.ValidationError) -> str:
    if not error.absolute_path:
        return "(root)"
    return "".join(f"[{p}]" if isinstance(p, int) else f".{p}" for p in error.absolute_path).lstrip(".")


def validate(data: dict, schema_name: str) -> None:
    """Check data against a bundled schema ("loop_config", "iteration", "prd").

    Raises:
        ValidationError: Listing up to MAX_REPORTED_ERRORS problems
    """
    errors = sorted(_validator(schema_name).iter_errors(data), key=lambda e: list(e.absolute_path))
    if not errors:
        return

    first = errors[0]
    if len(errors) == 1:
        raise ValidationError(schema_name, first.message, _error_path(first))

    lines = [f"{_error_path(e)}: {e.message}" for e in errors[:MAX_REPORTED_ERRORS]]
    if len(errors) > MAX_REPORTED_ERRORS:
        lines.append(f"... and {len(errors) - MAX_REPORTED_ERRORS} more")
    raise ValidationError(schema_name, f"{len(errors)} problems:\n  " + "\n  ".join(lines))


def validate_file(filepath: Path, schema_name: str, missing_ok: bool = False) -> Optional[dict]:
    """
    Read a JSON document and validate it.

    Args:
        filepath: Document to read
        schema_name: Bundled schema to check against
        missing_ok: Return None for a missing file instead of raising

    Raises:
        ValidationError: If the file is missing, isn't JSON, or fails the schema
    """
    try:
        text = filepath.read_text()
    except FileNotFoundError:
        if missing_ok:
            return None
        raise ValidationError(schema_name, f"File not found: {filepath}") from None

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(schema_name, f"{filepath} is not valid JSON: {e}") from None

    validate(data, schema_name)
    return data
