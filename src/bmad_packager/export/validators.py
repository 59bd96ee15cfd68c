"""JSON Schema validator registry for the five v1.1 document kinds.

Schemas ship as package data under ``bmad_packager/export/schemas``. Each one
is compiled on first use and cached for the life of the process; a compiled
validator is never mutated afterwards, so concurrent readers are safe.

Usage:
    from bmad_packager.export.validators import DocumentKind, get_validator

    validator = get_validator(DocumentKind.AGENTS_MANIFEST)
    if not validator.validate(manifest):
        for line in format_violations(validator.errors):
            print(line)
"""

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from importlib.resources import files
from threading import Lock
from typing import Any

from jsonschema import Draft202012Validator, FormatChecker
from jsonschema.exceptions import ValidationError

logger = logging.getLogger(__name__)

_ENUM_SAMPLE_SIZE = 6
_REQUIRED_RE = re.compile(r"^'(.+)' is a required property")
_LIMIT_KEYWORDS = frozenset({"minItems", "minLength", "maxLength", "minimum", "maximum"})


class DocumentKind(str, Enum):
    """Document kinds with a bundled schema; the value is the schema file stem."""

    PACKAGE_MANIFEST = "bmad"
    AGENTS_MANIFEST = "agents"
    WORKFLOW_GRAPH = "workflow-graph"
    WORKFLOW_FRONTMATTER = "workflow-frontmatter"
    STEP_FRONTMATTER = "step-frontmatter"

    @property
    def schema_filename(self) -> str:
        """File name of the schema inside the schemas package directory."""
        return f"{self.value}.schema.json"


@dataclass(frozen=True)
class SchemaViolation:
    """A single schema violation with machine-actionable pointers.

    Attributes:
        instance_path: JSON pointer into the validated value ("" for root).
        schema_path: JSON pointer into the schema, prefixed with "#".
        message: Validator message.
        keyword: Failing JSON Schema keyword (e.g. "required").
        hint: Short human hint derived from the keyword, or None.

    """

    instance_path: str
    schema_path: str
    message: str
    keyword: str
    hint: str | None = None


def _escape_pointer_token(token: Any) -> str:
    return str(token).replace("~", "~0").replace("/", "~1")


def _to_pointer(parts: Iterable[Any]) -> str:
    return "".join(f"/{_escape_pointer_token(p)}" for p in parts)


def _format_limit(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _disallowed_properties(error: ValidationError) -> list[str]:
    instance = error.instance
    schema = error.schema if isinstance(error.schema, dict) else {}
    if not isinstance(instance, dict):
        return []
    declared = set(schema.get("properties", {}))
    patterns = [re.compile(p) for p in schema.get("patternProperties", {})]
    return [
        key
        for key in instance
        if key not in declared and not any(p.search(key) for p in patterns)
    ]


def build_hint(error: ValidationError) -> str | None:
    """Map a jsonschema error to a short, deterministic human hint.

    Returns:
        The hint text, or None for keywords without a mapping.

    """
    keyword = error.validator
    value = error.validator_value

    if keyword == "additionalProperties":
        extra = _disallowed_properties(error)
        if extra:
            return f"disallowed field {', '.join(extra)}"
        return None
    if keyword == "required":
        match = _REQUIRED_RE.match(error.message)
        if match:
            return f"missing field {match.group(1)}"
        return None
    if keyword in _LIMIT_KEYWORDS:
        return f"{keyword}={_format_limit(value)}"
    if keyword == "type":
        expected = "|".join(value) if isinstance(value, list) else str(value)
        return f"expected type {expected}"
    if keyword == "format":
        return f"invalid format {value}"
    if keyword == "enum":
        allowed = list(value) if isinstance(value, list) else []
        if not allowed:
            return "value is not allowed"
        sample = ", ".join(json.dumps(v, ensure_ascii=False) for v in allowed[:_ENUM_SAMPLE_SIZE])
        remainder = len(allowed) - _ENUM_SAMPLE_SIZE
        suffix = f" ... (+{remainder} more)" if remainder > 0 else ""
        return f"allowed values: {sample}{suffix}"
    if keyword == "pattern":
        return "does not match pattern"
    return None


def _to_violation(error: ValidationError) -> SchemaViolation:
    return SchemaViolation(
        instance_path=_to_pointer(error.absolute_path),
        schema_path="#" + _to_pointer(error.absolute_schema_path),
        message=error.message,
        keyword=str(error.validator),
        hint=build_hint(error),
    )


def _error_sort_key(error: ValidationError) -> tuple[str, str]:
    return _to_pointer(error.absolute_path), _to_pointer(error.absolute_schema_path)


class SchemaValidator:
    """Compiled validator for one document kind.

    ``validate`` mirrors a boolean validate-function with a retrievable
    ``errors`` list from the last call; ``check`` is the side-effect free form.
    """

    def __init__(self, kind: DocumentKind, schema: dict[str, Any]) -> None:
        Draft202012Validator.check_schema(schema)
        self.kind = kind
        self.schema = schema
        self._validator = Draft202012Validator(schema, format_checker=FormatChecker())
        self.errors: list[SchemaViolation] = []

    def check(self, value: Any) -> list[SchemaViolation]:
        """Return every violation of ``value``, ordered by instance path."""
        found = sorted(self._validator.iter_errors(value), key=_error_sort_key)
        return [_to_violation(e) for e in found]

    def validate(self, value: Any) -> bool:
        """Validate ``value`` and remember the violations in ``errors``."""
        self.errors = self.check(value)
        return not self.errors

    def __repr__(self) -> str:
        return f"SchemaValidator(kind={self.kind.value!r})"


_validators: dict[DocumentKind, SchemaValidator] = {}
_validators_lock = Lock()


def load_schema(kind: DocumentKind) -> dict[str, Any]:
    """Read a bundled schema document."""
    resource = files("bmad_packager.export") / "schemas" / kind.schema_filename
    schema: dict[str, Any] = json.loads(resource.read_text(encoding="utf-8"))
    return schema


def get_validator(kind: DocumentKind) -> SchemaValidator:
    """Return the process-wide validator for ``kind``, compiling it once."""
    with _validators_lock:
        validator = _validators.get(kind)
        if validator is None:
            logger.debug("Compiling %s schema", kind.value)
            validator = SchemaValidator(kind, load_schema(kind))
            _validators[kind] = validator
        return validator


def clear_validator_cache() -> None:
    """Drop all compiled validators. Used by tests."""
    with _validators_lock:
        _validators.clear()


def format_violations(violations: Iterable[SchemaViolation]) -> list[str]:
    """Render violations as ``<path>: <message>`` lines (root shown as "/")."""
    lines = []
    for v in violations:
        line = f"{v.instance_path or '/'}: {v.message}"
        if v.hint:
            line = f"{line} ({v.hint})"
        lines.append(line)
    return lines
