"""YAML frontmatter extraction and parsing for v1.1 Markdown documents.

workflow.md and steps/*.md files must start with a ``---`` fenced YAML block.
This module is strict about placement: the fence must be the very first line
(an optional UTF-8 BOM is tolerated), because the runtime reads it the same way.

Functions:
- extract_yaml_frontmatter: Locate the YAML text between the fences
- parse_yaml_to_object: Parse that text into a mapping
- parse_markdown_frontmatter: Both steps; missing frontmatter is an error
- split_markdown_frontmatter: Lenient split into (data, body) for readers
"""

import logging
import re
from dataclasses import dataclass
from typing import Any

import yaml

logger = logging.getLogger(__name__)

LEADING_WHITESPACE = "LEADING_WHITESPACE"
UNCLOSED_FRONTMATTER = "UNCLOSED_FRONTMATTER"
MISSING_FRONTMATTER = "MISSING_FRONTMATTER"
FRONTMATTER_NOT_OBJECT = "FRONTMATTER_NOT_OBJECT"
INVALID_YAML = "INVALID_YAML"

_FRONTMATTER_RE = re.compile(
    r"^\ufeff?---[ \t]*\r?\n(?:([\s\S]*?)\r?\n)?---[ \t]*(?:\r?\n|\Z)"
)
_OPEN_FENCE_RE = re.compile(r"^\ufeff?---[ \t]*(?:\r?\n|\Z)")
_LEADING_WS_RE = re.compile(r"^\ufeff?\s+---[ \t]*(?:\r?\n|\Z)")


@dataclass(frozen=True)
class FrontmatterExtractResult:
    """Raw frontmatter text, or the reason it could not be located.

    Attributes:
        yaml: YAML text between the fences, None when absent or invalid.
        error: Human readable problem description, None on success.
        code: Machine readable error code, None on success.
        body: Markdown following the closing fence ("" unless extracted).

    """

    yaml: str | None
    error: str | None = None
    code: str | None = None
    body: str = ""


@dataclass(frozen=True)
class FrontmatterParseResult:
    """Parsed frontmatter mapping, or the reason it could not be parsed."""

    data: dict[str, Any] | None
    error: str | None = None
    code: str | None = None


def extract_yaml_frontmatter(markdown: str | None) -> FrontmatterExtractResult:
    """Locate the leading YAML frontmatter block of a Markdown document.

    Args:
        markdown: Full document text.

    Returns:
        yaml=None, error=None when the document has no frontmatter at all.
        An error with code LEADING_WHITESPACE or UNCLOSED_FRONTMATTER when a
        fence exists but is misplaced or never closed.

    """
    raw = markdown or ""
    if not raw.strip():
        return FrontmatterExtractResult(yaml=None)

    if _LEADING_WS_RE.match(raw):
        return FrontmatterExtractResult(
            yaml=None,
            error=(
                "frontmatter must start on the first line "
                "(remove leading blank lines or spaces)"
            ),
            code=LEADING_WHITESPACE,
        )

    match = _FRONTMATTER_RE.match(raw)
    if match is None:
        if _OPEN_FENCE_RE.match(raw):
            return FrontmatterExtractResult(
                yaml=None,
                error="frontmatter is not closed (missing closing `---`)",
                code=UNCLOSED_FRONTMATTER,
            )
        return FrontmatterExtractResult(yaml=None)

    return FrontmatterExtractResult(yaml=match.group(1) or "", body=raw[match.end() :])


def parse_yaml_to_object(yaml_text: str | None) -> FrontmatterParseResult:
    """Parse frontmatter YAML into a mapping.

    Empty text and an explicit YAML null both yield an empty mapping.
    """
    trimmed = (yaml_text or "").strip()
    if not trimmed:
        return FrontmatterParseResult(data={})

    try:
        parsed = yaml.safe_load(trimmed)
    except yaml.YAMLError as e:
        line_info = ""
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            line_info = f" (line {mark.line + 1}, column {mark.column + 1})"
        problem = getattr(e, "problem", None) or str(e)
        return FrontmatterParseResult(
            data=None,
            error=f"frontmatter YAML is invalid{line_info}: {problem}",
            code=INVALID_YAML,
        )

    if parsed is None:
        return FrontmatterParseResult(data={})
    if not isinstance(parsed, dict):
        return FrontmatterParseResult(
            data=None,
            error=(
                "frontmatter must be a YAML mapping (key: value), "
                f"got {type(parsed).__name__}"
            ),
            code=FRONTMATTER_NOT_OBJECT,
        )
    return FrontmatterParseResult(data=parsed)


def parse_markdown_frontmatter(markdown: str | None) -> FrontmatterParseResult:
    """Extract and parse frontmatter, treating its absence as an error."""
    extracted = extract_yaml_frontmatter(markdown)
    if extracted.error:
        return FrontmatterParseResult(data=None, error=extracted.error, code=extracted.code)
    if extracted.yaml is None:
        return FrontmatterParseResult(
            data=None,
            error="missing frontmatter (file must start with `---`)",
            code=MISSING_FRONTMATTER,
        )
    return parse_yaml_to_object(extracted.yaml)


def split_markdown_frontmatter(markdown: str | None) -> tuple[dict[str, Any] | None, str]:
    """Split a document into (frontmatter mapping, body) without failing.

    Returns (None, original text) when the frontmatter is absent or invalid.
    """
    raw = markdown or ""
    extracted = extract_yaml_frontmatter(raw)
    if extracted.yaml is None:
        return None, raw
    parsed = parse_yaml_to_object(extracted.yaml)
    if parsed.data is None:
        logger.debug("Ignoring unparsable frontmatter: %s", parsed.error)
        return None, raw
    return parsed.data, extracted.body
