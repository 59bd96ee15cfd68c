"""Package assets: the ``assets/**`` text files shipped inside a bundle.

The project stores assets as a JSON object mapping archive path to content.
Runtime code refers to them through ``@pkg/`` paths.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any

from bmad_packager.core.ids import is_safe_zip_path, normalize_zip_path

ASSETS_PREFIX = "assets/"
RUNTIME_PREFIX = "@pkg/"
ALLOWED_ASSET_EXTENSIONS = (".md", ".txt", ".json", ".yaml", ".yml")

_ASSET_PATH_RE = re.compile(r"^[A-Za-z0-9._/-]+$")


@dataclass(frozen=True)
class AssetListItem:
    """One asset with its UTF-8 size in bytes."""

    path: str
    content: str
    size: int


@dataclass(frozen=True)
class AssetsParseResult:
    """Parsed assets map.

    Attributes:
        assets: Assets sorted by path.
        mapping: Path -> content, only safe ``assets/`` keys with text values.
        total_bytes: Sum of all asset sizes.
        error: Parse problem, None on success.

    """

    assets: list[AssetListItem] = field(default_factory=list)
    mapping: dict[str, str] = field(default_factory=dict)
    total_bytes: int = 0
    error: str | None = None


@dataclass(frozen=True)
class PathResult:
    """A normalized path, or the reason it was rejected."""

    value: str | None
    error: str | None = None


def parse_assets_json(raw: str | None) -> AssetsParseResult:
    """Parse the stored assets JSON, silently skipping unusable entries."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return AssetsParseResult()
    try:
        parsed: Any = json.loads(trimmed)
    except json.JSONDecodeError:
        return AssetsParseResult(error="assets JSON could not be parsed (invalid JSON)")
    if not isinstance(parsed, dict):
        return AssetsParseResult(error="assets JSON must be an object")

    mapping = {}
    for raw_key, value in parsed.items():
        if not isinstance(value, str):
            continue
        key = normalize_zip_path(raw_key)
        if key.startswith(ASSETS_PREFIX) and is_safe_zip_path(key):
            mapping[key] = value

    assets = [
        AssetListItem(path=path, content=mapping[path], size=len(mapping[path].encode("utf-8")))
        for path in sorted(mapping)
    ]
    return AssetsParseResult(
        assets=assets,
        mapping={a.path: a.content for a in assets},
        total_bytes=sum(a.size for a in assets),
    )


def normalize_asset_path(path: str) -> PathResult:
    """Validate a user-entered asset path.

    Example:
        >>> normalize_asset_path("./assets/guide.md").value
        'assets/guide.md'
        >>> normalize_asset_path("assets/run.sh").error
        'unsupported extension: .sh (allowed: .md .txt .json .yaml .yml)'

    """
    raw = normalize_zip_path(path)
    if not raw:
        return PathResult(None, "path must not be empty")
    if raw.startswith("/"):
        return PathResult(None, "path must be relative")
    if not raw.startswith(ASSETS_PREFIX):
        return PathResult(None, f"path must start with {ASSETS_PREFIX}")
    if raw.endswith("/"):
        return PathResult(None, "path must name a file (no trailing /)")
    if "\x00" in raw:
        return PathResult(None, "path must not contain NUL characters")
    if not _ASSET_PATH_RE.match(raw):
        return PathResult(None, "path contains invalid characters (allowed: A-Z a-z 0-9 . _ / -)")
    if not is_safe_zip_path(raw):
        return PathResult(None, "path must not contain . or .. segments")

    dot = raw.rfind(".")
    ext = raw[dot:].lower() if dot >= 0 else ""
    if ext not in ALLOWED_ASSET_EXTENSIONS:
        allowed = " ".join(ALLOWED_ASSET_EXTENSIONS)
        return PathResult(None, f"unsupported extension: {ext or '(none)'} (allowed: {allowed})")
    return PathResult(raw)


def to_runtime_asset_path(zip_path: str) -> str:
    """Map an archive path to the ``@pkg/`` path runtimes resolve."""
    cleaned = normalize_zip_path(zip_path)
    if cleaned.startswith(ASSETS_PREFIX):
        return f"{RUNTIME_PREFIX}{cleaned}"
    return f"{RUNTIME_PREFIX}{ASSETS_PREFIX}{cleaned.lstrip('/')}"
