"""Identifier and archive path helpers shared by every pipeline stage."""

import itertools
import re

ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]*$")

# Characters that are unsafe in file names on at least one major platform
_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|]+')
_SLUG_INVALID = re.compile(r"[^a-z0-9._:-]+")


def is_valid_id(value: str) -> bool:
    """Check an agent, workflow, or node id against the v1.1 id pattern."""
    return isinstance(value, str) and ID_PATTERN.match(value) is not None


def slugify_agent_id(name: str) -> str:
    """Derive an agent id from a display name.

    Example:
        >>> slugify_agent_id("  Product Owner ")
        'product-owner'
        >>> slugify_agent_id("__x")
        'agent-__x'

    """
    cleaned = _SLUG_INVALID.sub("-", name.strip().lower())
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    if not cleaned:
        return "agent"
    if not re.match(r"[a-z0-9]", cleaned):
        return f"agent-{cleaned}"
    return cleaned


def unique_agent_id(name: str, existing: set[str]) -> str:
    """Slugify ``name`` and append -2, -3, ... until it is not in ``existing``."""
    base = slugify_agent_id(name)
    if base not in existing:
        return base
    for suffix in itertools.count(2):
        candidate = f"{base}-{suffix}"
        if candidate not in existing:
            return candidate
    raise AssertionError("unreachable")


def normalize_zip_path(path: str) -> str:
    """Trim, convert backslashes, and drop a leading ``./`` prefix."""
    normalized = path.strip().replace("\\", "/")
    return re.sub(r"^\./+", "", normalized)


def is_safe_zip_path(path: str) -> bool:
    """Check that an archive-relative path cannot escape the archive root.

    Rejects empty paths, absolute paths, NUL bytes, and any empty, ``.`` or
    ``..`` segment.
    """
    if not path:
        return False
    if path.startswith("/") or "\x00" in path:
        return False
    return all(part not in ("", ".", "..") for part in path.split("/"))


def sanitize_filename(name: str, fallback: str = "Untitled", max_length: int = 120) -> str:
    """Turn a project name into a portable archive base name.

    Example:
        >>> sanitize_filename('  My: "Project"  ')
        'My- -Project-'

    """
    raw = name.strip() or fallback
    cleaned = _UNSAFE_FILENAME_CHARS.sub("-", raw)
    cleaned = re.sub(r"\s+", " ", cleaned).strip().rstrip(".")
    base = cleaned or fallback
    if len(base) > max_length:
        return base[:max_length].strip()
    return base


def workflow_paths(workflow_id: str) -> tuple[str, str]:
    """Return the archive paths of a workflow's markdown and graph documents."""
    base = f"workflows/{workflow_id}"
    return f"{base}/workflow.md", f"{base}/workflow.graph.json"
