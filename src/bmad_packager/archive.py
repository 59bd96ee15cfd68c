"""Zip archive writing and reading for .bmad bundles.

Archives are byte-for-byte reproducible: members are written in sorted
order with a fixed timestamp and fixed permissions, so exporting the same
project twice produces identical bytes.
"""

import io
import logging
import zipfile
from collections.abc import Mapping, Sequence
from pathlib import Path

from bmad_packager.assembler import assemble_export_files
from bmad_packager.core.config import get_config
from bmad_packager.core.exceptions import ArchiveError, BundleReadError
from bmad_packager.core.ids import is_safe_zip_path, normalize_zip_path
from bmad_packager.core.types import FileContent, WorkflowExportInput, ZipBundleBuildResult
from bmad_packager.export.bundle import format_issue, validate_export_bundle

logger = logging.getLogger(__name__)

# Earliest timestamp the zip format can store
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
TEXT_EXTENSIONS = (".json", ".md", ".yaml", ".yml", ".txt")

_COMPRESSION = {"deflated": zipfile.ZIP_DEFLATED, "stored": zipfile.ZIP_STORED}


def build_zip_bytes(files_by_path: Mapping[str, FileContent]) -> bytes:
    """Write a bundle into deterministic zip bytes.

    Raises:
        ArchiveError: If a member path is unsafe or the archive cannot be written.

    """
    compression = _COMPRESSION[get_config().zip_compression]
    buffer = io.BytesIO()
    try:
        with zipfile.ZipFile(buffer, "w", compression=compression) as zf:
            for path in sorted(files_by_path):
                if not is_safe_zip_path(path):
                    raise ArchiveError(f"Refusing to write unsafe archive member: {path!r}")
                content = files_by_path[path]
                data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
                info = zipfile.ZipInfo(path, date_time=ZIP_EPOCH)
                info.compress_type = compression
                info.external_attr = 0o644 << 16
                zf.writestr(info, data)
    except (OSError, zipfile.BadZipFile, ValueError) as e:
        raise ArchiveError(f"Cannot write zip archive: {e}") from e
    return buffer.getvalue()


def build_zip_bundle(
    project_name: str,
    package_manifest_json: str,
    agent_manifest_json: str,
    workflows: Sequence[WorkflowExportInput],
    assets: Mapping[str, FileContent] | None = None,
) -> ZipBundleBuildResult:
    """Assemble, validate and zip a project. Never returns partial bytes."""
    build = assemble_export_files(
        project_name, package_manifest_json, agent_manifest_json, workflows, assets
    )
    if build.files_by_path is None:
        return ZipBundleBuildResult(
            filename=build.filename, zip_bytes=None, warnings=build.warnings, errors=build.errors
        )

    warnings = list(build.warnings)
    if get_config().validate_before_archive:
        validation = validate_export_bundle(build.files_by_path)
        warnings.extend(format_issue(i) for i in validation.issues if i.severity == "warning")
        if not validation.ok:
            errors = [format_issue(i) for i in validation.issues if i.severity == "error"]
            return ZipBundleBuildResult(filename=build.filename, zip_bytes=None, warnings=warnings, errors=errors)

    try:
        zip_bytes = build_zip_bytes(build.files_by_path)
    except ArchiveError as e:
        logger.error("Zip generation failed for %s: %s", build.filename, e)
        return ZipBundleBuildResult(
            filename=build.filename,
            zip_bytes=None,
            warnings=warnings,
            errors=[f"export failed: cannot produce zip bytes ({e})"],
        )
    logger.debug("Built %s (%d bytes)", build.filename, len(zip_bytes))
    return ZipBundleBuildResult(filename=build.filename, zip_bytes=zip_bytes, warnings=warnings)


def _decode_member(path: str, data: bytes) -> FileContent:
    if not path.lower().endswith(TEXT_EXTENSIONS):
        return data
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise BundleReadError(f"Bundle member is not valid UTF-8: {path}", member=path) from e


def _read_zip(source: io.BytesIO | Path) -> dict[str, FileContent]:
    files: dict[str, FileContent] = {}
    try:
        with zipfile.ZipFile(source, "r") as zf:
            for info in sorted(zf.infolist(), key=lambda i: i.filename):
                if info.is_dir():
                    continue
                path = info.filename
                if not is_safe_zip_path(path):
                    raise BundleReadError(f"Unsafe archive member: {path!r}", member=path)
                files[path] = _decode_member(path, zf.read(info))
    except zipfile.BadZipFile as e:
        raise BundleReadError(f"Not a zip archive: {e}") from e
    return files


def _read_directory(root: Path) -> dict[str, FileContent]:
    files: dict[str, FileContent] = {}
    for file_path in sorted(p for p in root.rglob("*") if p.is_file()):
        path = normalize_zip_path(file_path.relative_to(root).as_posix())
        try:
            data = file_path.read_bytes()
        except OSError as e:
            raise BundleReadError(f"Cannot read bundle file {path}: {e}", member=path) from e
        files[path] = _decode_member(path, data)
    return files


def read_bundle(source: Path | bytes) -> dict[str, FileContent]:
    """Read a bundle back into a path -> content map.

    Args:
        source: Zip bytes, a .bmad/.zip file, or an unpacked bundle directory.

    Returns:
        Text for JSON/Markdown/YAML/text members, bytes for everything else.

    Raises:
        BundleReadError: If the source is missing, not a zip, or unsafe.

    """
    if isinstance(source, (bytes, bytearray)):
        return _read_zip(io.BytesIO(bytes(source)))

    path = Path(source)
    if not path.exists():
        raise BundleReadError(f"Bundle not found: {path}")
    if path.is_dir():
        return _read_directory(path)
    try:
        return _read_zip(path)
    except OSError as e:
        raise BundleReadError(f"Cannot read bundle {path}: {e}") from e
