"""Exception hierarchy for bmad-packager.

Pipeline stages never raise for invalid input: they return errors as values.
These exceptions are reserved for the I/O boundary (config files, project
sources, archive bytes) where a caller cannot continue.
"""

__all__ = [
    "BmadPackagerError",
    "ConfigError",
    "ProjectLoadError",
    "BundleReadError",
    "ArchiveError",
]


class BmadPackagerError(Exception):
    """Base exception for all bmad-packager errors."""


class ConfigError(BmadPackagerError):
    """Configuration file missing, unreadable, or invalid."""


class ProjectLoadError(BmadPackagerError):
    """Project source file cannot be read or does not describe a project.

    Attributes:
        path: Path of the offending source file, empty if not file-based.

    """

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class BundleReadError(BmadPackagerError):
    """Archive or bundle directory cannot be read back into a file map.

    Attributes:
        member: Offending archive member, empty when the whole source failed.

    """

    def __init__(self, message: str, member: str = "") -> None:
        super().__init__(message)
        self.member = member


class ArchiveError(BmadPackagerError):
    """Zip bytes could not be produced from an assembled bundle."""
