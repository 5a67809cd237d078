from __future__ import annotations

from pathlib import Path
from typing import Protocol

from catalogq.core.path_safety import PathSafetyError, validate_relative_path


class SubjectNotResolvableError(RuntimeError):
    pass


class SubjectResolver(Protocol):
    def resolve_content_root(self, space_name: str) -> Path:
        """Return the absolute storage root for a space or raise SubjectNotResolvableError."""
        ...


class SpaceRootResolver:
    """Maps a space name to ``<spaces_root>/<space_name>``; the directory must be mounted."""

    def __init__(self, spaces_root: Path):
        self._spaces_root = spaces_root.resolve(strict=False)

    def resolve_content_root(self, space_name: str) -> Path:
        try:
            rel = validate_relative_path(space_name)
        except PathSafetyError as exc:
            raise SubjectNotResolvableError(f"Invalid space name {space_name!r}: {exc}") from exc
        if len(rel.parts) != 1:
            raise SubjectNotResolvableError(f"Invalid space name {space_name!r}: nested paths are not spaces")

        content_root = self._spaces_root / rel
        if not content_root.is_dir():
            raise SubjectNotResolvableError(f"Space {space_name!r} is not available at {content_root.as_posix()}")
        return content_root
