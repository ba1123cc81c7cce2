"""
Export sources.

A source_id names a directory under the configured SOURCE_ROOT. Files in it
whose name ends with ENCRYPTED_SUFFIX are encrypted at rest with the install
secret and are decrypted by the exporter.
"""

import os
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .errors import MissingConfigurationError


ENCRYPTED_SUFFIX = '.enc'


class DirectorySource:
    """A directory of files to export."""

    def __init__(self, source_id: str, path: Path, exclude_patterns: Optional[List[str]] = None):
        """
        Initialize directory source.

        Args:
            source_id: Identifier the source was resolved from
            path: Directory holding the source files
            exclude_patterns: Glob patterns to leave out of the export (e.g. *.tmp)
        """
        self.source_id = source_id
        self.path = Path(path)
        self.exclude_patterns = exclude_patterns or []

    def is_readable(self) -> bool:
        """Check the source directory exists and can be listed."""
        return self.path.is_dir() and os.access(self.path, os.R_OK | os.X_OK)

    def _should_exclude(self, path: Path) -> bool:
        if not self.exclude_patterns:
            return False

        relative = str(path.relative_to(self.path))
        for pattern in self.exclude_patterns:
            if fnmatch(relative, pattern) or fnmatch(path.name, pattern):
                return True
            if pattern.startswith('**/') and fnmatch(path.name, pattern[3:]):
                return True

        return False

    def iter_files(self) -> Iterator[Tuple[Path, str]]:
        """
        Yield (path, archive name) for every file in the source, in a stable order.

        Raises:
            OSError: If the directory tree cannot be read
        """
        for file_path in sorted(self.path.rglob('*')):
            if not file_path.is_file() or self._should_exclude(file_path):
                continue
            yield file_path, file_path.relative_to(self.path).as_posix()

    def __repr__(self):
        return f'<DirectorySource {self.source_id} path={self.path}>'


class SourceResolver:
    """Resolves a source_id to a DirectorySource under a root directory."""

    def __init__(self, source_root: str, exclude_patterns: Optional[List[str]] = None):
        self.source_root = Path(source_root)
        self.exclude_patterns = exclude_patterns or []

    def __call__(self, source_id: str) -> DirectorySource:
        """
        Raises:
            MissingConfigurationError: If the id is malformed or the source does not exist
        """
        if not source_id or source_id in ('.', '..') or '/' in source_id or '\\' in source_id:
            raise MissingConfigurationError(f"Invalid source id: {source_id!r}")

        path = self.source_root / source_id
        if not path.exists():
            raise MissingConfigurationError(f"Source does not exist: {source_id}")

        return DirectorySource(source_id, path, self.exclude_patterns)
