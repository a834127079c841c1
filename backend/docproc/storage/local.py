"""
Document Storage — shared volume path resolution

Documents live on a volume mounted by both this service and the OCR
engine. The database stores paths relative to storage_base_path; the OCR
engine needs the absolute path.

Containment invariant:
  A stored relative path can never resolve outside the base directory.
  "../" segments and absolute paths that escape the root are rejected
  before the filesystem is consulted.
"""

from __future__ import annotations

import logging
from pathlib import Path

from docproc.core.errors import FileNotFoundForProcessingError

logger = logging.getLogger(__name__)


class DocumentStorage:

    def __init__(self, base_path: str | Path) -> None:
        self._base = Path(base_path).resolve()

    @property
    def base_path(self) -> Path:
        return self._base

    def get_absolute_path(self, relative_path: str) -> Path:
        """
        Resolve relative_path against the base directory.
        Raises FileNotFoundForProcessingError for empty or escaping paths.
        """
        if not relative_path or not relative_path.strip():
            raise FileNotFoundForProcessingError(relative_path or "<empty>")

        candidate = (self._base / relative_path.lstrip("/")).resolve()
        if candidate != self._base and self._base not in candidate.parents:
            logger.warning(
                "Rejected storage path outside base | path=%s base=%s",
                relative_path, self._base,
            )
            raise FileNotFoundForProcessingError(relative_path)
        return candidate

    def exists(self, relative_path: str) -> bool:
        try:
            return self.get_absolute_path(relative_path).is_file()
        except FileNotFoundForProcessingError:
            return False

    def resolve_existing(self, relative_path: str) -> Path:
        """Absolute path of an existing file, or FileNotFoundForProcessingError."""
        absolute = self.get_absolute_path(relative_path)
        if not absolute.is_file():
            logger.error(
                "Document file not found | relative_path=%s absolute_path=%s",
                relative_path, absolute,
            )
            raise FileNotFoundForProcessingError(str(absolute))
        return absolute


def get_document_storage() -> DocumentStorage:
    from docproc.core.config import settings

    return DocumentStorage(settings.storage_base_path)
