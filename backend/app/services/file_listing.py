"""Listing of an extracted tree for display."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from app.schemas.upload import EntryKind, ExtractedEntry

logger = logging.getLogger(__name__)


@dataclass
class ListingResult:
    entries: List[ExtractedEntry]
    total_file_count: int
    total_dir_count: int
    errors: List[str] = field(default_factory=list)

    @property
    def truncated(self) -> bool:
        listed = len(self.entries)
        return listed < self.total_file_count + self.total_dir_count


def list_extracted_tree(root: Path, max_files: int = 500, max_dirs: int = 100) -> ListingResult:
    """
    Walk ``root`` and list its directories and regular files.

    Directories come first, then files, each in sorted walk order and each
    capped separately. The totals count everything found, not just what was
    listed. Errors while walking are collected rather than raised, so a
    partially unreadable tree still yields a partial listing.

    Parameters
    ----------
    root : Path
        Extraction directory; entry paths are relative to it.
    max_files, max_dirs : int
        Display caps.

    Returns
    -------
    ListingResult
    """
    dirs: List[ExtractedEntry] = []
    files: List[ExtractedEntry] = []
    errors: List[str] = []
    total_files = 0
    total_dirs = 0

    def _on_error(err: OSError) -> None:
        errors.append(f"{err.filename}: {err.strerror}")

    for current, dirnames, filenames in os.walk(root, onerror=_on_error):
        dirnames.sort()
        current_path = Path(current)

        for name in dirnames:
            total_dirs += 1
            if len(dirs) < max_dirs:
                dirs.append(
                    ExtractedEntry(
                        path=_relative(current_path / name, root),
                        size=0,
                        type=EntryKind.DIRECTORY,
                    )
                )

        for name in sorted(filenames):
            path = current_path / name
            if not path.is_file():
                continue  # sockets, fifos, dangling symlinks
            total_files += 1
            if len(files) >= max_files:
                continue
            try:
                size = path.stat().st_size
            except OSError as e:
                errors.append(f"{_relative(path, root)}: {e.strerror}")
                size = 0
            files.append(ExtractedEntry(path=_relative(path, root), size=size, type=EntryKind.FILE))

    if errors:
        logger.warning(f"Listing {root} hit {len(errors)} errors, first: {errors[0]}")

    return ListingResult(
        entries=dirs + files,
        total_file_count=total_files,
        total_dir_count=total_dirs,
        errors=errors,
    )


def _relative(path: Path, root: Path) -> str:
    return path.relative_to(root).as_posix()
