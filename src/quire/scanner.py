"""Filesystem scanner for manuscript image folders."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path

from utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_IMAGE_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".tif",
        ".tiff",
    }
)


@dataclass(frozen=True)
class FileInfo:
    """Lightweight file metadata for scanning results."""

    path: Path
    structural_path: str
    size_bytes: int

    @property
    def label(self) -> str:
        return self.path.name


def scan_roots(roots: Sequence[Path], extensions: frozenset[str] | None = None) -> Iterator[FileInfo]:
    """Recursively scan image roots and yield image file descriptors in a stable order.

    Args:
        roots: Root directories to scan.
        extensions: Allowed file extensions, lowercased and including the leading dot.
            When omitted, :data:`DEFAULT_IMAGE_EXTENSIONS` is used.

    Yields:
        FileInfo instances whose ``structural_path`` is the POSIX path relative
        to the root's parent, so the root folder name is the first segment.
    """

    allowed = extensions or DEFAULT_IMAGE_EXTENSIONS

    for root in roots:
        if not root.exists() or not root.is_dir():
            LOGGER.warning("scan_root_missing", extra={"root": str(root)})
            continue

        base = root.resolve().parent
        for path in sorted(root.resolve().rglob("*")):
            if not path.is_file():
                continue

            if path.suffix.lower() not in allowed:
                continue

            yield FileInfo(
                path=path,
                structural_path=path.relative_to(base).as_posix(),
                size_bytes=path.stat().st_size,
            )


__all__ = ["FileInfo", "DEFAULT_IMAGE_EXTENSIONS", "scan_roots"]
