from __future__ import annotations

import io
import logging
import zipfile

from src.sandbox_files.tree import FileNode

logger = logging.getLogger(__name__)

MAX_ARCHIVE_ENTRIES = 5000
MAX_FILE_BYTES = 5 * 1024 * 1024
MAX_TOTAL_BYTES = 100 * 1024 * 1024


class ArchiveError(ValueError):
    pass


def _skip(path: str) -> bool:
    # macOS resource forks and dot entries (".git/", ".DS_Store", ...) are not project files.
    return path.startswith("__MACOSX") or path.startswith(".") or "/." in path


def _clean_path(raw: str) -> str | None:
    path = raw.replace("\\", "/").rstrip("/")
    while path.startswith("./"):
        path = path[2:]
    if not path:
        return None
    if path.startswith("/") or any(p in ("", "..") for p in path.split("/")):
        raise ArchiveError(f"invalid archive entry: {raw!r}")
    return path


def extract_zip(data: bytes) -> list[FileNode]:
    """Extract a zip archive into a file tree.

    Directory entries are optional: missing parents are created on demand.
    Contents are decoded as UTF-8 with replacement characters for binary data.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise ArchiveError("not a valid zip archive") from exc

    roots: list[FileNode] = []
    dirs: dict[str, FileNode] = {}
    files: set[str] = set()
    total = 0

    def ensure_dir(path: str) -> list[FileNode]:
        if not path:
            return roots
        existing = dirs.get(path)
        if existing is not None:
            assert existing.children is not None
            return existing.children
        if path in files:
            raise ArchiveError(f"archive entry is both file and directory: {path}")
        parent, _, name = path.rpartition("/")
        siblings = ensure_dir(parent)
        node = FileNode(name=name, path=path, kind="directory", children=[])
        siblings.append(node)
        dirs[path] = node
        return node.children  # type: ignore[return-value]

    with zf:
        infos = sorted(zf.infolist(), key=lambda i: i.filename)
        if len(infos) > MAX_ARCHIVE_ENTRIES:
            raise ArchiveError(f"archive has too many entries ({len(infos)})")

        for info in infos:
            path = _clean_path(info.filename)
            if path is None or _skip(path):
                continue
            if info.is_dir():
                ensure_dir(path)
                continue

            if info.file_size > MAX_FILE_BYTES:
                logger.warning("Skipping oversized archive entry %s (%d bytes)", path, info.file_size)
                continue
            total += info.file_size
            if total > MAX_TOTAL_BYTES:
                raise ArchiveError("archive is too large")

            try:
                raw = zf.read(info)
            except (zipfile.BadZipFile, RuntimeError, OSError) as exc:
                raise ArchiveError(f"failed to read {path}: {exc}") from exc

            parent, _, name = path.rpartition("/")
            if path in dirs:
                raise ArchiveError(f"archive entry is both file and directory: {path}")
            siblings = ensure_dir(parent)
            files.add(path)
            siblings.append(
                FileNode(
                    name=name,
                    path=path,
                    kind="file",
                    content=raw.decode("utf-8", errors="replace"),
                )
            )

    return roots
