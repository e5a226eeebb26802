from __future__ import annotations

import logging
import os
import shutil
import stat
import zipfile
from collections.abc import Iterator
from pathlib import Path

from cds_layer.errors import ArchiveError
from cds_layer.runtime import COPY_CHUNK_SIZE

logger = logging.getLogger(__name__)

# Earliest time a ZIP header can carry; every entry gets it so output only depends on content.
ENTRY_DATE_TIME = (1980, 1, 1, 0, 0, 0)
UNIX_SYSTEM = 3
MSDOS_DIRECTORY = 0x10


def _walk(root: Path) -> Iterator[Path]:
    # Lexical order per directory, each directory yielded before its children.
    # Symlinked directories are yielded but not entered.
    try:
        children = sorted(root.iterdir(), key=lambda item: item.name)
    except OSError as exc:
        raise ArchiveError(f"unable to list {root}", path=root) from exc
    for child in children:
        yield child
        if child.is_dir() and not child.is_symlink():
            yield from _walk(child)


def _resolve(path: Path) -> Path:
    if not path.is_symlink():
        return path
    try:
        return path.resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise ArchiveError(f"unable to eval symlink {path}", path=path) from exc


def _entry_info(name: str, st: os.stat_result) -> zipfile.ZipInfo:
    is_dir = stat.S_ISDIR(st.st_mode)
    info = zipfile.ZipInfo(name + "/" if is_dir else name, date_time=ENTRY_DATE_TIME)
    info.compress_type = zipfile.ZIP_STORED
    info.create_system = UNIX_SYSTEM
    info.external_attr = (st.st_mode & 0xFFFF) << 16
    if is_dir:
        info.external_attr |= MSDOS_DIRECTORY
    return info


def _add_entry(archive: zipfile.ZipFile, source: Path, path: Path) -> None:
    resolved = _resolve(path)
    name = path.relative_to(source).as_posix()
    try:
        st = resolved.stat()
    except OSError as exc:
        raise ArchiveError(f"unable to stat {resolved}", path=resolved) from exc

    info = _entry_info(name, st)
    if info.is_dir():
        archive.writestr(info, b"")
        return

    try:
        with open(resolved, "rb") as reader, archive.open(
            info, "w", force_zip64=st.st_size > zipfile.ZIP64_LIMIT
        ) as writer:
            shutil.copyfileobj(reader, writer, COPY_CHUNK_SIZE)
    except OSError as exc:
        raise ArchiveError(f"unable to add {path} to archive", path=path) from exc


def create_jar(source: Path, target: Path) -> Path:
    """Write every entry under ``source`` into an uncompressed archive at ``target``.

    Entries are ordered lexically with fixed timestamps, so an unchanged tree
    always yields the same bytes. Symlinks are replaced by what they point to.
    A failed call leaves ``target`` in an unusable state.
    """
    source = Path(source)
    target = Path(target)
    if not source.is_dir():
        raise ArchiveError(f"source {source} is not a readable directory", path=source)

    logger.debug("creating archive %s from %s", target, source)
    count = 0
    try:
        with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_STORED) as archive:
            for path in _walk(source):
                _add_entry(archive, source, path)
                count += 1
    except OSError as exc:
        raise ArchiveError(f"unable to write archive {target}", path=target) from exc

    logger.debug("wrote %d entries to %s", count, target)
    return target
