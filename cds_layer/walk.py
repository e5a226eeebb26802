from __future__ import annotations

import hashlib
import logging
import os
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from pathlib import Path

from cds_layer.errors import TimestampError
from cds_layer.runtime import COPY_CHUNK_SIZE

logger = logging.getLogger(__name__)

FIXED_TIMESTAMP = "1980-01-01 00:00:01"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def iter_tree(root: Path) -> Iterator[Path]:
    """Yield ``root`` and everything below it, parents first, in lexical order."""
    yield root
    if root.is_symlink() or not root.is_dir():
        return
    for child in sorted(root.iterdir(), key=lambda item: item.name):
        yield from iter_tree(child)


def walk_and_apply(root: Path, apply: Callable[[Path], None]) -> int:
    """Call ``apply`` on every path under ``root``; the first exception aborts the walk.

    The tree is listed up front so that reading directories cannot touch
    paths that were already visited.
    """
    paths = list(iter_tree(Path(root)))
    for path in paths:
        apply(path)
    return len(paths)


def parse_fixed_timestamp(value: str = FIXED_TIMESTAMP) -> float:
    try:
        parsed = datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError as exc:
        raise TimestampError(f"error parsing date-time {value!r}") from exc
    return parsed.timestamp()


def reset_file_times(root: Path, value: str = FIXED_TIMESTAMP) -> int:
    """Set atime and mtime of every path under ``root`` to ``value`` (UTC)."""
    stamp = parse_fixed_timestamp(value)
    follow = os.utime not in os.supports_follow_symlinks

    def _apply(path: Path) -> None:
        try:
            os.utime(path, (stamp, stamp), follow_symlinks=follow)
        except OSError as exc:
            raise TimestampError(f"error resetting file times of {path}", path=path) from exc

    try:
        count = walk_and_apply(root, _apply)
    except OSError as exc:
        raise TimestampError(f"error walking {root}", path=root) from exc
    logger.debug("reset file times of %d paths under %s", count, root)
    return count


def fingerprint_tree(root: Path, *, exclude: frozenset[str] = frozenset()) -> str:
    """SHA-256 over the relative paths and file contents below ``root``; times and modes are ignored.

    Top-level names in ``exclude`` are left out. A missing root hashes like an empty tree.
    """
    root = Path(root)
    digest = hashlib.sha256()
    if not root.is_dir():
        return digest.hexdigest()
    for path in iter_tree(root):
        if path == root:
            continue
        rel = path.relative_to(root)
        if rel.parts[0] in exclude:
            continue
        if path.is_dir():
            digest.update(f"D {rel.as_posix()}/\0".encode("utf-8"))
            continue
        digest.update(f"F {rel.as_posix()}\0".encode("utf-8"))
        with open(path, "rb") as reader:
            for chunk in iter(lambda: reader.read(COPY_CHUNK_SIZE), b""):
                digest.update(chunk)
        digest.update(b"\0")
    return digest.hexdigest()