"""Per-file read cursors: identity, offset, and last seen size.

Cursors live in memory only. They are reset to the start of the file when
the file identity (device, inode) changes or the file shrinks below the
recorded offset.
"""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileCursor:
    identity: tuple[int, int]   # (st_dev, st_ino)
    offset: int = 0
    size: int = 0
    discarding: bool = False    # inside the tail of an over-long line


class CursorTable:
    def __init__(self):
        self._cursors: dict[str, FileCursor] = {}

    def __len__(self) -> int:
        return len(self._cursors)

    def __contains__(self, path: str) -> bool:
        return path in self._cursors

    def get(self, path: str) -> FileCursor | None:
        return self._cursors.get(path)

    def update(self, path: str, identity: tuple[int, int], offset: int, size: int,
               discarding: bool = False):
        self._cursors[path] = FileCursor(identity=identity, offset=offset, size=size,
                                         discarding=discarding)

    def resolve(self, path: str, identity: tuple[int, int], size: int) -> FileCursor:
        """Return the cursor to read *path* from, resetting on rotation or truncation."""
        cursor = self._cursors.get(path)
        if cursor is None:
            cursor = FileCursor(identity=identity, offset=0, size=0)
        elif cursor.identity != identity:
            logger.info("File rotated (identity changed), reading from start: %s", path)
            cursor = FileCursor(identity=identity, offset=0, size=0)
        elif size < cursor.offset:
            logger.info("File truncated (%d < %d), reading from start: %s",
                        size, cursor.offset, path)
            cursor = FileCursor(identity=identity, offset=0, size=0)
        else:
            return cursor
        self._cursors[path] = cursor
        return cursor

    def prune(self, live_paths) -> int:
        """Forget cursors for paths not in *live_paths*. Returns how many were dropped."""
        live = set(live_paths)
        stale = [p for p in self._cursors if p not in live]
        for path in stale:
            del self._cursors[path]
            logger.debug("Dropped cursor for vanished file %s", path)
        return len(stale)

    def clear(self):
        self._cursors.clear()
