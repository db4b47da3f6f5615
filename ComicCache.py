"""
Bounded on-disk comic cache.

Rendered comics are stored as regular files directly inside the cache
directory, named "(<id>) <title>.pdf". CacheStore keeps an ordered mapping
from comic ID to that file name so repeat requests skip the rendering
process. The mapping order is the age order: the first key is the oldest
entry and is the one evicted when the capacity is exceeded.

Re-inserting an ID moves it to the newest position, and request handling
touches an entry on every cache hit, so the bound behaves as an LRU.

On startup the mapping is rebuilt from the directory contents. Subdirectories
are per-comic working directories left behind by interrupted runs and are
deleted.

None of the methods suspend, so when all callers live on the same asyncio
loop every mutation is atomic with respect to other requests.
"""

import logging
import os
import re
import shutil
from collections import OrderedDict
from typing import List, Optional

LOGGER = logging.getLogger("jm2pdf")

# "(366517) Example.pdf" -> 366517
COMIC_FILE_PATTERN = re.compile(r"^\((\d+)\) ")
COMIC_SUFFIX = ".pdf"


def ComicIdExtractor(fileName: str) -> Optional[int]:
    """Return the comic ID encoded in a cached file name, or None."""
    match = COMIC_FILE_PATTERN.match(fileName)
    if not match:
        return None
    return int(match.group(1))


def WorkingDirResolver(fileName: str) -> str:
    """
    Name of the working directory the rendering script used for a result.

    The script stores intermediate images in a directory named after the
    title, i.e. the result file name without its "(<id>) " prefix and ".pdf"
    suffix: "(366517) Example.pdf" -> "Example".

    Returns "" when the title does not name a directory of its own, e.g.
    "(1) ..pdf" would otherwise resolve to the cache directory itself.
    """
    title = COMIC_FILE_PATTERN.sub("", fileName, count=1)
    if title.lower().endswith(COMIC_SUFFIX):
        title = title[:-len(COMIC_SUFFIX)]
    if title in (".", ".."):
        return ""
    return title


def _CreationTime(entry: os.DirEntry) -> float:
    stat = entry.stat(follow_symlinks=False)
    # st_birthtime is not available on every platform / filesystem
    return getattr(stat, "st_birthtime", stat.st_ctime)


class CacheStore:
    """
    Mapping from comic ID to cached file name with oldest-first eviction.

    Args:
        cacheDir: Directory holding the cached files
        capacity: Maximum number of entries, 0 = unlimited
    """

    def __init__(self, cacheDir: str, capacity: int = 0):
        if capacity < 0:
            raise ValueError(f"capacity must be >= 0, got {capacity}")
        self.cacheDir = cacheDir
        self.capacity = capacity
        self._entries = OrderedDict()

    @classmethod
    def rehydrate(cls, cacheDir: str, capacity: int = 0) -> "CacheStore":
        """
        Build a store from the files already present in cacheDir.

        Subdirectories are removed. Files are inserted in ascending creation
        time, so the oldest file on disk is the first to be evicted. Names
        without a "(<id>) " prefix are skipped with a warning. Filesystem
        errors while scanning propagate to the caller.
        """
        store = cls(cacheDir, capacity)
        os.makedirs(cacheDir, exist_ok=True)

        records_ = []
        with os.scandir(cacheDir) as entries_:
            for entry in entries_:
                if entry.is_dir(follow_symlinks=False):
                    LOGGER.info(f"Removing stale working directory {entry.path}")
                    shutil.rmtree(entry.path)
                elif entry.is_file(follow_symlinks=False):
                    records_.append((_CreationTime(entry), entry.name))

        records_.sort()
        for _, fileName in records_:
            comicId = ComicIdExtractor(fileName)
            if comicId is None:
                LOGGER.warning(f"Skipping cache file with unrecognized name: {fileName}")
                continue
            store._entries[comicId] = fileName
            store._entries.move_to_end(comicId)

        evicted_ = store._evictOverflow()
        LOGGER.info(f"Cache rehydrated from {cacheDir}: {len(store)} entries, {len(evicted_)} evicted")
        return store

    def filePath(self, fileName: str) -> str:
        return os.path.join(self.cacheDir, fileName)

    def get(self, comicId: int) -> Optional[str]:
        """
        Look up the cached file name for a comic.

        An entry whose file has disappeared from disk counts as a miss; the
        mapping itself is not modified.
        """
        fileName = self._entries.get(comicId)
        if fileName is None:
            return None
        if not os.path.isfile(self.filePath(fileName)):
            LOGGER.debug(f"Cached file for {comicId} is gone: {fileName}")
            return None
        return fileName

    def touch(self, comicId: int) -> None:
        if comicId in self._entries:
            self._entries.move_to_end(comicId)

    def put(self, comicId: int, fileName: str) -> List[int]:
        """
        Insert (or re-insert) an entry as the newest one, then evict.

        Returns:
            List[int]: IDs evicted to get back under capacity, oldest first
        """
        self._entries[comicId] = fileName
        self._entries.move_to_end(comicId)
        return self._evictOverflow()

    def clear(self) -> None:
        """Forget every entry. Files on disk are left alone."""
        self._entries.clear()

    def ids(self) -> List[int]:
        """Cached IDs, oldest first."""
        return list(self._entries.keys())

    def _evictOverflow(self) -> List[int]:
        evicted_ = []
        while self.capacity > 0 and len(self._entries) > self.capacity:
            comicId, fileName = self._entries.popitem(last=False)
            evicted_.append(comicId)
            try:
                os.remove(self.filePath(fileName))
                LOGGER.info(f"Evicted comic {comicId} ({fileName})")
            except OSError as exception:
                # Entry is dropped anyway; the file may stay behind as an orphan
                LOGGER.warning(f"Evicted comic {comicId} but could not delete {fileName}: {exception}")
        return evicted_

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, comicId: int) -> bool:
        return comicId in self._entries
