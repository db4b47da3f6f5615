"""
Unit tests - ComicCache.py

Covers:
- file name conventions (ID extraction, working directory name)
- capacity bound and oldest-first eviction on put()
- re-insertion moving an entry to the newest position
- rehydrate(): creation-time order, subdirectory purge, bad names, capacity
- get() treating a vanished file as a miss
"""
import logging
import os
import random

import pytest

import ComicCache
from ComicCache import CacheStore, ComicIdExtractor, WorkingDirResolver


def make_file(cacheDir, name, content=b"pdf"):
    path = cacheDir / name
    path.write_bytes(content)
    return path


def test_comic_id_extractor():
    assert ComicIdExtractor("(366517) Example.pdf") == 366517
    assert ComicIdExtractor("(5) Alpha (remastered).pdf") == 5
    assert ComicIdExtractor("Example.pdf") is None
    assert ComicIdExtractor("(abc) Example.pdf") is None
    assert ComicIdExtractor("(12)Example.pdf") is None


def test_working_dir_resolver():
    assert WorkingDirResolver("(366517) Example.pdf") == "Example"
    assert WorkingDirResolver("(1) A (2) B.pdf") == "A (2) B"


@pytest.mark.parametrize("fileName", ["(1) ..pdf", "(1) ...pdf", "(1) .pdf"])
def test_working_dir_resolver_never_names_the_cache_or_its_parent(fileName):
    assert WorkingDirResolver(fileName) == ""


def test_capacity_must_not_be_negative(tmp_path):
    with pytest.raises(ValueError):
        CacheStore(str(tmp_path), -1)


def test_put_never_exceeds_capacity(cache_dir):
    rng = random.Random(1234)
    for capacity in (1, 2, 5):
        store = CacheStore(str(cache_dir), capacity)
        for _ in range(60):
            comicId = rng.randint(1, 12)
            fileName = f"({comicId}) T{comicId}.pdf"
            make_file(cache_dir, fileName)
            store.put(comicId, fileName)
            assert len(store) <= capacity


def test_eviction_removes_oldest_entry_and_file(cache_dir):
    store = CacheStore(str(cache_dir), 2)
    for comicId in (1, 2, 3):
        make_file(cache_dir, f"({comicId}) T.pdf")

    assert store.put(1, "(1) T.pdf") == []
    assert store.put(2, "(2) T.pdf") == []
    assert store.put(3, "(3) T.pdf") == [1]

    assert store.ids() == [2, 3]
    assert not (cache_dir / "(1) T.pdf").exists()
    assert (cache_dir / "(2) T.pdf").exists()


def test_reinsert_moves_entry_to_newest(cache_dir):
    store = CacheStore(str(cache_dir), 2)
    for comicId in (1, 2, 3):
        make_file(cache_dir, f"({comicId}) T.pdf")

    store.put(1, "(1) T.pdf")
    store.put(2, "(2) T.pdf")
    store.put(1, "(1) T.pdf")
    evicted_ = store.put(3, "(3) T.pdf")

    assert evicted_ == [2]
    assert store.ids() == [1, 3]


def test_touch_refreshes_recency(cache_dir):
    store = CacheStore(str(cache_dir), 2)
    for comicId in (1, 2, 3):
        make_file(cache_dir, f"({comicId}) T.pdf")
    store.put(1, "(1) T.pdf")
    store.put(2, "(2) T.pdf")

    store.touch(1)
    store.touch(99)  # unknown ids are ignored
    store.put(3, "(3) T.pdf")

    assert store.ids() == [1, 3]


def test_unbounded_store_keeps_everything(cache_dir):
    store = CacheStore(str(cache_dir), 0)
    for comicId in range(1, 51):
        make_file(cache_dir, f"({comicId}) T.pdf")
        store.put(comicId, f"({comicId}) T.pdf")
    assert len(store) == 50


def test_eviction_delete_failure_is_not_fatal(cache_dir, caplog):
    store = CacheStore(str(cache_dir), 1)
    make_file(cache_dir, "(1) T.pdf")
    make_file(cache_dir, "(2) T.pdf")
    store.put(1, "(1) T.pdf")
    os.remove(cache_dir / "(1) T.pdf")

    with caplog.at_level(logging.WARNING, logger="jm2pdf"):
        evicted_ = store.put(2, "(2) T.pdf")

    assert evicted_ == [1]
    assert 1 not in store
    assert any("could not delete" in record.getMessage() for record in caplog.records)


def test_get_is_a_miss_when_file_vanished(cache_dir):
    store = CacheStore(str(cache_dir), 0)
    make_file(cache_dir, "(7) Gone.pdf")
    store.put(7, "(7) Gone.pdf")
    assert store.get(7) == "(7) Gone.pdf"

    os.remove(cache_dir / "(7) Gone.pdf")

    assert store.get(7) is None
    # get() does not mutate the mapping
    assert 7 in store


def test_clear_keeps_files(cache_dir):
    store = CacheStore(str(cache_dir), 0)
    make_file(cache_dir, "(1) T.pdf")
    store.put(1, "(1) T.pdf")

    store.clear()

    assert len(store) == 0
    assert store.get(1) is None
    assert (cache_dir / "(1) T.pdf").exists()


@pytest.fixture
def mtime_as_creation_time(monkeypatch):
    # Creation time can't be set from a test; order by mtime instead
    monkeypatch.setattr(ComicCache, "_CreationTime", lambda entry: entry.stat().st_mtime)


def test_rehydrate_orders_by_creation_time(cache_dir, mtime_as_creation_time):
    alpha = make_file(cache_dir, "(5) Alpha.pdf")
    beta = make_file(cache_dir, "(3) Beta.pdf")
    os.utime(alpha, (1000, 1000))
    os.utime(beta, (2000, 2000))

    store = CacheStore.rehydrate(str(cache_dir), 2)

    assert store.get(5) == "(5) Alpha.pdf"
    assert store.get(3) == "(3) Beta.pdf"
    assert store.ids() == [5, 3]

    make_file(cache_dir, "(9) Gamma.pdf")
    assert store.put(9, "(9) Gamma.pdf") == [5]
    assert not alpha.exists()
    assert beta.exists()


def test_rehydrate_purges_subdirectories(cache_dir):
    make_file(cache_dir, "(1) Kept.pdf")
    workingDir = cache_dir / "Kept"
    (workingDir / "nested").mkdir(parents=True)
    (workingDir / "nested" / "00001.jpg").write_bytes(b"img")

    store = CacheStore.rehydrate(str(cache_dir))

    assert not workingDir.exists()
    assert store.ids() == [1]


def test_rehydrate_skips_unrecognized_names(cache_dir, caplog):
    make_file(cache_dir, "(1) Good.pdf")
    make_file(cache_dir, "notes.txt")

    with caplog.at_level(logging.WARNING, logger="jm2pdf"):
        store = CacheStore.rehydrate(str(cache_dir))

    assert store.ids() == [1]
    assert any("notes.txt" in record.getMessage() for record in caplog.records)


def test_rehydrate_enforces_capacity(cache_dir, mtime_as_creation_time):
    for index, comicId in enumerate((10, 20, 30)):
        path = make_file(cache_dir, f"({comicId}) T.pdf")
        os.utime(path, (1000 + index, 1000 + index))

    store = CacheStore.rehydrate(str(cache_dir), 2)

    assert store.ids() == [20, 30]
    assert not (cache_dir / "(10) T.pdf").exists()


def test_rehydrate_creates_missing_directory(tmp_path):
    cacheDir = tmp_path / "fresh" / "jmcomic"
    store = CacheStore.rehydrate(str(cacheDir))
    assert cacheDir.is_dir()
    assert len(store) == 0
