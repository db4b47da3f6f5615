import sys
import textwrap

import pytest

from ComicFetcher import ComicFetcher

# Stand-in for the rendering script. Writes "(<id>) Example.pdf" plus a
# working directory into $FAKE_CACHE_DIR and reports the result line.
SUCCESS_SCRIPT = """
import json
import os
import pathlib
import sys

comicId = sys.argv[1]
cacheDir = pathlib.Path(os.environ["FAKE_CACHE_DIR"])
spawnLog = os.environ.get("FAKE_SPAWN_LOG")
if spawnLog:
    with open(spawnLog, "a", encoding="utf-8") as f:
        f.write(comicId + "\\n")

delay = float(os.environ.get("FAKE_DELAY", "0"))
if delay:
    import time
    time.sleep(delay)

name = f"({comicId}) Example.pdf"
workingDir = cacheDir / "Example"
workingDir.mkdir(exist_ok=True)
(workingDir / "00001.jpg").write_bytes(b"image")
(cacheDir / name).write_bytes(b"%PDF-1.4 comic " + comicId.encode())
print("downloading album", comicId)
print("result:" + json.dumps({"name": name}))
print("bye")
"""


@pytest.fixture
def cache_dir(tmp_path, monkeypatch):
    cacheDir = tmp_path / "cache" / "jmcomic"
    cacheDir.mkdir(parents=True)
    monkeypatch.setenv("FAKE_CACHE_DIR", str(cacheDir))
    return cacheDir


@pytest.fixture
def spawn_log(tmp_path, monkeypatch):
    spawnLog = tmp_path / "spawns.log"
    monkeypatch.setenv("FAKE_SPAWN_LOG", str(spawnLog))
    return spawnLog


@pytest.fixture
def write_script(tmp_path):
    def make(body: str, name: str = "render.py") -> str:
        scriptPath = tmp_path / name
        scriptPath.write_text(textwrap.dedent(body), encoding="utf-8")
        return str(scriptPath)
    return make


@pytest.fixture
def success_script(write_script):
    return write_script(SUCCESS_SCRIPT)


@pytest.fixture
def make_fetcher(tmp_path, cache_dir):
    def make(scriptPath: str, timeoutSeconds: float = 30, debug: bool = False) -> ComicFetcher:
        return ComicFetcher(sys.executable, scriptPath, str(tmp_path / "jm_option.yml"),
                            str(cache_dir), timeoutSeconds, debug)
    return make


@pytest.fixture
def spawn_count(spawn_log):
    def count() -> int:
        if not spawn_log.exists():
            return 0
        return len(spawn_log.read_text(encoding="utf-8").split())
    return count
