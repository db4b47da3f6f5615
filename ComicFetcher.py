"""
Rendering process supervision.

Each cache miss runs the external rendering script once:

    <interpreter> -u <scriptPath> <comic id> <option file>

The script prints free-form progress lines on stdout and stderr. On success
it prints exactly one line of the form

    result:{"name": "(366517) Example.pdf", ...}

where name is the rendered file inside the cache directory. Every stdout
line goes through ResultLineParser, which classifies it as a success line, a
malformed result line or a plain diagnostic. The process succeeded if a
success line was seen at any point; otherwise FetchError is raised once the
process has exited.

Concurrent fetches of the same comic share one process run. Every run has a
deadline; when it expires the process is killed.
"""

import asyncio
import json
import logging
import os
import shutil
from typing import Any, Dict, NamedTuple, Optional

from ComicCache import ComicIdExtractor, WorkingDirResolver
from Jm2PdfErrors import (FetchError, FETCH_BAD_RESULT, FETCH_NO_RESULT,
                          FETCH_SPAWN, FETCH_TIMEOUT)

LOGGER = logging.getLogger("jm2pdf")

RESULT_PREFIX = "result:"

LINE_SUCCESS = "success"
LINE_MALFORMED = "malformed"
LINE_DIAGNOSTIC = "diagnostic"

# Progress output of the script can contain long lines (URLs, JSON dumps)
STREAM_LIMIT_BYTES = 1024 * 1024
# Lines longer than the limit are cut to this many bytes and the rest dropped
OVERSIZED_LINE_KEEP_BYTES = 4096

# ============================================================================
# LINE PROTOCOL
# ============================================================================

async def StreamLineReader(stream):
    """
    Yield the raw lines of a process stream until EOF.

    Unlike iterating the StreamReader directly, a line longer than the
    reader limit does not raise: its head is yielded once and the remainder
    up to the next newline is discarded, so the pipe keeps draining.
    """
    oversized = False
    while True:
        try:
            rawLine = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as exception:
            # EOF, possibly with an unterminated last line
            if exception.partial and not oversized:
                yield exception.partial
            return
        except asyncio.LimitOverrunError as exception:
            chunk = await stream.read(exception.consumed)
            if not oversized:
                yield chunk[:OVERSIZED_LINE_KEEP_BYTES]
            oversized = True
            continue
        if oversized:
            # Tail of the oversized line
            oversized = False
            continue
        yield rawLine


class ProcessLine(NamedTuple):
    """One classified stdout line of the rendering process."""
    kind: str
    text: str
    name: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


def ResultLineParser(line: str) -> ProcessLine:
    """
    Classify a stdout line.

    Example Input/Output:
        'result:{"name": "(1) A.pdf"}' -> ProcessLine("success", ..., name="(1) A.pdf")
        'result:{oops'                 -> ProcessLine("malformed", ...)
        'downloading page 3/20'        -> ProcessLine("diagnostic", ...)
    """
    text = line.strip()
    if not text.startswith(RESULT_PREFIX):
        return ProcessLine(LINE_DIAGNOSTIC, text)

    try:
        payload = json.loads(text[len(RESULT_PREFIX):])
    except json.JSONDecodeError:
        return ProcessLine(LINE_MALFORMED, text)
    if not isinstance(payload, dict):
        return ProcessLine(LINE_MALFORMED, text)

    name = payload.get("name")
    # The name must be a plain file name inside the cache directory
    if not isinstance(name, str) or not name or os.path.basename(name) != name or name in (".", ".."):
        return ProcessLine(LINE_MALFORMED, text)
    return ProcessLine(LINE_SUCCESS, text, name, payload)


class FetchResult(NamedTuple):
    comicId: int
    fileName: str
    path: str

# ============================================================================
# FETCHER
# ============================================================================

class ComicFetcher:
    """
    Runs the rendering script for cache misses.

    Args:
        interpreterPath: Python used to run the script
        scriptPath: The rendering script
        optionPath: Option YAML passed as second argument
        cacheDir: Directory the script writes results into
        timeoutSeconds: Deadline for one run
        debug: Log the script output
    """

    def __init__(self, interpreterPath: str, scriptPath: str, optionPath: str,
                 cacheDir: str, timeoutSeconds: float, debug: bool = False):
        self.interpreterPath = interpreterPath
        self.scriptPath = scriptPath
        self.optionPath = optionPath
        self.cacheDir = cacheDir
        self.timeoutSeconds = timeoutSeconds
        self.debug = debug
        self._inflight: Dict[int, asyncio.Task] = {}

    def inflight(self, comicId: int) -> bool:
        task = self._inflight.get(comicId)
        return task is not None and not task.done()

    async def fetch(self, comicId: int) -> FetchResult:
        """
        Render a comic, joining an already running render of the same ID.

        Raises:
            FetchError: Spawn failure, timeout, or no usable result line
        """
        task = self._inflight.get(comicId)
        if task is None or task.done():
            task = asyncio.ensure_future(self._run(comicId))
            self._inflight[comicId] = task
            task.add_done_callback(lambda doneTask: self._forget(comicId, doneTask))
        else:
            LOGGER.info(f"Comic {comicId} is already being fetched, waiting for it")
        # Shield so one cancelled requester does not kill the run for the others
        return await asyncio.shield(task)

    def _forget(self, comicId: int, doneTask: asyncio.Task) -> None:
        if self._inflight.get(comicId) is doneTask:
            del self._inflight[comicId]
        if not doneTask.cancelled():
            # Mark the exception as retrieved even if every waiter went away
            doneTask.exception()

    async def _run(self, comicId: int) -> FetchResult:
        command_ = [self.interpreterPath, "-u", self.scriptPath, str(comicId), self.optionPath]
        LOGGER.info(f"Fetching comic {comicId}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command_,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except OSError as exception:
            raise FetchError(comicId, FETCH_SPAWN, str(exception)) from exception

        try:
            successLine, malformedCount = await asyncio.wait_for(
                self._supervise(comicId, process), timeout=self.timeoutSeconds)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise FetchError(comicId, FETCH_TIMEOUT, f"no result within {self.timeoutSeconds}s")
        except BaseException:
            # Cancellation or a reader failure must not leave the child running
            await self._kill(process)
            raise

        if successLine is None:
            kind = FETCH_BAD_RESULT if malformedCount else FETCH_NO_RESULT
            raise FetchError(comicId, kind, f"process exited with code {process.returncode}")

        if process.returncode != 0:
            LOGGER.warning(f"Comic {comicId}: process reported a result but exited with code {process.returncode}")

        resultPath = os.path.join(self.cacheDir, successLine.name)
        if not os.path.isfile(resultPath):
            raise FetchError(comicId, FETCH_BAD_RESULT, f"result file {successLine.name} does not exist")

        if ComicIdExtractor(successLine.name) != comicId:
            # Cached anyway, but rehydration will not recognise it as this comic
            LOGGER.warning(f"Comic {comicId}: result name {successLine.name} does not carry the requested ID")

        await asyncio.to_thread(self._removeWorkingDir, comicId, successLine.name)
        LOGGER.info(f"Comic {comicId} fetched: {successLine.name}")
        return FetchResult(comicId, successLine.name, resultPath)

    async def _supervise(self, comicId: int, process):
        """Read both streams until EOF and wait for the process to exit."""
        state = {"success": None, "malformed": 0}

        async def stdoutReader():
            async for rawLine in StreamLineReader(process.stdout):
                parsedLine = ResultLineParser(rawLine.decode("utf-8", errors="replace"))
                if parsedLine.kind == LINE_SUCCESS:
                    if state["success"] is None:
                        state["success"] = parsedLine
                    else:
                        LOGGER.warning(f"Comic {comicId}: ignoring extra result line {parsedLine.text}")
                elif parsedLine.kind == LINE_MALFORMED:
                    state["malformed"] += 1
                    LOGGER.warning(f"Comic {comicId}: malformed result line {parsedLine.text}")
                elif self.debug and parsedLine.text:
                    LOGGER.info(f"[{comicId}] {parsedLine.text}")

        async def stderrReader():
            async for rawLine in StreamLineReader(process.stderr):
                text = rawLine.decode("utf-8", errors="replace").rstrip()
                if self.debug and text:
                    LOGGER.warning(f"[{comicId}] {text}")

        await asyncio.gather(stdoutReader(), stderrReader())
        await process.wait()
        return state["success"], state["malformed"]

    async def _kill(self, process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    def _removeWorkingDir(self, comicId: int, fileName: str) -> None:
        workingDirName = WorkingDirResolver(fileName)
        if not workingDirName:
            return
        workingDir = os.path.join(self.cacheDir, workingDirName)
        if os.path.dirname(os.path.realpath(workingDir)) != os.path.realpath(self.cacheDir):
            LOGGER.warning(f"Comic {comicId}: working directory {workingDir} is outside the cache, not removing it")
            return
        if not os.path.isdir(workingDir):
            return
        try:
            shutil.rmtree(workingDir)
        except OSError as exception:
            # Leftovers are purged at the next startup
            LOGGER.warning(f"Comic {comicId}: could not remove working directory {workingDir}: {exception}")
