"""
The "jmcomic <id>" command.

Flow for one request:
    cache lookup -> (miss: render with ComicFetcher, insert into cache)
                 -> optional ZIP packaging -> file upload to the requester
                 -> with caching disabled, wipe the cache directory

Replies to the requester go through the two delivery callables in
RequestContext, so this module knows nothing about NapCat.
"""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from ArchivePackager import ArchivePackager, TempFileRemover
from ComicCache import CacheStore
from ComicFetcher import ComicFetcher
from Jm2PdfErrors import FetchError, FETCH_TIMEOUT

LOGGER = logging.getLogger("jm2pdf")

MESSAGE_DOWNLOADING = "正在下载..."
MESSAGE_FETCH_FAILED = "下载时遇到错误，可能是网络问题或JM号不存在，使用调试模式查看更多日志信息"
MESSAGE_FETCH_TIMEOUT = "下载超时，请稍后重试"
MESSAGE_UPLOAD_FAILED = "文件发送失败，请稍后重试"

# (event, text) -> None
TextReply = Callable[[Dict[str, Any], str], Awaitable[None]]
# (event, local path, display name) -> delivered?
FileUpload = Callable[[Dict[str, Any], str, str], Awaitable[bool]]


@dataclass
class RequestContext:
    settings: Dict[str, Any]
    store: CacheStore
    fetcher: ComicFetcher
    replyText: TextReply
    uploadFile: FileUpload


def AttachmentNamer(comicId: int, fileName: str, fullName: bool, fileFormat: str) -> str:
    """
    Display name of the delivered file.

    Example Input/Output:
        (366517, "(366517) Example.pdf", True,  "pdf") -> "(366517) Example.pdf"
        (366517, "(366517) Example.pdf", False, "pdf") -> "366517.pdf"
        (366517, "(366517) Example.pdf", True,  "zip") -> "(366517) Example.zip"
    """
    baseName = os.path.splitext(fileName)[0] if fullName else str(comicId)
    return f"{baseName}.{fileFormat}"


async def ComicRequestHandler(comicId: int, event: Dict[str, Any], context: RequestContext) -> bool:
    """
    Serve one comic request end to end.

    Returns:
        bool: True if the file was delivered

    Raises:
        PackagingError: The ZIP could not be created (nothing is delivered)
    """
    settings = context.settings
    store = context.store

    fileName = store.get(comicId)
    if fileName is not None:
        LOGGER.info(f"Comic {comicId} served from cache: {fileName}")
        store.touch(comicId)
    else:
        await context.replyText(event, MESSAGE_DOWNLOADING)
        os.makedirs(store.cacheDir, exist_ok=True)
        try:
            result = await context.fetcher.fetch(comicId)
        except FetchError as exception:
            LOGGER.warning(str(exception))
            message = MESSAGE_FETCH_TIMEOUT if exception.kind == FETCH_TIMEOUT else MESSAGE_FETCH_FAILED
            await context.replyText(event, message)
            return False
        fileName = result.fileName
        store.put(comicId, fileName)

    sourcePath = store.filePath(fileName)
    pdfName = AttachmentNamer(comicId, fileName, settings['fullName'], "pdf")

    if settings['fileFormat'] == "zip":
        archivePath = await asyncio.to_thread(ArchivePackager, sourcePath, pdfName, settings['zipPassword'])
        try:
            delivered = await context.uploadFile(event, archivePath, AttachmentNamer(comicId, fileName, settings['fullName'], "zip"))
        finally:
            TempFileRemover(archivePath)
    else:
        delivered = await context.uploadFile(event, sourcePath, pdfName)

    if not delivered:
        LOGGER.error(f"Comic {comicId}: upload failed")
        await context.replyText(event, MESSAGE_UPLOAD_FAILED)
        return False

    if not settings['cache']:
        await CacheWiper(store)
    return True


async def CacheWiper(store: CacheStore) -> None:
    """Remove the whole cache directory and forget every entry."""
    await asyncio.to_thread(shutil.rmtree, store.cacheDir, ignore_errors=True)
    store.clear()
    LOGGER.debug(f"Cache directory {store.cacheDir} wiped")
