"""
ZIP packaging of rendered comics.

Some chat platforms reject or scan PDF uploads, so the bot can deliver a
ZIP instead. The archive holds exactly one entry and, when a password is
configured, is AES-256 encrypted. Archives are temporary: they are created
for one delivery and removed right after it.
"""

import logging
import os
import tempfile

import pyzipper

from Jm2PdfErrors import PackagingError

LOGGER = logging.getLogger("jm2pdf")


def ArchivePackager(sourcePath: str, entryName: str, password: str = "") -> str:
    """
    Pack a single file into a temporary ZIP archive.

    Args:
        sourcePath: File to pack
        entryName: Name of the entry inside the archive
        password: Non-empty = AES-256 encryption with this password

    Returns:
        str: Path of the temporary archive; the caller removes it

    Raises:
        PackagingError: Any failure while writing the archive
    """
    fileDescriptor, archivePath = tempfile.mkstemp(prefix="jm2pdf-", suffix=".zip")
    os.close(fileDescriptor)

    try:
        if password:
            with pyzipper.AESZipFile(archivePath, 'w', compression=pyzipper.ZIP_DEFLATED,
                                     encryption=pyzipper.WZ_AES) as archive:
                archive.setpassword(password.encode("utf-8"))
                archive.setencryption(pyzipper.WZ_AES, nbits=256)
                archive.write(sourcePath, arcname=entryName)
        else:
            with pyzipper.ZipFile(archivePath, 'w', compression=pyzipper.ZIP_DEFLATED) as archive:
                archive.write(sourcePath, arcname=entryName)
    except Exception as exception:
        TempFileRemover(archivePath)
        raise PackagingError(f"Packaging {sourcePath} failed: {exception}") from exception

    LOGGER.debug(f"Packed {sourcePath} into {archivePath} (encrypted: {bool(password)})")
    return archivePath


def TempFileRemover(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exception:
        LOGGER.warning(f"Could not remove temporary file {path}: {exception}")
