"""
Exception types shared by the jm2pdf bot modules.

Startup errors (settings, provisioning) stop the bot from activating its
command. Per-request errors (fetch, packaging) end only the request that
raised them.
"""

from typing import Optional


class Jm2PdfError(Exception):
    """Base class for every error raised by the bot itself."""


class SettingsError(Jm2PdfError):
    """The settings file is missing, unreadable or holds invalid values."""


class ProvisioningError(Jm2PdfError):
    """The interpreter environment could not be prepared."""


# Kinds of FetchError
FETCH_NO_RESULT = "no_result"     # process exited without a result line
FETCH_BAD_RESULT = "bad_result"   # only malformed result lines were seen
FETCH_TIMEOUT = "timeout"         # deadline hit, process killed
FETCH_SPAWN = "spawn"             # process could not be started

FETCH_KINDS_ = (FETCH_NO_RESULT, FETCH_BAD_RESULT, FETCH_TIMEOUT, FETCH_SPAWN)


class FetchError(Jm2PdfError):
    """
    The external rendering process did not produce a comic.

    Attributes:
        comicId: The requested comic ID
        kind: One of FETCH_KINDS_
        detail: Operator-facing explanation (never shown to the requester)
    """

    def __init__(self, comicId: int, kind: str, detail: Optional[str] = None):
        if kind not in FETCH_KINDS_:
            raise ValueError(f"Unknown fetch error kind '{kind}'")
        self.comicId = comicId
        self.kind = kind
        self.detail = detail or ""
        message = f"Fetching comic {comicId} failed ({kind})"
        if self.detail:
            message = f"{message}: {self.detail}"
        super().__init__(message)


class PackagingError(Jm2PdfError):
    """Creating the ZIP archive for delivery failed."""
