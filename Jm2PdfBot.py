#!/usr/bin/env python3
"""
jm2pdf - comic-to-PDF command for NapCat (OneBot 11) bots

Users send "/jmcomic <id>" in a private or group chat; the bot renders the
comic with an external script and uploads the result as a PDF or a ZIP file.

Architecture:
┌──────────┐  webhook POST  ┌────────────────────┐  spawn  ┌──────────────────┐
│ NapCat   │──────────────→ │ Flask listener     │───────→ │ rendering script │
│ (QQ bot) │ ←───────────── │ + asyncio worker   │ ←────── │ (result:<json>)  │
└──────────┘  HTTP API      └────────────────────┘  stdout └──────────────────┘

- Event Intake: Flask/Waitress receives OneBot 11 events, only text messages
  matching the command are acted on
- Request Execution: every request runs as a coroutine on a single asyncio
  worker loop (one daemon thread), so the comic cache has a single writer
- Delivery: replies and file uploads go through the NapCat HTTP API with
  bounded retries
- Status: GET /status reports whether the command is active; a provisioning
  failure keeps it "failed" until restart

File Structure:
├── jm2pdf_config.json         # Bot settings (see Jm2PdfSettings)
├── jm_option_template.yml     # Option template for the rendering script
└── data/                      # Created at startup
    ├── cache/jmcomic/         # Rendered comics + per-comic working dirs
    ├── jm_option.yml          # Option file generated for this run
    └── venv/                  # Provisioned interpreter (if none configured)
"""

import asyncio
import logging
import os
import shutil
import signal
import sys
import threading
import time
from concurrent.futures import Future
from typing import Any, Dict, Optional

import requests
from flask import Flask, jsonify, request
from waitress import serve

from ComicCache import CacheStore
from ComicFetcher import ComicFetcher
from ComicRequestHandler import ComicRequestHandler, RequestContext, MESSAGE_FETCH_FAILED
from Jm2PdfErrors import ProvisioningError, SettingsError
from Jm2PdfSettings import SettingsLoader
from JmOptionWriter import OptionWriter
from RuntimeProvisioner import RuntimeProvisioner

LOGGER = logging.getLogger("jm2pdf")

# ============================================================================
# GLOBAL STATE
# ============================================================================

STATUS_STARTING = "starting"
STATUS_READY = "ready"
STATUS_FAILED = "failed"

# Operator-facing status indicator, served at GET /status
PLUGIN_STATUS: Dict[str, str] = {"state": STATUS_STARTING, "detail": ""}

# Populated by Initializer()
SETTINGS: Dict[str, Any] = {}
REQUEST_CONTEXT: Optional[RequestContext] = None

# asyncio loop running every request, hosted by a daemon thread
WORKER_LOOP: Optional[asyncio.AbstractEventLoop] = None
WORKER_THREAD: Optional[threading.Thread] = None

MESSAGE_USAGE = "用法：{command} <JM号>，JM号必须是正整数"

# ============================================================================
# EVENT PARSING
# ============================================================================

def EventTypeParser(rawEvent: Dict) -> str:
    """
    Classify a OneBot 11 event as MESSAGE_PRIVATE, MESSAGE_GROUP or OTHER.

    Only incoming messages can carry the command; the bot's own sent
    messages (post_type "message_sent") are deliberately not matched.
    """
    if rawEvent.get("post_type") == "message":
        match rawEvent.get("message_type"):
            case "private":
                return "MESSAGE_PRIVATE"
            case "group":
                return "MESSAGE_GROUP"
    return "OTHER"


def MessageTextExtractor(rawEvent: Dict) -> str:
    """
    Concatenate the text segments of a message event.

    Example:
        [{"type": "text", "data": {"text": "/jmcomic "}},
         {"type": "image", "data": {...}},
         {"type": "text", "data": {"text": "366517"}}]  ->  "/jmcomic 366517"
    """
    messageSegments = rawEvent.get("message", [])
    # NapCat can be configured to post messages as CQ-code strings
    if isinstance(messageSegments, str):
        return messageSegments
    textParts = []
    for segment in messageSegments:
        if segment.get("type") == "text":
            textParts.append(segment.get("data", {}).get("text", ""))
    return "".join(textParts)


def CommandParser(text: str, commandName: str) -> Optional[str]:
    """
    Return the argument string if the text invokes the command, else None.

    Both "/jmcomic 366517" and "jmcomic 366517" are accepted; "jmcomic" with
    no argument returns an empty string.
    """
    words_ = text.strip().split(maxsplit=1)
    if not words_:
        return None
    if words_[0].lstrip("/") != commandName:
        return None
    return words_[1].strip() if len(words_) > 1 else ""


def ComicIdParser(argument: str) -> Optional[int]:
    """Positive integer or None."""
    if not argument.isdigit():
        return None
    comicId = int(argument)
    return comicId if comicId > 0 else None

# ============================================================================
# NAPCAT DELIVERY
# ============================================================================

def NapCatSender(actionEndpoint: str, requestBody: Dict) -> bool:
    """
    Call a NapCat HTTP API action with retries.

    Error Handling Strategy:
    - 4xx errors: client errors, not retried
    - 5xx errors and timeouts: retried up to http.maxRetries times
    - 200 with OneBot status other than ok/async: failure, not retried
    - other request errors: not retried

    Returns:
        bool: True if NapCat accepted the action
    """
    baseUrl = SETTINGS['napcat']['apiUrl'].rstrip("/")
    fullUrl = f"{baseUrl}/{actionEndpoint}"
    headers = {}
    if SETTINGS['napcat']['accessToken']:
        headers["Authorization"] = f"Bearer {SETTINGS['napcat']['accessToken']}"
    maxRetries = SETTINGS['http']['maxRetries']

    for attempt in range(maxRetries):
        try:
            response = requests.post(
                fullUrl,
                json=requestBody,
                headers=headers,
                timeout=SETTINGS['http']['timeoutSeconds']
            )

            if 400 <= response.status_code < 500:
                LOGGER.warning(f"Client error {response.status_code} for {actionEndpoint}")
                return False

            if response.status_code == 200:
                try:
                    status = str(response.json().get('status', '')).lower()
                except ValueError as e:
                    LOGGER.error(f"Invalid JSON response from {actionEndpoint}: {e}")
                    return False
                if status in ['ok', 'async']:
                    return True
                LOGGER.error(f"API returned status '{status}' for {actionEndpoint}")
                return False

            LOGGER.warning(f"HTTP {response.status_code} from {actionEndpoint}, attempt {attempt + 1}/{maxRetries}")

        except requests.exceptions.Timeout:
            LOGGER.warning(f"Timeout for {actionEndpoint}, attempt {attempt + 1}/{maxRetries}")

        except requests.exceptions.RequestException as e:
            LOGGER.error(f"Request error for {actionEndpoint}: {e}")
            return False

        if attempt < maxRetries - 1:
            time.sleep(SETTINGS['http']['retryDelay'])

    LOGGER.error(f"Failed to send {actionEndpoint} after {maxRetries} attempts")
    return False


def ReplyBodyConstructor(rawEvent: Dict, text: str):
    """Build (endpoint, body) for a text reply quoting the triggering message."""
    message_ = []
    if rawEvent.get("message_id") is not None:
        message_.append({"type": "reply", "data": {"id": str(rawEvent["message_id"])}})
    message_.append({"type": "text", "data": {"text": text}})

    if rawEvent.get("message_type") == "group":
        return "send_group_msg", {"group_id": rawEvent.get("group_id"), "message": message_}
    return "send_private_msg", {"user_id": rawEvent.get("user_id"), "message": message_}


def UploadBodyConstructor(rawEvent: Dict, filePath: str, displayName: str):
    """Build (endpoint, body) uploading a local file to the chat of the event."""
    absolutePath = os.path.abspath(filePath)
    if rawEvent.get("message_type") == "group":
        return "upload_group_file", {"group_id": rawEvent.get("group_id"), "file": absolutePath, "name": displayName}
    return "upload_private_file", {"user_id": rawEvent.get("user_id"), "file": absolutePath, "name": displayName}


async def TextReplier(rawEvent: Dict, text: str) -> None:
    actionEndpoint, requestBody = ReplyBodyConstructor(rawEvent, text)
    await asyncio.to_thread(NapCatSender, actionEndpoint, requestBody)


async def FileUploader(rawEvent: Dict, filePath: str, displayName: str) -> bool:
    # NapCat reads the file during the call, so it may be deleted once this returns
    actionEndpoint, requestBody = UploadBodyConstructor(rawEvent, filePath, displayName)
    return await asyncio.to_thread(NapCatSender, actionEndpoint, requestBody)

# ============================================================================
# REQUEST DISPATCH
# ============================================================================

async def RequestRunner(comicId: int, rawEvent: Dict, context: RequestContext) -> None:
    """Run one request, logging anything the handler let through."""
    try:
        await ComicRequestHandler(comicId, rawEvent, context)
    except Exception:
        LOGGER.exception(f"Request for comic {comicId} failed")
        await context.replyText(rawEvent, MESSAGE_FETCH_FAILED)


def RequestSubmitter(coroutine) -> Future:
    return asyncio.run_coroutine_threadsafe(coroutine, WORKER_LOOP)


def MainDispatcher(rawEvent: Dict) -> Optional[Future]:
    """
    Route a OneBot 11 event.

    Processing Pipeline:
    1. Ignore everything but private/group messages
    2. Ignore messages that don't invoke the command
    3. Ignore the command entirely while the bot is not ready
    4. Reply with usage for a bad argument, else schedule the request

    Returns:
        Optional[Future]: Handle of the scheduled coroutine, if any
    """
    if EventTypeParser(rawEvent) == "OTHER":
        return None

    commandName = SETTINGS.get('commandName', 'jmcomic')
    argument = CommandParser(MessageTextExtractor(rawEvent), commandName)
    if argument is None:
        return None

    if PLUGIN_STATUS["state"] != STATUS_READY or REQUEST_CONTEXT is None:
        LOGGER.debug(f"Command received while bot is {PLUGIN_STATUS['state']}, ignoring")
        return None

    comicId = ComicIdParser(argument)
    if comicId is None:
        return RequestSubmitter(REQUEST_CONTEXT.replyText(rawEvent, MESSAGE_USAGE.format(command=commandName)))

    LOGGER.info(f"Comic {comicId} requested by user {rawEvent.get('user_id')} (group {rawEvent.get('group_id')})")
    return RequestSubmitter(RequestRunner(comicId, rawEvent, REQUEST_CONTEXT))

# ============================================================================
# INITIALIZATION
# ============================================================================

def WorkerLoopStarter() -> asyncio.AbstractEventLoop:
    """Start the asyncio loop that runs every request in a daemon thread."""
    global WORKER_LOOP, WORKER_THREAD
    WORKER_LOOP = asyncio.new_event_loop()
    WORKER_THREAD = threading.Thread(target=WORKER_LOOP.run_forever, daemon=True, name="Jm2PdfWorkerLoop")
    WORKER_THREAD.start()
    return WORKER_LOOP


def WorkerLoopStopper() -> None:
    global WORKER_LOOP, WORKER_THREAD
    if WORKER_LOOP is None:
        return
    WORKER_LOOP.call_soon_threadsafe(WORKER_LOOP.stop)
    if WORKER_THREAD is not None:
        WORKER_THREAD.join(timeout=5)
    WORKER_LOOP = None
    WORKER_THREAD = None


def Initializer(settings: Dict[str, Any]) -> bool:
    """
    Prepare everything the command needs and activate it.

    Startup sequence:
    1. Create data directories, purge the cache if clearAtRestart
    2. Generate the option file for the rendering script
    3. Provision the interpreter and its packages
    4. Rebuild the cache index from disk
    5. Start the worker loop and mark the bot ready

    Returns:
        bool: True if the command is active. A provisioning failure returns
              False and leaves PLUGIN_STATUS at "failed"; other failures
              (option template, cache scan) propagate.
    """
    global SETTINGS, REQUEST_CONTEXT
    SETTINGS = settings
    PLUGIN_STATUS.update(state=STATUS_STARTING, detail="")

    dataDir = os.path.abspath(settings['dataDir'])
    cacheDir = os.path.join(dataDir, "cache", "jmcomic")
    optionPath = os.path.join(dataDir, "jm_option.yml")

    if settings['clearAtRestart'] or not settings['cache']:
        shutil.rmtree(cacheDir, ignore_errors=True)
        LOGGER.info(f"Cleared cache directory {cacheDir}")
    os.makedirs(cacheDir, exist_ok=True)

    OptionWriter(settings['optionTemplate'], optionPath, cacheDir, settings['proxy'])

    try:
        interpreterPath = RuntimeProvisioner(settings, dataDir)
    except ProvisioningError as e:
        LOGGER.error(f"Provisioning failed, command '{settings['commandName']}' not registered: {e}")
        PLUGIN_STATUS.update(state=STATUS_FAILED, detail=str(e))
        return False

    store = CacheStore.rehydrate(cacheDir, settings['maxCache'])
    fetcher = ComicFetcher(
        interpreterPath,
        os.path.abspath(settings['scriptPath']),
        optionPath,
        cacheDir,
        settings['timeoutSeconds'],
        settings['debug'],
    )
    REQUEST_CONTEXT = RequestContext(settings, store, fetcher, TextReplier, FileUploader)

    if WORKER_LOOP is None:
        WorkerLoopStarter()

    PLUGIN_STATUS.update(state=STATUS_READY, detail=f"{len(store)} cached comics")
    LOGGER.info(f"Command '{settings['commandName']}' registered, {len(store)} cached comics")
    return True

# ============================================================================
# FLASK APPLICATION
# ============================================================================

JM2PDF_LISTENER = Flask(__name__)


@JM2PDF_LISTENER.route('/', methods=['POST'])
def NapCatListener() -> str:
    """
    Webhook endpoint for OneBot 11 events from NapCat.

    Always returns 200 OK so NapCat doesn't retry; requests run in the
    background and reply on their own.
    """
    rawEvent = request.get_json(silent=True)
    if isinstance(rawEvent, dict):
        MainDispatcher(rawEvent)
    return 'OK'


@JM2PDF_LISTENER.route('/status', methods=['GET'])
def StatusReporter():
    return jsonify(PLUGIN_STATUS)

# ============================================================================
# MAIN EXECUTION
# ============================================================================

def SignalProcessor(signalNumber: int, stackFrame) -> None:
    """Stop the worker loop (and any request it runs) and exit."""
    LOGGER.info(f"Interrupt signal {signalNumber} detected, shutting down...")
    WorkerLoopStopper()
    sys.exit(0)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = SettingsLoader()
    except SettingsError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if settings['debug']:
        logging.getLogger().setLevel(logging.DEBUG)

    signal.signal(signal.SIGINT, SignalProcessor)
    signal.signal(signal.SIGTERM, SignalProcessor)

    Initializer(settings)

    # The status endpoint stays up even when activation failed
    LOGGER.info(f"Listening for NapCat events on {settings['listen']['host']}:{settings['listen']['port']}")
    serve(JM2PDF_LISTENER, host=settings['listen']['host'], port=settings['listen']['port'])


if __name__ == '__main__':
    main()
