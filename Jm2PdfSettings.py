"""
jm2pdf settings loading

Settings live in a JSON file (jm2pdf_config.json by default, or the path in
the JM2PDF_CONFIG environment variable). Every key is optional; missing keys
fall back to DEFAULT_SETTINGS. The loader returns a plain dict with the same
shape as DEFAULT_SETTINGS so the rest of the bot can index it directly.

Configuration File Format:
    {
        "cache": true,
        "maxCache": 20,
        "fileFormat": "zip",
        "zipPassword": "secret",
        "proxy": "http://127.0.0.1:7890",
        "napcat": {"apiUrl": "http://localhost:3001"},
        "listen": {"port": 8080}
    }

See jm2pdf_config.json in the repository root for a full example.
"""

import copy
import json
import logging
import os
from typing import Any, Dict

from Jm2PdfErrors import SettingsError

LOGGER = logging.getLogger("jm2pdf")

# Environment variable that overrides the settings file location
SETTINGS_PATH_ENV = "JM2PDF_CONFIG"
DEFAULT_SETTINGS_PATH = "jm2pdf_config.json"

FILE_FORMATS_ = ("pdf", "zip")

DEFAULT_SETTINGS: Dict[str, Any] = {
    'cache': True,                  # Keep downloaded comics between requests
    'maxCache': 0,                  # Maximum cached comics, 0 = unlimited
    'clearAtRestart': True,         # Purge the cache directory on startup
    'fullName': True,               # Attachment named after the stored file instead of "<id>.<ext>"
    'fileFormat': 'pdf',            # "pdf" or "zip"
    'zipPassword': '',              # Empty = unencrypted zip
    'python': '',                   # Interpreter path, empty = provision a venv
    'requirements': ['jmcomic', 'img2pdf'],
    'proxy': '',                    # Empty = no proxy
    'debug': False,                 # Log the rendering process output
    'timeoutSeconds': 900,          # Deadline for one rendering run
    'scriptPath': 'image2pdf/main.py',
    'optionTemplate': 'jm_option_template.yml',
    'dataDir': 'data',
    'commandName': 'jmcomic',
    'napcat': {
        'apiUrl': 'http://localhost:3001',
        'accessToken': '',
    },
    'listen': {
        'host': '0.0.0.0',
        'port': 8080,
    },
    'http': {
        'maxRetries': 3,
        'timeoutSeconds': 30,
        'retryDelay': 3,
    },
}

# ============================================================================
# VALIDATION
# ============================================================================

def _ExpectType(keyName: str, value: Any, expectedType) -> None:
    # bool is a subclass of int, reject it where a number is expected
    if expectedType is int and isinstance(value, bool):
        raise SettingsError(f"Setting '{keyName}' must be an integer, got {value!r}")
    if not isinstance(value, expectedType):
        raise SettingsError(f"Setting '{keyName}' must be {expectedType.__name__}, got {type(value).__name__}")


def SettingsValidator(settings: Dict[str, Any]) -> None:
    """
    Check types and ranges of a merged settings dict.

    Raises:
        SettingsError: On the first invalid value found
    """
    for keyName in ('cache', 'clearAtRestart', 'fullName', 'debug'):
        _ExpectType(keyName, settings[keyName], bool)
    for keyName in ('zipPassword', 'python', 'proxy', 'scriptPath', 'optionTemplate', 'dataDir', 'commandName', 'fileFormat'):
        _ExpectType(keyName, settings[keyName], str)
    for keyName in ('maxCache', 'timeoutSeconds'):
        _ExpectType(keyName, settings[keyName], int)

    if settings['maxCache'] < 0:
        raise SettingsError(f"Setting 'maxCache' must be >= 0, got {settings['maxCache']}")
    if settings['timeoutSeconds'] <= 0:
        raise SettingsError(f"Setting 'timeoutSeconds' must be > 0, got {settings['timeoutSeconds']}")
    if settings['fileFormat'] not in FILE_FORMATS_:
        raise SettingsError(f"Setting 'fileFormat' must be one of {FILE_FORMATS_}, got '{settings['fileFormat']}'")
    if not settings['commandName'].strip():
        raise SettingsError("Setting 'commandName' must not be empty")

    requirements_ = settings['requirements']
    if not isinstance(requirements_, list) or not all(isinstance(item, str) for item in requirements_):
        raise SettingsError("Setting 'requirements' must be a list of package names")

    _ExpectType('napcat.apiUrl', settings['napcat']['apiUrl'], str)
    _ExpectType('napcat.accessToken', settings['napcat']['accessToken'], str)
    _ExpectType('listen.host', settings['listen']['host'], str)
    _ExpectType('listen.port', settings['listen']['port'], int)
    if not 0 < settings['listen']['port'] < 65536:
        raise SettingsError(f"Setting 'listen.port' out of range: {settings['listen']['port']}")
    for keyName in ('maxRetries', 'timeoutSeconds', 'retryDelay'):
        _ExpectType(f'http.{keyName}', settings['http'][keyName], int)
    if settings['http']['maxRetries'] < 1:
        raise SettingsError("Setting 'http.maxRetries' must be at least 1")

# ============================================================================
# LOADING
# ============================================================================

def SettingsMerger(rawSettings: Dict[str, Any]) -> Dict[str, Any]:
    """
    Overlay user-provided settings on DEFAULT_SETTINGS.

    Nested sections (napcat, listen, http) are merged key by key, so a file
    may override a single field of a section. Unknown keys are logged and
    dropped.
    """
    if not isinstance(rawSettings, dict):
        raise SettingsError("Settings file must contain a JSON object")

    settings = copy.deepcopy(DEFAULT_SETTINGS)
    for keyName, value in rawSettings.items():
        if keyName not in DEFAULT_SETTINGS:
            LOGGER.warning(f"Ignoring unknown setting '{keyName}'")
            continue
        if isinstance(DEFAULT_SETTINGS[keyName], dict):
            if not isinstance(value, dict):
                raise SettingsError(f"Setting '{keyName}' must be an object")
            for subKey, subValue in value.items():
                if subKey not in DEFAULT_SETTINGS[keyName]:
                    LOGGER.warning(f"Ignoring unknown setting '{keyName}.{subKey}'")
                    continue
                settings[keyName][subKey] = subValue
        else:
            settings[keyName] = value

    SettingsValidator(settings)
    return settings


def SettingsLoader(settingsPath: str = None) -> Dict[str, Any]:
    """
    Read, merge and validate the settings file.

    A missing file is not an error: the defaults are used and a warning is
    logged, which lets the bot start with zero configuration.

    Args:
        settingsPath: Explicit path; falls back to $JM2PDF_CONFIG, then
                      jm2pdf_config.json in the working directory

    Returns:
        Dict[str, Any]: Complete settings dict

    Raises:
        SettingsError: Unreadable file, invalid JSON or invalid values
    """
    if settingsPath is None:
        settingsPath = os.environ.get(SETTINGS_PATH_ENV, DEFAULT_SETTINGS_PATH)

    if not os.path.exists(settingsPath):
        LOGGER.warning(f"Settings file '{settingsPath}' not found, using defaults")
        return SettingsMerger({})

    try:
        with open(settingsPath, 'r', encoding='utf-8') as settingsFile:
            rawSettings = json.load(settingsFile)
    except (OSError, json.JSONDecodeError) as exception:
        raise SettingsError(f"Failed to load settings file '{settingsPath}': {exception}") from exception

    return SettingsMerger(rawSettings)
