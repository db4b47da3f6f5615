"""
Option file generation for the rendering script.

The rendering script reads its download options from a YAML file. Two keys
depend on the bot settings: where comics are written (dir_rule.base_dir) and
which proxy the HTTP client uses (client.postman.meta_data.proxies). The
template shipped with the repository is left untouched; a fresh copy with
those keys filled in is written for every bot run.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml

LOGGER = logging.getLogger("jm2pdf")

BASE_DIR_KEYS_ = ["dir_rule", "base_dir"]
PROXY_KEYS_ = ["client", "postman", "meta_data", "proxies"]


def NestedSetter(document: Dict[str, Any], keyPath_: List[str], value: Any) -> None:
    """Set document[k1][k2]...[kn] = value, creating missing mappings on the way."""
    if not keyPath_:
        raise ValueError("Key path must not be empty")

    current = document
    for depth, keyName in enumerate(keyPath_[:-1]):
        child = current.get(keyName)
        if child is None:
            child = {}
            current[keyName] = child
        elif not isinstance(child, dict):
            walked = ".".join(keyPath_[:depth + 1])
            raise ValueError(f"Cannot set '{'.'.join(keyPath_)}': '{walked}' is not a mapping")
        current = child
    current[keyPath_[-1]] = value


def OptionWriter(templatePath: str, outputPath: str, baseDir: str, proxy: Optional[str]) -> str:
    """
    Write a per-run option file derived from the template.

    Args:
        templatePath: YAML template (never modified)
        outputPath: Destination of the generated file
        baseDir: Directory the rendering script writes comics into
        proxy: Proxy address; empty or None writes an explicit null

    Returns:
        str: outputPath
    """
    with open(templatePath, 'r', encoding='utf-8') as templateFile:
        document = yaml.safe_load(templateFile)
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ValueError(f"Option template '{templatePath}' is not a YAML mapping")

    NestedSetter(document, BASE_DIR_KEYS_, os.path.abspath(baseDir))
    NestedSetter(document, PROXY_KEYS_, proxy if proxy else None)

    outputDir = os.path.dirname(outputPath)
    if outputDir:
        os.makedirs(outputDir, exist_ok=True)
    with open(outputPath, 'w', encoding='utf-8') as outputFile:
        yaml.safe_dump(document, outputFile, allow_unicode=True, sort_keys=False)

    LOGGER.info(f"Wrote option file {outputPath} (proxy: {proxy or 'none'})")
    return outputPath
