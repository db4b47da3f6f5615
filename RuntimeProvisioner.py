"""
Interpreter provisioning for the rendering script.

The rendering script needs a Python interpreter with its own third-party
packages. Either the operator points the bot at an existing interpreter
(settings 'python'), or the bot creates an isolated venv under the data
directory on first use. In both cases the packages listed in the
'requirements' setting are installed when missing.

Every failure raises ProvisioningError; the caller is expected to keep the
command unregistered and surface the error on the status indicator.
"""

import logging
import os
import subprocess
import sys
from typing import Dict, List, Any

from Jm2PdfErrors import ProvisioningError

LOGGER = logging.getLogger("jm2pdf")

# venv creation and pip installs can take a while on slow mirrors
VENV_TIMEOUT_SECONDS = 300
PIP_TIMEOUT_SECONDS = 1800
OUTPUT_TAIL_LINES = 20


def _OutputTail(output: str) -> str:
    lines_ = (output or "").strip().splitlines()
    return "\n".join(lines_[-OUTPUT_TAIL_LINES:])


def CommandRunner(command_: List[str], timeoutSeconds: int) -> subprocess.CompletedProcess:
    """
    Run a provisioning command to completion.

    Raises:
        ProvisioningError: The command could not be started or timed out
    """
    LOGGER.debug(f"Running: {' '.join(command_)}")
    try:
        return subprocess.run(
            command_,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,    # Merge stderr into stdout
            text=True,
            timeout=timeoutSeconds,
        )
    except subprocess.TimeoutExpired as exception:
        raise ProvisioningError(f"Command timed out after {timeoutSeconds}s: {' '.join(command_)}") from exception
    except OSError as exception:
        raise ProvisioningError(f"Command could not be started: {' '.join(command_)}: {exception}") from exception


def VenvInterpreterPath(venvDir: str) -> str:
    if os.name == 'nt':
        return os.path.join(venvDir, "Scripts", "python.exe")
    return os.path.join(venvDir, "bin", "python")


def InterpreterLocator(configuredPath: str, venvDir: str) -> str:
    """
    Resolve the interpreter that runs the rendering script.

    Args:
        configuredPath: Operator-supplied interpreter, may be empty
        venvDir: Where to create the venv when no interpreter is configured

    Returns:
        str: Absolute path of a usable interpreter

    Raises:
        ProvisioningError: Configured interpreter missing, or venv creation failed
    """
    if configuredPath:
        expandedPath = os.path.expanduser(configuredPath)
        if not (os.path.isfile(expandedPath) and os.access(expandedPath, os.X_OK)):
            raise ProvisioningError(f"Configured python '{configuredPath}' does not exist or is not executable")
        LOGGER.info(f"Using configured interpreter {expandedPath}")
        return expandedPath

    interpreterPath = VenvInterpreterPath(venvDir)
    if os.path.isfile(interpreterPath):
        LOGGER.info(f"Reusing venv at {venvDir}")
        return os.path.abspath(interpreterPath)

    LOGGER.info(f"Creating venv at {venvDir}...")
    result = CommandRunner([sys.executable, "-m", "venv", venvDir], VENV_TIMEOUT_SECONDS)
    if result.returncode != 0:
        raise ProvisioningError(f"Creating venv at {venvDir} failed (exit {result.returncode}):\n{_OutputTail(result.stdout)}")
    if not os.path.isfile(interpreterPath):
        raise ProvisioningError(f"venv at {venvDir} has no interpreter at {interpreterPath}")
    return os.path.abspath(interpreterPath)


def DependencyInstaller(interpreterPath: str, requirements_: List[str]) -> List[str]:
    """
    Install the missing requirements into the interpreter.

    Returns:
        List[str]: Requirements that were installed (empty if all present)
    """
    missing_ = []
    for requirement in requirements_:
        result = CommandRunner([interpreterPath, "-m", "pip", "show", requirement], VENV_TIMEOUT_SECONDS)
        if result.returncode != 0:
            missing_.append(requirement)

    if not missing_:
        LOGGER.info("All rendering requirements already installed")
        return missing_

    LOGGER.info(f"Installing {missing_}...")
    result = CommandRunner([interpreterPath, "-m", "pip", "install", *missing_], PIP_TIMEOUT_SECONDS)
    if result.returncode != 0:
        raise ProvisioningError(f"Installing {missing_} failed (exit {result.returncode}):\n{_OutputTail(result.stdout)}")
    return missing_


def RuntimeProvisioner(settings: Dict[str, Any], dataDir: str) -> str:
    """Locate or create the interpreter, then make sure requirements are installed."""
    interpreterPath = InterpreterLocator(settings['python'], os.path.join(dataDir, "venv"))
    DependencyInstaller(interpreterPath, settings['requirements'])
    return interpreterPath
