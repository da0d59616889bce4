"""
Xray binary discovery and config validation.

Neither call here starts a long-lived process: ``locate`` runs
``xray version`` and ``validate`` runs ``xray -test`` with the config
fed on stdin.
"""

import asyncio
import json
import shutil
from dataclasses import dataclass
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_BINARY = "xray"
VALIDATION_FALLBACK = "Invalid config format"


@dataclass
class XrayBinary:
    """An xray executable that answered ``version``."""
    path: str
    version: str = ""


@dataclass
class ValidationResult:
    """Outcome of ``xray -test``."""
    valid: bool
    message: str


def dump_config(document: dict) -> bytes:
    """Serialize a config the way it is fed to xray."""
    return json.dumps(document, indent=2).encode("utf-8")


def first_line(*texts: str) -> Optional[str]:
    """First non-empty line across the given texts, in order."""
    for text in texts:
        for line in text.splitlines():
            if line.strip():
                return line.strip()
    return None


async def _try_version(path: str) -> Optional[XrayBinary]:
    try:
        process = await asyncio.create_subprocess_exec(
            path, "version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        logger.debug("Xray not invocable", path=path, error=str(e))
        return None

    stdout, _ = await process.communicate()
    if process.returncode != 0:
        logger.debug("Xray version failed", path=path, returncode=process.returncode)
        return None

    version = first_line(stdout.decode("utf-8", errors="replace")) or ""
    return XrayBinary(path=path, version=version)


async def locate(configured_path: str = DEFAULT_BINARY) -> Optional[XrayBinary]:
    """
    Find a working xray binary.

    Tries the configured path first, then ``xray`` on PATH. Never raises;
    returns None when neither answers ``xray version``.
    """
    candidates = [configured_path]
    if configured_path != DEFAULT_BINARY:
        candidates.append(DEFAULT_BINARY)

    for candidate in candidates:
        binary = await _try_version(candidate)
        if binary:
            resolved = shutil.which(binary.path) or binary.path
            logger.info("Using xray", path=resolved, version=binary.version)
            return binary

    return None


async def validate(binary_path: str, document: dict, timeout: float = 15.0) -> ValidationResult:
    """
    Validate a config with ``xray -test -config stdin:``.

    The call is bounded by ``timeout``; a hung test run is killed and
    reported as invalid.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            binary_path, "-test", "-config", "stdin:",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            # Terminal Ctrl+C is handled by the run, not by the test child
            start_new_session=True,
        )
    except OSError as e:
        return ValidationResult(valid=False, message=str(e) or VALIDATION_FALLBACK)

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(dump_config(document)),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("Config validation timed out", timeout=timeout)
        return ValidationResult(valid=False, message=f"Config validation timed out after {timeout:g}s")

    if process.returncode == 0:
        logger.debug("Config is valid")
        return ValidationResult(valid=True, message="Config is valid")

    message = first_line(
        stderr.decode("utf-8", errors="replace"),
        stdout.decode("utf-8", errors="replace"),
    ) or VALIDATION_FALLBACK
    logger.debug("Config is invalid", returncode=process.returncode, message=message)
    return ValidationResult(valid=False, message=message)
