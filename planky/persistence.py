"""Atomic JSON file persistence for local state."""

import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import orjson
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from planky.errors import LocalPersistenceError
from planky.logging_setup import get_logger
from planky.settings import settings

logger = get_logger(__name__)


def _write_replace(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write JSON data to a file atomically.

    The payload is written to a temp file in the same directory and renamed
    over the target, so a crash never leaves a truncated file behind.
    Transient OS errors are retried a few times.

    Args:
        path: Target file
        data: JSON-serializable data

    Raises:
        LocalPersistenceError: If the write keeps failing
    """
    payload = orjson.dumps(data, option=orjson.OPT_INDENT_2)
    try:
        for attempt in Retrying(
            stop=stop_after_attempt(settings.write_attempts),
            wait=wait_fixed(0.05),
            retry=retry_if_exception_type(OSError),
            reraise=True,
        ):
            with attempt:
                _write_replace(path, payload)
    except OSError as e:
        raise LocalPersistenceError(str(path), str(e)) from e


def read_json(path: Path) -> Optional[Any]:
    """
    Read a JSON file written by `write_json_atomic`.

    Returns:
        Parsed data, or None when the file is missing or unreadable
    """
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.error("Could not read state file", extra={"path": str(path), "error": str(e)})
        return None

    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        # Keep the unreadable copy around; the next write would overwrite it
        backup = path.with_name(f"{path.name}.corrupt")
        logger.error(
            "Corrupt state file moved aside",
            extra={"path": str(path), "backup": str(backup), "error": str(e)},
        )
        try:
            os.replace(path, backup)
        except OSError:
            logger.warning("Could not move corrupt state file", extra={"path": str(path)})
        return None
