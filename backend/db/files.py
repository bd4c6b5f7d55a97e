"""Durable JSON artifact helpers."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger


def atomic_write_text(path: Path, payload: str) -> None:
    """Write via a sibling temp file and `os.replace` so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
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


def dump_json(payload: Any, *, indent: Optional[int] = 2) -> str:
    if indent is None:
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return json.dumps(payload, ensure_ascii=False, indent=indent)


def read_json(path: Path, default_factory: Callable[[], Any], *, expect: type = dict) -> Any:
    """
    Load a JSON artifact.

    A missing file, unreadable file, invalid JSON or wrong top-level shape all
    yield `default_factory()`. Only the last three are logged.
    """
    if not path.exists():
        return default_factory()
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning(f"[memory] cannot read {path}: {exc}; using empty default")
        return default_factory()
    if not raw.strip():
        logger.warning(f"[memory] {path} is empty; using empty default")
        return default_factory()
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning(f"[memory] {path} holds invalid JSON; using empty default")
        return default_factory()
    if not isinstance(parsed, expect):
        logger.warning(f"[memory] {path} has unexpected shape; using empty default")
        return default_factory()
    return parsed
