# src/gemini_relay/utils/resilient_io.py
"""
Best-effort file helpers for diagnostics output (transaction logs, dumps).

These log a warning and return False instead of raising: losing a diagnostic
file must never fail a request. The OAuth credential goes through
CredentialStore instead, which raises.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, Union


def _replace_with(path: Path, content: str):
    # Sibling temp file so os.replace stays on one filesystem
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def safe_write_json(
    path: Union[str, Path],
    data: Dict[str, Any],
    logger: logging.Logger,
    atomic: bool = True,
    indent: int = 2,
) -> bool:
    """Serializes `data` to `path`, creating parent directories. Unserializable values go through str()."""
    path = Path(path)
    try:
        content = json.dumps(data, indent=indent, ensure_ascii=False, default=str)
        path.parent.mkdir(parents=True, exist_ok=True)
        if atomic:
            _replace_with(path, content)
        else:
            path.write_text(content, encoding="utf-8")
    except (OSError, TypeError, ValueError) as e:
        logger.warning(f"Could not write diagnostics file {path}: {e}")
        return False
    return True


def safe_log_write(
    path: Union[str, Path],
    content: str,
    logger: logging.Logger,
    mode: str = "a",
) -> bool:
    """Appends `content` to a text log (or truncates first with mode='w')."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open(mode, encoding="utf-8") as log_file:
            log_file.write(content)
    except OSError as e:
        logger.warning(f"Could not append to {path}: {e}")
        return False
    return True


def safe_mkdir(path: Union[str, Path], logger: logging.Logger) -> bool:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        logger.warning(f"Could not create log directory {path}: {e}")
        return False
    return True
