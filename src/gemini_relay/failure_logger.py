import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from .error_handler import StreamError, mask_credential

# Dedicated JSON logger for failures; does not propagate to the console
failure_logger = logging.getLogger("gemini_relay.failures")
failure_logger.setLevel(logging.INFO)
failure_logger.propagate = False
failure_logger.addHandler(logging.NullHandler())

# The main library logger gets a concise summary
main_lib_logger = logging.getLogger("gemini_relay")


class JsonFormatter(logging.Formatter):
    def format(self, record):
        # The message is already a dict
        return json.dumps(record.msg, ensure_ascii=False, default=str)


def configure_failure_log(log_dir: str = "logs") -> bool:
    """Points the failure logger at <log_dir>/failures.log (5 MB, 2 backups)."""
    try:
        os.makedirs(log_dir, exist_ok=True)
        handler = RotatingFileHandler(
            os.path.join(log_dir, "failures.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=2,
            encoding="utf-8",
        )
    except OSError as e:
        main_lib_logger.warning(f"Cannot create failure log file handler: {e}")
        return False

    handler.setFormatter(JsonFormatter())
    for old in list(failure_logger.handlers):
        failure_logger.removeHandler(old)
        old.close()
    failure_logger.addHandler(handler)
    return True


def _extract_response_body(error: Exception) -> Optional[str]:
    response = getattr(error, "response", None)
    if response is not None:
        try:
            if response.text:
                return response.text
        except Exception:
            # Streamed responses that were never read raise on .text
            pass
    detail = getattr(error, "detail", None) or getattr(error, "message", None)
    return str(detail) if detail else None


def log_failure(
    request_id: str,
    model: str,
    attempt: int,
    error: Exception,
    credential_hint: Optional[str] = None,
    is_fallback: bool = False,
):
    """
    Logs a detailed failure record to failures.log and a one-line summary to the main logger.
    """
    raw_response = _extract_response_body(error)

    error_chain = []
    visited = set()
    current_error = error
    while current_error and len(error_chain) <= 5:
        if id(current_error) in visited:
            break
        visited.add(id(current_error))
        error_chain.append(
            {"type": type(current_error).__name__, "message": str(current_error)[:2000]}
        )
        current_error = current_error.__cause__ or current_error.__context__

    detailed_log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "credential": mask_credential(credential_hint),
        "model": model,
        "attempt_number": attempt,
        "is_fallback": is_fallback,
        "error_type": type(error).__name__,
        "error_message": str(error)[:5000],
        "upstream_status": getattr(error, "upstream_status", None)
        if isinstance(error, StreamError)
        else getattr(error, "status_code", None),
        "raw_response": raw_response[:10000] if raw_response else None,
        "error_chain": error_chain if len(error_chain) > 1 else None,
    }

    try:
        failure_logger.error(detailed_log_data)
    except OSError as e:
        main_lib_logger.error(f"Failed to write to failures.log: {e}")

    main_lib_logger.error(
        f"Request {request_id} failed for model {model} (attempt {attempt}). "
        f"Error: {type(error).__name__}. See failures.log for details."
    )
