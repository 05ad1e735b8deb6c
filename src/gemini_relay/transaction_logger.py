# src/gemini_relay/transaction_logger.py

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Union

from .utils.resilient_io import safe_log_write, safe_mkdir, safe_write_json

lib_logger = logging.getLogger("gemini_relay")


class TransactionLogger:
    """A file logger for a single relay request, enabled per request."""

    def __init__(
        self,
        log_root: Union[str, Path],
        model_name: str,
        request_id: str,
        enabled: bool = True,
    ):
        self.enabled = enabled
        if not self.enabled:
            return

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        safe_model_name = model_name.replace("/", "_").replace(":", "_")
        self.log_dir = (
            Path(log_root) / "transactions" / f"{timestamp}_{safe_model_name}_{request_id}"
        )
        if not safe_mkdir(self.log_dir, lib_logger):
            self.enabled = False

    def log_request(self, payload: Dict[str, Any]):
        """Logs the request payload sent to the backend."""
        if not self.enabled:
            return
        safe_write_json(self.log_dir / "request_payload.json", payload, lib_logger)

    def log_event(self, event: Dict[str, Any]):
        """Logs one decoded backend event."""
        if not self.enabled:
            return
        safe_log_write(
            self.log_dir / "response_stream.log",
            json.dumps(event, ensure_ascii=False) + "\n",
            lib_logger,
        )

    def log_error(self, error_message: str):
        if not self.enabled:
            return
        safe_log_write(
            self.log_dir / "error.log",
            f"[{datetime.now(timezone.utc).isoformat()}] {error_message}\n",
            lib_logger,
        )

    def log_final_response(self, response_data: Dict[str, Any]):
        """Logs the final, reassembled response."""
        if not self.enabled:
            return
        safe_write_json(self.log_dir / "final_response.json", response_data, lib_logger)
