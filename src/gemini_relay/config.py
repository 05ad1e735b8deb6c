# src/gemini_relay/config.py

import os
import shlex
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

lib_logger = logging.getLogger("gemini_relay")

DEFAULT_CREDENTIALS_PATH = Path.home() / ".gemini" / "oauth_creds.json"
DEFAULT_PRIMARY_MODEL = "gemini-2.5-pro"
DEFAULT_FALLBACK_MODEL = "gemini-2.5-flash"


def _env_bool(key: str, default: bool = False) -> bool:
    """Get boolean from environment variable."""
    return os.getenv(key, str(default).lower()).lower() in ("true", "1", "yes")


def _env_int(key: str, default: int) -> int:
    """Get integer from environment variable, falling back on garbage."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        lib_logger.warning(f"Invalid {key} '{raw}'. Falling back to {default}.")
        return default


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        lib_logger.warning(f"Invalid {key} '{raw}'. Falling back to {default}.")
        return default


def _env_list(key: str) -> List[str]:
    return [item.strip() for item in os.getenv(key, "").split(",") if item.strip()]


@dataclass
class RelaySettings:
    """Runtime configuration for the relay, normally read from the environment."""

    backend: str = "http"
    credentials_path: Path = DEFAULT_CREDENTIALS_PATH
    project_id: Optional[str] = None
    cli_command: List[str] = field(default_factory=lambda: ["gemini"])
    primary_model: str = DEFAULT_PRIMARY_MODEL
    fallback_model: str = DEFAULT_FALLBACK_MODEL
    extra_models: List[str] = field(default_factory=list)
    max_output_tokens: int = 8192
    temperature: float = 0.9
    top_p: float = 1.0
    proxy_api_key: Optional[str] = None
    refresh_interval: int = 600
    skip_oauth_init_check: bool = False
    log_dir: Path = Path("logs")
    webui_dir: Optional[Path] = None
    enable_request_logging: bool = False

    @classmethod
    def from_env(cls) -> "RelaySettings":
        backend = os.getenv("GEMINI_RELAY_BACKEND", "http").strip().lower()
        if backend not in ("http", "cli"):
            lib_logger.warning(
                f"Unknown GEMINI_RELAY_BACKEND '{backend}'. Falling back to 'http'."
            )
            backend = "http"

        creds_path = os.getenv("GEMINI_CREDENTIALS_PATH")
        webui_dir = os.getenv("GEMINI_RELAY_WEBUI_DIR")

        return cls(
            backend=backend,
            credentials_path=Path(creds_path).expanduser()
            if creds_path
            else DEFAULT_CREDENTIALS_PATH,
            project_id=os.getenv("GEMINI_CLI_PROJECT_ID") or None,
            cli_command=shlex.split(os.getenv("GEMINI_CLI_COMMAND", "gemini"))
            or ["gemini"],
            primary_model=os.getenv("GEMINI_RELAY_PRIMARY_MODEL", DEFAULT_PRIMARY_MODEL),
            fallback_model=os.getenv(
                "GEMINI_RELAY_FALLBACK_MODEL", DEFAULT_FALLBACK_MODEL
            ),
            extra_models=_env_list("GEMINI_RELAY_EXTRA_MODELS"),
            max_output_tokens=_env_int("GEMINI_RELAY_MAX_OUTPUT_TOKENS", 8192),
            temperature=_env_float("GEMINI_RELAY_TEMPERATURE", 0.9),
            top_p=_env_float("GEMINI_RELAY_TOP_P", 1.0),
            proxy_api_key=os.getenv("PROXY_API_KEY") or None,
            refresh_interval=_env_int("OAUTH_REFRESH_INTERVAL", 600),
            skip_oauth_init_check=_env_bool("SKIP_OAUTH_INIT_CHECK", False),
            log_dir=Path(os.getenv("GEMINI_RELAY_LOG_DIR", "logs")),
            webui_dir=Path(webui_dir) if webui_dir else None,
            enable_request_logging=_env_bool("GEMINI_RELAY_REQUEST_LOGGING", False),
        )
