from typing import Dict, Type

import httpx

from .backend_interface import BackendInterface, BackendRequest
from .http_backend import HttpBackend
from .subprocess_backend import SubprocessBackend

# --- Backend Plugin System ---

# Maps the GEMINI_RELAY_BACKEND value to the class that implements it
BACKEND_PLUGINS: Dict[str, Type[BackendInterface]] = {
    "http": HttpBackend,
    "cli": SubprocessBackend,
}


def create_backend(settings, client: httpx.AsyncClient) -> BackendInterface:
    """Instantiates the backend named by the settings."""
    backend_cls = BACKEND_PLUGINS.get(settings.backend)
    if backend_cls is None:
        raise ValueError(
            f"Unknown backend '{settings.backend}'. Choose one of: {', '.join(BACKEND_PLUGINS)}"
        )
    if backend_cls is SubprocessBackend:
        return SubprocessBackend(settings.cli_command)
    return backend_cls(client)


__all__ = [
    "BACKEND_PLUGINS",
    "BackendInterface",
    "BackendRequest",
    "HttpBackend",
    "SubprocessBackend",
    "create_backend",
]
