from typing import TYPE_CHECKING

from .config import RelaySettings
from .credential_store import CredentialStore
from .credential_manager import GeminiCredentialManager
from .model_definitions import ModelTiers
from .orchestrator import ProxyRequestContext, RequestOrchestrator

# For type checkers, import the backend registry statically
# At runtime, it's lazy-loaded via __getattr__
if TYPE_CHECKING:
    from .backends import BACKEND_PLUGINS, create_backend

__all__ = [
    "BACKEND_PLUGINS",
    "CredentialStore",
    "GeminiCredentialManager",
    "ModelTiers",
    "ProxyRequestContext",
    "RelaySettings",
    "RequestOrchestrator",
    "create_backend",
]


def __getattr__(name):
    """Lazy-load the backend registry to keep `import gemini_relay` cheap."""
    if name == "BACKEND_PLUGINS":
        from .backends import BACKEND_PLUGINS

        return BACKEND_PLUGINS
    if name == "create_backend":
        from .backends import create_backend

        return create_backend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
