from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional


@dataclass
class BackendRequest:
    """Everything either backend needs for one dispatch."""

    model: str
    contents: List[Dict[str, Any]] = field(default_factory=list)
    prompt: str = ""
    generation_config: Dict[str, Any] = field(default_factory=dict)
    safety_settings: List[Dict[str, str]] = field(default_factory=list)
    project_id: Optional[str] = None
    auth_header: Dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """The Code Assist request body."""
        return {
            "model": self.model,
            "project": self.project_id,
            "request": {
                "contents": self.contents,
                "generationConfig": self.generation_config,
                "safetySettings": self.safety_settings,
            },
        }


class BackendInterface(ABC):
    """
    A way of reaching the Gemini model that yields backend events.

    Both variants produce the same event contract (see message_adapter.extract_event_text),
    so the orchestrator does not care which one it drives.
    """

    name: str = "backend"

    # Whether the orchestrator has to supply an access token and project id.
    requires_credentials: bool = True

    @abstractmethod
    def stream_events(self, request: BackendRequest) -> AsyncIterator[Dict[str, Any]]:
        """
        Dispatches the request and yields decoded events in arrival order.

        Implementations are async generators. They raise BackendRateLimited on a
        quota condition and StreamError on transport failure, and release the
        process / connection when the generator is closed.
        """
        raise NotImplementedError

    def describe(self) -> str:
        return self.name
