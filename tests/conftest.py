import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from gemini_relay.backends.backend_interface import BackendInterface, BackendRequest
from gemini_relay.message_adapter import make_text_event

TOKEN_URI = "https://oauth2.googleapis.com/token"
CODE_ASSIST = "https://cloudcode-pa.googleapis.com/v1internal"


def expiry_in(seconds: float) -> int:
    """An expiry_date (epoch ms) `seconds` from now."""
    return int((time.time() + seconds) * 1000)


def text_event(text: str) -> Dict[str, Any]:
    return make_text_event(text)


def envelope_event(text: str) -> Dict[str, Any]:
    """An event in the Code Assist `response` envelope."""
    return {"response": {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}}


@pytest.fixture
def creds_path(tmp_path) -> Path:
    return tmp_path / ".gemini" / "oauth_creds.json"


@pytest.fixture
def write_creds(creds_path):
    def _write(**overrides):
        data = {
            "access_token": "ya29.old-token",
            "refresh_token": "1//refresh-token",
            "expiry_date": expiry_in(3600),
            "token_type": "Bearer",
            "scope": "https://www.googleapis.com/auth/cloud-platform",
            "id_token": "header.payload.signature",
        }
        data.update(overrides)
        data = {k: v for k, v in data.items() if v is not None}
        creds_path.parent.mkdir(parents=True, exist_ok=True)
        creds_path.write_text(json.dumps(data), encoding="utf-8")
        return data

    return _write


class FakeBackend(BackendInterface):
    """
    Scripted backend. `scripts` maps a model id to the items its stream
    produces; an Exception item is raised at that point of the stream.
    """

    name = "fake"

    def __init__(self, scripts: Dict[str, List[Any]], requires_credentials: bool = False):
        self.scripts = scripts
        self.requires_credentials = requires_credentials
        self.requests: List[BackendRequest] = []
        self.closed = 0

    @property
    def models_called(self) -> List[str]:
        return [request.model for request in self.requests]

    async def stream_events(self, request: BackendRequest):
        self.requests.append(request)
        try:
            for item in self.scripts.get(request.model, []):
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed += 1


class FakeCredentialManager:
    def __init__(self, error: Optional[Exception] = None, project_id: str = "proj-123"):
        self.error = error
        self.project_id = project_id
        self.ensure_calls = 0
        self.credentials_path = Path("/tmp/oauth_creds.json")

    async def ensure_authenticated(self):
        self.ensure_calls += 1
        if self.error is not None:
            raise self.error
        return {"access_token": "token"}

    async def discover_project_id(self) -> str:
        return self.project_id

    async def get_auth_header(self) -> Dict[str, str]:
        return {"Authorization": "Bearer token"}
