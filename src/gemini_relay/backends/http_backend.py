# src/gemini_relay/backends/http_backend.py

import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict

import httpx

from .backend_interface import BackendInterface, BackendRequest
from ..credential_manager import CODE_ASSIST_ENDPOINT
from ..error_handler import (
    BackendRateLimited,
    StreamError,
    get_retry_after,
    is_rate_limit_message,
)
from ..stream_parser import iter_sse_events

lib_logger = logging.getLogger("gemini_relay")

GEMINI_CLI_HEADERS = {
    "User-Agent": "google-api-nodejs-client/9.15.1",
    "X-Goog-Api-Client": "gl-node/22.17.0",
    "Client-Metadata": "ideType=IDE_UNSPECIFIED,platform=PLATFORM_UNSPECIFIED,pluginType=GEMINI",
    "Accept": "text/event-stream",
}


class HttpBackend(BackendInterface):
    """Streams from the Code Assist `streamGenerateContent` endpoint over SSE."""

    name = "http"
    requires_credentials = True

    def __init__(self, client: httpx.AsyncClient, endpoint: str = CODE_ASSIST_ENDPOINT):
        self._client = client
        self._endpoint = endpoint

    def describe(self) -> str:
        return f"http ({self._endpoint})"

    async def stream_events(self, request: BackendRequest) -> AsyncIterator[Dict[str, Any]]:
        url = f"{self._endpoint}:streamGenerateContent"
        headers = {**request.auth_header, **GEMINI_CLI_HEADERS}

        try:
            async with self._client.stream(
                "POST",
                url,
                headers=headers,
                json=request.to_payload(),
                params={"alt": "sse"},
                timeout=600,
            ) as response:
                if response.status_code >= 400:
                    error_body = (await response.aread()).decode("utf-8", errors="replace")
                    self._raise_for_error(request.model, response, error_body)

                async with aclosing(iter_sse_events(response.aiter_bytes())) as events:
                    async for event in events:
                        yield event

        except httpx.HTTPError as e:
            lib_logger.error(f"Gemini API transport error for model {request.model}: {e}")
            raise StreamError(f"Gemini API transport error: {e}") from e

    def _raise_for_error(
        self, model: str, response: httpx.Response, error_body: str
    ) -> None:
        status_code = response.status_code
        if status_code == 429 or is_rate_limit_message(error_body):
            retry_after = get_retry_after(error_body)
            retry_info = f" (retry after {retry_after}s)" if retry_after else ""
            lib_logger.debug(
                f"Gemini API rate limit on {model}: HTTP {status_code}{retry_info}"
            )
            raise BackendRateLimited(
                f"Gemini rate limit exceeded for {model}{retry_info} | {error_body}",
                model=model,
                response=response,
            )

        lib_logger.error(f"Gemini API error {status_code}: {error_body}")
        raise StreamError(
            f"Gemini API error {status_code}: {error_body}", upstream_status=status_code
        )
