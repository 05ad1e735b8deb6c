# src/gemini_relay/orchestrator.py

import uuid
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from .backends.backend_interface import BackendInterface, BackendRequest
from .credential_manager import GeminiCredentialManager
from .error_handler import BackendRateLimited, RelayError
from .failure_logger import log_failure
from .message_adapter import (
    DONE_FRAME,
    event_fragment,
    split_system_instruction,
    to_backend_conversation,
    to_cli_prompt,
    to_openai_final_chunk,
    to_openai_non_stream_response,
    to_openai_stream_chunk,
)
from .model_definitions import ModelTiers
from .transaction_logger import TransactionLogger

lib_logger = logging.getLogger("gemini_relay")

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
]


@dataclass
class ProxyRequestContext:
    """Per-request state. Owned by exactly one in-flight request."""

    model: str
    stream: bool
    requested_model: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    buffer: List[str] = field(default_factory=list)
    is_fallback: bool = False
    committed: bool = False
    attempts: int = 0


@dataclass
class PreparedChat:
    """The request-direction conversion of one chat, reused across a fallback."""

    system_instruction: str
    contents: List[Dict[str, Any]]
    prompt: str
    generation_config: Dict[str, Any]
    safety_settings: List[Dict[str, str]] = field(
        default_factory=lambda: [dict(s) for s in SAFETY_SETTINGS]
    )


class RequestOrchestrator:
    """
    Drives one chat completion end to end: authenticate, dispatch, stream or
    aggregate, and fall back to the secondary model once on a quota error.
    """

    def __init__(
        self,
        backend: BackendInterface,
        credential_manager: Optional[GeminiCredentialManager],
        model_tiers: ModelTiers,
        max_output_tokens: int = 8192,
        temperature: float = 0.9,
        top_p: float = 1.0,
        enable_request_logging: bool = False,
        log_dir: Union[str, Path] = "logs",
    ):
        if backend.requires_credentials and credential_manager is None:
            raise ValueError(f"Backend '{backend.name}' needs a credential manager")
        self.backend = backend
        self.credential_manager = credential_manager
        self.model_tiers = model_tiers
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.enable_request_logging = enable_request_logging
        self.log_dir = Path(log_dir)

    # --- Request direction ---

    def new_context(
        self, model: Optional[str], stream: bool, request_id: Optional[str] = None
    ) -> ProxyRequestContext:
        ctx = ProxyRequestContext(
            model=self.model_tiers.resolve(model), stream=stream, requested_model=model
        )
        if request_id:
            ctx.request_id = request_id
        return ctx

    def prepare(
        self, messages: List[Any], overrides: Optional[Dict[str, Any]] = None
    ) -> PreparedChat:
        overrides = overrides or {}
        system_instruction, conversation = split_system_instruction(messages)

        generation_config = {
            "maxOutputTokens": self.max_output_tokens,
            "temperature": self.temperature,
            "topP": self.top_p,
        }
        if overrides.get("max_tokens") is not None:
            generation_config["maxOutputTokens"] = overrides["max_tokens"]
        if overrides.get("temperature") is not None:
            generation_config["temperature"] = overrides["temperature"]
        if overrides.get("top_p") is not None:
            generation_config["topP"] = overrides["top_p"]

        lib_logger.debug(
            f"Prepared chat: {len(conversation)} turn(s), system instruction "
            f"{system_instruction[:100]!r}"
        )
        return PreparedChat(
            system_instruction=system_instruction,
            contents=to_backend_conversation(conversation, system_instruction),
            prompt=to_cli_prompt(conversation, system_instruction),
            generation_config=generation_config,
        )

    async def _build_backend_request(
        self, ctx: ProxyRequestContext, chat: PreparedChat
    ) -> BackendRequest:
        request = BackendRequest(
            model=ctx.model,
            contents=chat.contents,
            prompt=chat.prompt,
            generation_config=dict(chat.generation_config),
            safety_settings=chat.safety_settings,
        )
        if self.backend.requires_credentials:
            # Failures here end the request before anything is written
            await self.credential_manager.ensure_authenticated()
            request.project_id = await self.credential_manager.discover_project_id()
            request.auth_header = await self.credential_manager.get_auth_header()
        return request

    def _can_fall_back(self, ctx: ProxyRequestContext) -> bool:
        return (
            not ctx.is_fallback
            and not ctx.committed
            and self.model_tiers.is_primary(ctx.model)
        )

    def _switch_to_fallback(self, ctx: ProxyRequestContext, error: Exception):
        lib_logger.info(
            f"Rate limit on {ctx.model} for request {ctx.request_id}, "
            f"falling back to {self.model_tiers.fallback}"
        )
        lib_logger.debug(f"Rate limit detail: {error}")
        ctx.model = self.model_tiers.fallback
        ctx.is_fallback = True
        ctx.buffer.clear()

    def _transaction_logger(self, ctx: ProxyRequestContext) -> TransactionLogger:
        return TransactionLogger(
            self.log_dir,
            ctx.model,
            ctx.request_id,
            enabled=self.enable_request_logging,
        )

    def _record_failure(self, ctx: ProxyRequestContext, error: Exception):
        hint = None
        if self.credential_manager is not None:
            hint = str(self.credential_manager.credentials_path)
        log_failure(
            request_id=ctx.request_id,
            model=ctx.model,
            attempt=ctx.attempts,
            error=error,
            credential_hint=hint,
            is_fallback=ctx.is_fallback,
        )

    async def _dispatch(
        self,
        ctx: ProxyRequestContext,
        chat: PreparedChat,
        file_logger: TransactionLogger,
    ) -> AsyncIterator[Dict[str, Any]]:
        ctx.attempts += 1
        request = await self._build_backend_request(ctx, chat)
        file_logger.log_request(request.to_payload())
        lib_logger.debug(
            f"Dispatching request {ctx.request_id} to {self.backend.name} backend "
            f"(model={ctx.model}, attempt={ctx.attempts}, fallback={ctx.is_fallback})"
        )
        async with aclosing(self.backend.stream_events(request)) as events:
            async for event in events:
                file_logger.log_event(event)
                yield event

    # --- Non-streaming ---

    async def complete(self, ctx: ProxyRequestContext, chat: PreparedChat) -> Dict[str, Any]:
        """Aggregates the whole backend stream into one chat.completion document."""
        while True:
            file_logger = self._transaction_logger(ctx)
            try:
                async with aclosing(self._dispatch(ctx, chat, file_logger)) as events:
                    async for event in events:
                        fragment = event_fragment(event)
                        if fragment:
                            ctx.buffer.append(fragment)
            except BackendRateLimited as e:
                file_logger.log_error(str(e))
                if self._can_fall_back(ctx):
                    self._switch_to_fallback(ctx, e)
                    continue
                self._record_failure(ctx, e)
                raise
            except RelayError as e:
                file_logger.log_error(e.message)
                self._record_failure(ctx, e)
                raise

            response = to_openai_non_stream_response("".join(ctx.buffer), ctx.model)
            file_logger.log_final_response(response)
            lib_logger.info(
                f"Completed request {ctx.request_id} on {ctx.model} "
                f"({len(response['choices'][0]['message']['content'])} chars)"
            )
            return response

    # --- Streaming ---

    async def stream_frames(
        self, ctx: ProxyRequestContext, chat: PreparedChat
    ) -> AsyncIterator[str]:
        """
        Yields SSE frames as backend events arrive, then the closing stop chunk
        and the [DONE] sentinel.

        Errors after the first frame propagate to the caller, which can only
        close the connection.
        """
        while True:
            file_logger = self._transaction_logger(ctx)
            streamed: List[str] = []
            try:
                async with aclosing(self._dispatch(ctx, chat, file_logger)) as events:
                    async for event in events:
                        frame = to_openai_stream_chunk(event, ctx.model)
                        if frame is None:
                            continue
                        streamed.append(event_fragment(event))
                        ctx.committed = True
                        yield frame
            except BackendRateLimited as e:
                file_logger.log_error(str(e))
                if self._can_fall_back(ctx):
                    self._switch_to_fallback(ctx, e)
                    continue
                self._record_failure(ctx, e)
                raise
            except RelayError as e:
                file_logger.log_error(e.message)
                self._record_failure(ctx, e)
                raise

            ctx.committed = True
            yield to_openai_final_chunk("", ctx.model)
            yield DONE_FRAME
            file_logger.log_final_response(
                to_openai_non_stream_response("".join(streamed), ctx.model)
            )
            lib_logger.info(f"Completed streaming request {ctx.request_id} on {ctx.model}")
            return

    async def open_stream(
        self, ctx: ProxyRequestContext, chat: PreparedChat
    ) -> AsyncIterator[str]:
        """
        Starts the stream and waits for its first frame, so every error raised
        before the client has seen a byte reaches the caller as an exception.
        """
        frames = self.stream_frames(ctx, chat)
        try:
            first_frame = await frames.__anext__()
        except StopAsyncIteration:
            return frames
        return _prepend(first_frame, frames)


async def _prepend(first_frame: str, frames: AsyncIterator[str]) -> AsyncIterator[str]:
    async with aclosing(frames):
        yield first_frame
        async for frame in frames:
            yield frame


__all__ = [
    "PreparedChat",
    "ProxyRequestContext",
    "RequestOrchestrator",
    "SAFETY_SETTINGS",
]
