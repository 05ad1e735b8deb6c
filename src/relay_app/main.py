import time
import uuid
import asyncio
import sys
import argparse
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

import colorlog
import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from fastapi.security import APIKeyHeader
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from gemini_relay import (
    CredentialStore,
    GeminiCredentialManager,
    ModelTiers,
    RelaySettings,
    RequestOrchestrator,
    create_backend,
)
from gemini_relay.background_refresher import BackgroundRefresher
from gemini_relay.error_handler import (
    BackendRateLimited,
    RelayError,
    error_status_code,
    openai_error_body,
)
from gemini_relay.failure_logger import configure_failure_log
from gemini_relay.orchestrator import ProxyRequestContext
from relay_app.log_stream import LogBroadcastHandler
from relay_app.request_logger import log_request_to_console
from relay_app.schemas import ChatCompletionRequest, ModelList

# Shared by the logging setup and the /ws/logs route
log_broadcaster = LogBroadcastHandler()


# --- Logging Configuration ---
class RelayDebugFilter(logging.Filter):
    """Lets only DEBUG records from the relay library into proxy_debug.log."""

    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith("gemini_relay")


class NoLiteLLMLogFilter(logging.Filter):
    def filter(self, record):
        return not record.name.startswith("LiteLLM")


def configure_logging(log_dir: Path, broadcaster: LogBroadcastHandler = log_broadcaster):
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    file_format = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    info_file_handler = logging.FileHandler(log_dir / "proxy.log", encoding="utf-8")
    info_file_handler.setLevel(logging.INFO)
    info_file_handler.setFormatter(file_format)

    debug_file_handler = logging.FileHandler(log_dir / "proxy_debug.log", encoding="utf-8")
    debug_file_handler.setLevel(logging.DEBUG)
    debug_file_handler.setFormatter(file_format)
    debug_file_handler.addFilter(RelayDebugFilter())

    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    console_handler.addFilter(NoLiteLLMLogFilter())
    broadcaster.addFilter(NoLiteLLMLogFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(info_file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(debug_file_handler)
    root_logger.addHandler(broadcaster)

    # Silence other noisy loggers by setting their level higher than root
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # Keep LiteLLM's own logger away from the console
    litellm_logger = logging.getLogger("LiteLLM")
    litellm_logger.handlers = []
    litellm_logger.propagate = False


def load_env_files(root_dir: Path) -> List[str]:
    """Loads .env first, then any additional *.env files without overriding."""
    load_dotenv(root_dir / ".env")
    env_files = sorted(root_dir.glob("*.env"))
    for env_file in env_files:
        if env_file.name != ".env":
            load_dotenv(env_file, override=False)
    return [env_file.name for env_file in env_files]


def _error_response(error: Exception) -> JSONResponse:
    return JSONResponse(status_code=error_status_code(error), content=openai_error_body(error))


def _invalid_request(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": {"message": message, "type": "invalid_request_error", "code": 400}},
    )


async def streaming_response_wrapper(
    request: Request, ctx: ProxyRequestContext, frames: AsyncIterator[str]
) -> AsyncIterator[str]:
    """
    Forwards frames to the client and stops the backend when the client goes away.

    Once the first frame is out the response status is fixed, so a failure
    here can only be logged and the connection closed without [DONE].
    """
    try:
        async for frame in frames:
            if await request.is_disconnected():
                logging.warning(f"Client disconnected, stopping stream for request {ctx.request_id}.")
                break
            yield frame
    except Exception as e:
        logging.error(f"Stream for request {ctx.request_id} failed after output started: {e}")
    finally:
        await frames.aclose()


def create_app(
    settings: RelaySettings,
    orchestrator: Optional[RequestOrchestrator] = None,
    broadcaster: LogBroadcastHandler = log_broadcaster,
) -> FastAPI:
    """
    Builds the relay app. When no orchestrator is passed, the lifespan
    creates the HTTP client, credential manager, backend and refresher.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client: Optional[httpx.AsyncClient] = None
        refresher: Optional[BackgroundRefresher] = None

        if app.state.orchestrator is None:
            client = httpx.AsyncClient()
            backend = create_backend(settings, client)
            manager = None
            if backend.requires_credentials:
                manager = GeminiCredentialManager(
                    CredentialStore(settings.credentials_path),
                    client,
                    project_id=settings.project_id,
                )
            app.state.orchestrator = RequestOrchestrator(
                backend,
                manager,
                ModelTiers.from_settings(settings),
                max_output_tokens=settings.max_output_tokens,
                temperature=settings.temperature,
                top_p=settings.top_p,
                enable_request_logging=settings.enable_request_logging,
                log_dir=settings.log_dir,
            )
            logging.info(f"Using {backend.describe()} backend.")

            if manager is not None:
                if not settings.skip_oauth_init_check:
                    logging.info("Validating Gemini OAuth credentials...")
                    try:
                        await manager.ensure_authenticated()
                        logging.info("Gemini OAuth credentials are valid.")
                    except RelayError as e:
                        logging.error(f"OAuth initialization failed: {e.message}")
                refresher = BackgroundRefresher(manager, settings.refresh_interval)
                refresher.start()

        yield

        if refresher is not None:
            await refresher.stop()
        if client is not None:
            await client.aclose()
            logging.info("HTTP client closed.")

    app = FastAPI(lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.start_time = time.time()

    # Add CORS middleware to allow all origins, methods, and headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    api_key_header = APIKeyHeader(name="Authorization", auto_error=False)

    async def verify_api_key(auth: str = Depends(api_key_header)):
        """Dependency to verify the proxy API key."""
        # If PROXY_API_KEY is not set, skip verification (open access)
        if not settings.proxy_api_key:
            return auth
        if not auth or auth != f"Bearer {settings.proxy_api_key}":
            raise HTTPException(status_code=401, detail="Invalid or missing API Key")
        return auth

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request, _=Depends(verify_api_key)):
        """
        OpenAI-compatible chat completions, streamed as SSE or returned as one document.
        """
        orchestrator: RequestOrchestrator = request.app.state.orchestrator
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]

        try:
            request_data = await request.json()
        except ValueError:
            return _invalid_request("Invalid JSON in request body.")
        try:
            body = ChatCompletionRequest.model_validate(request_data)
        except ValidationError as e:
            return _invalid_request(f"Invalid Request: {e.errors()[0].get('msg', str(e))}")

        client_info = (request.client.host, request.client.port) if request.client else ("unknown", 0)
        log_request_to_console(request_id, client_info, request_data, orchestrator.backend.name)

        ctx = orchestrator.new_context(body.model, body.stream, request_id)
        chat = orchestrator.prepare(body.message_dicts(), body.overrides())
        headers = {"X-Request-ID": ctx.request_id}

        try:
            if body.stream:
                frames = await orchestrator.open_stream(ctx, chat)
                return StreamingResponse(
                    streaming_response_wrapper(request, ctx, frames),
                    media_type="text/event-stream",
                    headers={**headers, "Cache-Control": "no-cache", "Connection": "keep-alive"},
                )
            response = await orchestrator.complete(ctx, chat)
            return JSONResponse(content=response, headers=headers)

        except (RelayError, BackendRateLimited) as e:
            logging.error(f"Request {ctx.request_id} failed: {type(e).__name__}")
            return _error_response(e)
        except Exception as e:
            logging.error(f"Request {ctx.request_id} failed unexpectedly: {e}")
            return _error_response(e)

    @app.get("/v1/models")
    async def list_models(request: Request, _=Depends(verify_api_key)):
        """Returns the served models in the OpenAI-compatible format."""
        tiers = ModelTiers.from_settings(settings)
        if request.app.state.orchestrator is not None:
            tiers = request.app.state.orchestrator.model_tiers
        return ModelList(data=tiers.model_cards()).model_dump()

    @app.get("/api/status")
    async def status(request: Request):
        orchestrator = request.app.state.orchestrator
        return {
            "status": "running",
            "backend": orchestrator.backend.name if orchestrator else settings.backend,
            "uptime": round(time.time() - request.app.state.start_time, 3),
        }

    @app.websocket("/ws/logs")
    async def log_stream(websocket: WebSocket):
        await websocket.accept()
        queue = broadcaster.subscribe()

        async def forward_logs():
            while True:
                message = await queue.get()
                await websocket.send_json(message)

        sender = asyncio.create_task(forward_logs())
        logging.info("New log client connected.")
        try:
            # Incoming messages are ignored; receiving is how a disconnect shows up
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logging.debug("Log client disconnected.")
        finally:
            broadcaster.unsubscribe(queue)
            sender.cancel()
            try:
                await sender
            except (asyncio.CancelledError, RuntimeError, WebSocketDisconnect):
                pass

    webui_dir = settings.webui_dir
    if webui_dir and Path(webui_dir).is_dir():
        app.mount("/", StaticFiles(directory=str(webui_dir), html=True), name="webui")
    else:
        if webui_dir:
            logging.warning(f"Dashboard directory not found: {webui_dir}")

        @app.get("/")
        def read_root():
            return PlainTextResponse("Gemini relay is running")

    return app


def print_banner(console: Console, settings: RelaySettings, host: str, port: int, env_files: List[str]):
    key_display = (
        f"✓ {settings.proxy_api_key[:4]}..." if settings.proxy_api_key
        else "✗ Not Set (anyone can access!)"
    )
    lines = [
        f"Listening on [bold]{host}:{port}[/bold]",
        f"Backend: [bold]{settings.backend}[/bold]",
        f"Models: {settings.primary_model} → {settings.fallback_model}",
        f"Credentials: {settings.credentials_path}",
        f"Proxy API Key: {key_display}",
    ]
    if env_files:
        lines.append(f"Loaded {len(env_files)} .env file(s): {', '.join(env_files)}")
    console.print(Panel.fit("\n".join(lines), title="[bold cyan]Gemini Relay[/bold cyan]", border_style="cyan"))


def run(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="OpenAI-compatible relay for Gemini")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind the server to.")
    parser.add_argument("--port", type=int, default=3003, help="Port to run the server on.")
    parser.add_argument(
        "--backend", choices=["http", "cli"], default=None,
        help="Reach Gemini through the Code Assist API (http) or the gemini CLI (cli).",
    )
    parser.add_argument(
        "--enable-request-logging", action="store_true", help="Enable per-request transaction logs."
    )
    args = parser.parse_args(argv)

    env_files = load_env_files(Path.cwd())
    settings = RelaySettings.from_env()
    if args.backend:
        settings.backend = args.backend
    if args.enable_request_logging:
        settings.enable_request_logging = True

    configure_logging(settings.log_dir)
    configure_failure_log(str(settings.log_dir))
    if settings.enable_request_logging:
        logging.info("Request logging is enabled.")

    print_banner(Console(), settings, args.host, args.port, env_files)
    uvicorn.run(create_app(settings), host=args.host, port=args.port)


if __name__ == "__main__":
    run()
