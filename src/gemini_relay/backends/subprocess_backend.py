# src/gemini_relay/backends/subprocess_backend.py

import shlex
import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List

from .backend_interface import BackendInterface, BackendRequest
from ..error_handler import BackendRateLimited, StreamError, is_rate_limit_message
from ..stream_parser import iter_text_events

lib_logger = logging.getLogger("gemini_relay")


class SubprocessBackend(BackendInterface):
    """
    Runs the gemini CLI once per request.

    The prompt goes in on stdin, stdout text is streamed back as events and
    stderr is watched for quota markers. The CLI handles its own login, so
    no credential is needed here.
    """

    name = "cli"
    requires_credentials = False
    READ_CHUNK_SIZE = 4096
    STDERR_TAIL_LINES = 20

    def __init__(self, command: List[str]):
        if not command:
            raise ValueError("SubprocessBackend needs a command to run")
        self._command = list(command)

    def describe(self) -> str:
        return f"cli ({shlex.join(self._command)})"

    async def stream_events(self, request: BackendRequest) -> AsyncIterator[Dict[str, Any]]:
        args = [*self._command, "--model", request.model]
        lib_logger.info(f"Starting gemini CLI: {shlex.join(args)}")
        lib_logger.debug(f"CLI prompt (first 100 chars): {request.prompt[:100]!r}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            lib_logger.error(f"Failed to start gemini CLI '{self._command[0]}': {e}")
            raise StreamError(f"Failed to start gemini CLI '{self._command[0]}': {e}") from e

        stderr_lines: List[str] = []
        rate_limited = asyncio.Event()
        produced_output = False

        async def drain_stderr():
            async for raw_line in process.stderr:
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                stderr_lines.append(line)
                lib_logger.warning(f"[gemini CLI stderr] {line}")
                if not produced_output and is_rate_limit_message(line):
                    rate_limited.set()
                    if process.returncode is None:
                        process.kill()

        async def read_stdout():
            while True:
                chunk = await process.stdout.read(self.READ_CHUNK_SIZE)
                if not chunk:
                    return
                yield chunk

        stderr_task = asyncio.create_task(
            drain_stderr(), name=f"gemini-cli-stderr-{process.pid}"
        )
        try:
            try:
                process.stdin.write(request.prompt.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                lib_logger.warning(f"gemini CLI closed stdin early: {e}")
            finally:
                process.stdin.close()

            async with aclosing(iter_text_events(read_stdout())) as events:
                async for event in events:
                    if rate_limited.is_set():
                        break
                    produced_output = True
                    yield event

            await stderr_task
            return_code = await process.wait()
            stderr_text = "\n".join(stderr_lines[-self.STDERR_TAIL_LINES :])

            if rate_limited.is_set() or (
                is_rate_limit_message(stderr_text)
                and (return_code != 0 or not produced_output)
            ):
                lib_logger.debug(f"gemini CLI reported a quota error for {request.model}")
                raise BackendRateLimited(
                    f"Gemini CLI rate limit exceeded for {request.model} | {stderr_text}",
                    model=request.model,
                )
            if return_code != 0:
                lib_logger.error(f"gemini CLI exited with code {return_code}")
                raise StreamError(
                    f"gemini CLI exited with code {return_code}: {stderr_text or 'no stderr output'}"
                )
            lib_logger.info(f"gemini CLI exited normally for model {request.model}")

        finally:
            stderr_pending = not stderr_task.done()
            if stderr_pending:
                stderr_task.cancel()
            if process.returncode is None:
                lib_logger.info(f"Terminating gemini CLI process {process.pid}")
                process.kill()
                await process.wait()
            if stderr_pending:
                try:
                    await stderr_task
                except asyncio.CancelledError:
                    pass
