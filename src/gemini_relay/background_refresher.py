# src/gemini_relay/background_refresher.py

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .credential_manager import GeminiCredentialManager

lib_logger = logging.getLogger("gemini_relay")


class BackgroundRefresher:
    """
    A background task that periodically refreshes the OAuth token so that
    requests rarely have to wait on the token endpoint.
    """

    def __init__(self, manager: "GeminiCredentialManager", interval: int = 600):
        if interval <= 0:
            lib_logger.warning(f"Invalid refresh interval '{interval}'. Falling back to 600s.")
            interval = 600
        self._interval = interval
        self._manager = manager
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Starts the background refresh task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            lib_logger.info(
                f"Background token refresher started. Check interval: {self._interval} seconds."
            )

    async def stop(self):
        """Stops the background refresh task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            lib_logger.info("Background token refresher stopped.")

    async def _run(self):
        while True:
            try:
                await self._manager.ensure_authenticated()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                lib_logger.error(f"Error during proactive token refresh: {e}")
            await asyncio.sleep(self._interval)
