# src/gemini_relay/credential_store.py

import os
import json
import logging
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles
import aiofiles.os

from .error_handler import CredentialStoreError

lib_logger = logging.getLogger("gemini_relay")


class CredentialStore:
    """
    Reads and writes the single OAuth credential document used by the relay.

    The file format is the one the gemini CLI writes to ~/.gemini/oauth_creds.json.
    Unknown fields are kept as-is so a rewrite never loses data the CLI relies on.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    async def load(self) -> Optional[Dict[str, Any]]:
        """Returns the stored credential, or None when no file exists."""
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            lib_logger.debug(f"No credential file at '{self.path}'")
            return None
        except OSError as e:
            raise CredentialStoreError(
                f"Failed to read OAuth credentials from '{self.path}': {e}"
            ) from e

        try:
            creds = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CredentialStoreError(
                f"OAuth credential file '{self.path}' is not valid JSON: {e}"
            ) from e
        if not isinstance(creds, dict):
            raise CredentialStoreError(
                f"OAuth credential file '{self.path}' does not hold a JSON object"
            )

        # gcloud-style files nest the tokens under "credential"
        if isinstance(creds.get("credential"), dict):
            creds = creds["credential"]
        return creds

    async def save(self, creds: Dict[str, Any]) -> None:
        """
        Persists the credential with a write-replace so a concurrent reader
        never sees a half-written document. The file is left at 0600.
        """
        parent_dir = self.path.parent
        tmp_path = None
        try:
            await aiofiles.os.makedirs(parent_dir, exist_ok=True)
            tmp_fd, tmp_path = tempfile.mkstemp(
                dir=parent_dir, prefix=".tmp_", suffix=".json"
            )
            os.close(tmp_fd)

            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(creds, indent=2))

            try:
                os.chmod(tmp_path, 0o600)
            except (OSError, AttributeError):
                # Windows may not support chmod
                pass

            await aiofiles.os.replace(tmp_path, self.path)
            tmp_path = None
            lib_logger.debug(f"Saved OAuth credentials to '{self.path}' (atomic write).")
        except (OSError, TypeError, ValueError) as e:
            lib_logger.error(f"Failed to save OAuth credentials to '{self.path}': {e}")
            raise CredentialStoreError(
                f"Failed to save OAuth credentials to '{self.path}': {e}"
            ) from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
