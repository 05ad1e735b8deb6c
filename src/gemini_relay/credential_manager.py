# src/gemini_relay/credential_manager.py

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from .credential_store import CredentialStore
from .google_oauth_base import GoogleOAuthBase
from .error_handler import (
    DiscoveryError,
    DiscoveryFailed,
    DiscoveryMalformed,
    DiscoveryTimeout,
)

lib_logger = logging.getLogger("gemini_relay")

CODE_ASSIST_ENDPOINT = "https://cloudcode-pa.googleapis.com/v1internal"

CLIENT_METADATA = {
    "ideType": "IDE_UNSPECIFIED",
    "platform": "PLATFORM_UNSPECIFIED",
    "pluginType": "GEMINI",
}


def _json_object(response: httpx.Response, operation: str) -> Dict[str, Any]:
    data = response.json()
    if not isinstance(data, dict):
        raise DiscoveryMalformed(
            f"{operation} returned {type(data).__name__} instead of a JSON object"
        )
    return data


class GeminiCredentialManager(GoogleOAuthBase):
    """
    Owns the Gemini CLI OAuth credential and the Code Assist project id.

    One instance is shared by every request in the process. The project id is
    resolved once (loadCodeAssist, then onboardUser polling if the account is
    new) and cached for the lifetime of the process.
    """

    CLIENT_ID = "REPLACE_WITH_GEMINI_CLI_OAUTH_CLIENT_ID"
    CLIENT_SECRET = "REPLACE_WITH_GEMINI_CLI_OAUTH_CLIENT_SECRET"
    OAUTH_SCOPES = [
        "https://www.googleapis.com/auth/cloud-platform",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    ]
    ENV_PREFIX = "GEMINI_CLI"

    POLL_INTERVAL_SECONDS: float = 2
    MAX_POLL_ATTEMPTS: int = 30

    def __init__(
        self,
        store: CredentialStore,
        client: Optional[httpx.AsyncClient] = None,
        project_id: Optional[str] = None,
    ):
        super().__init__(store, client)
        self._configured_project_id = project_id
        self._project_id: Optional[str] = None
        self._discovery_lock = asyncio.Lock()

    @property
    def project_id(self) -> Optional[str]:
        return self._project_id

    async def ensure_authenticated(self) -> Dict[str, Any]:
        """
        Guarantees a non-expired access token and tries to resolve the project id.

        Discovery problems are logged and left for the call site to hit again;
        only credential problems fail this call.
        """
        creds = await self.ensure_valid_token()
        if self._project_id is None:
            try:
                await self.discover_project_id()
            except DiscoveryError as e:
                lib_logger.warning(f"Project discovery deferred: {e.message}")
        return creds

    async def discover_project_id(self) -> str:
        if self._project_id:
            return self._project_id

        async with self._discovery_lock:
            if self._project_id:
                return self._project_id

            if self._configured_project_id:
                lib_logger.info(
                    f"Using configured Gemini project ID: {self._configured_project_id}"
                )
                self._project_id = self._configured_project_id
                return self._project_id

            auth_header = await self.get_auth_header()
            headers = {**auth_header, "Content-Type": "application/json"}

            try:
                async with self._http_client() as client:
                    project_id = await self._run_discovery(client, headers)
            except httpx.HTTPStatusError as e:
                raise DiscoveryFailed(
                    f"Project discovery failed (HTTP {e.response.status_code}): {e.response.text}"
                ) from e
            except httpx.RequestError as e:
                raise DiscoveryFailed(f"Project discovery failed: {e}") from e
            except ValueError as e:
                raise DiscoveryMalformed(
                    f"Project discovery returned invalid JSON: {e}"
                ) from e

            self._project_id = project_id
            return project_id

    async def _run_discovery(
        self, client: httpx.AsyncClient, headers: Dict[str, str]
    ) -> str:
        lib_logger.debug(
            "Attempting project discovery via Code Assist loadCodeAssist endpoint..."
        )
        response = await client.post(
            f"{CODE_ASSIST_ENDPOINT}:loadCodeAssist",
            headers=headers,
            json={"cloudaicompanionProject": None, "metadata": CLIENT_METADATA},
            timeout=20,
        )
        response.raise_for_status()
        data = _json_object(response, "loadCodeAssist")

        server_project = data.get("cloudaicompanionProject")
        if isinstance(server_project, dict):
            server_project = server_project.get("id")
        if isinstance(server_project, str) and server_project:
            lib_logger.info(
                f"Discovered Gemini project ID via loadCodeAssist: {server_project}"
            )
            return server_project

        tier_id = "free-tier"
        tiers = data.get("allowedTiers")
        for tier in tiers if isinstance(tiers, list) else []:
            if isinstance(tier, dict) and tier.get("isDefault"):
                tier_id = tier.get("id", tier_id)
                break

        lib_logger.info(
            f"No existing Gemini project found, onboarding user with tier '{tier_id}'..."
        )
        onboard_request = {
            "tierId": tier_id,
            "cloudaicompanionProject": None,
            "metadata": CLIENT_METADATA,
        }

        lro_data = await self._post_onboard(client, headers, onboard_request)
        attempts = 0
        while not lro_data.get("done"):
            if attempts >= self.MAX_POLL_ATTEMPTS:
                lib_logger.error(
                    f"Onboarding did not complete after {attempts} polling attempts"
                )
                raise DiscoveryTimeout(
                    f"Onboarding did not complete within {attempts} polls "
                    f"({attempts * self.POLL_INTERVAL_SECONDS:g}s)."
                )
            await asyncio.sleep(self.POLL_INTERVAL_SECONDS)
            attempts += 1
            lib_logger.debug(
                f"Polling onboarding status... (Attempt {attempts}/{self.MAX_POLL_ATTEMPTS})"
            )
            lro_data = await self._post_onboard(client, headers, onboard_request)

        # onboardUser returns response.cloudaicompanionProject as an object with .id
        operation_result = lro_data.get("response")
        project_obj = (
            operation_result.get("cloudaicompanionProject")
            if isinstance(operation_result, dict)
            else None
        )
        project_id = project_obj.get("id") if isinstance(project_obj, dict) else None
        if not isinstance(project_id, str) or not project_id:
            lib_logger.error("Onboarding completed but no project ID in response")
            raise DiscoveryMalformed(
                "Onboarding completed, but no project ID was returned."
            )

        lib_logger.info(
            f"Successfully onboarded user and discovered project ID: {project_id}"
        )
        return project_id

    async def _post_onboard(
        self,
        client: httpx.AsyncClient,
        headers: Dict[str, str],
        onboard_request: Dict[str, Any],
    ) -> Dict[str, Any]:
        response = await client.post(
            f"{CODE_ASSIST_ENDPOINT}:onboardUser",
            headers=headers,
            json=onboard_request,
            timeout=30,
        )
        response.raise_for_status()
        return _json_object(response, "onboardUser")
