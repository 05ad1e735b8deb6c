# src/gemini_relay/google_oauth_base.py

import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .credential_store import CredentialStore
from .error_handler import (
    AuthenticationRequired,
    CredentialStoreError,
    RefreshFailed,
    mask_credential,
)

lib_logger = logging.getLogger("gemini_relay")


class GoogleOAuthBase:
    """
    Base class for a single long-lived Google OAuth2 credential.

    Subclasses must override:
        - CLIENT_ID: OAuth client ID
        - CLIENT_SECRET: OAuth client secret
        - OAUTH_SCOPES: List of OAuth scopes
        - ENV_PREFIX: Prefix for environment variables (e.g., "GEMINI_CLI")

    Subclasses may optionally override:
        - REFRESH_EXPIRY_BUFFER_SECONDS: Time buffer before token expiry (default: 60s)
        - MAX_REFRESH_ATTEMPTS: Attempts at the token endpoint for transient failures

    The credential is loaded lazily on first use and mutated in place on every
    refresh. All mutation happens under one lock; a caller that waited on an
    in-flight refresh re-checks the expiry and reuses the fresh token.
    """

    # Subclasses MUST override these
    CLIENT_ID: str = None
    CLIENT_SECRET: str = None
    OAUTH_SCOPES: list = None
    ENV_PREFIX: str = None

    # Subclasses MAY override these
    TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    REFRESH_EXPIRY_BUFFER_SECONDS: int = 60
    MAX_REFRESH_ATTEMPTS: int = 3
    REFRESH_BACKOFF_BASE_SECONDS: float = 1.0

    def __init__(
        self, store: CredentialStore, client: Optional[httpx.AsyncClient] = None
    ):
        if self.CLIENT_ID is None:
            raise NotImplementedError(f"{self.__class__.__name__} must set CLIENT_ID")
        if self.CLIENT_SECRET is None:
            raise NotImplementedError(
                f"{self.__class__.__name__} must set CLIENT_SECRET"
            )
        if self.OAUTH_SCOPES is None:
            raise NotImplementedError(
                f"{self.__class__.__name__} must set OAUTH_SCOPES"
            )
        if self.ENV_PREFIX is None:
            raise NotImplementedError(f"{self.__class__.__name__} must set ENV_PREFIX")

        self._store = store
        self._client = client
        self._credentials: Optional[Dict[str, Any]] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def credentials_path(self):
        return self._store.path

    def _client_id(self, creds: Dict[str, Any]) -> str:
        return (
            creds.get("client_id")
            or os.getenv(f"{self.ENV_PREFIX}_CLIENT_ID")
            or self.CLIENT_ID
        )

    def _client_secret(self, creds: Dict[str, Any]) -> str:
        return (
            creds.get("client_secret")
            or os.getenv(f"{self.ENV_PREFIX}_CLIENT_SECRET")
            or self.CLIENT_SECRET
        )

    @asynccontextmanager
    async def _http_client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient() as client:
                yield client

    def _is_token_expired(self, creds: Dict[str, Any]) -> bool:
        if not creds.get("access_token"):
            return True
        try:
            # gemini-cli stores expiry_date in epoch milliseconds
            expiry_timestamp = float(creds.get("expiry_date") or 0) / 1000
        except (TypeError, ValueError):
            return True
        return expiry_timestamp <= time.time() + self.REFRESH_EXPIRY_BUFFER_SECONDS

    async def _load_credentials(self) -> Dict[str, Any]:
        if self._credentials is not None:
            return self._credentials

        async with self._refresh_lock:
            if self._credentials is not None:
                return self._credentials

            lib_logger.debug(
                f"Loading {self.ENV_PREFIX} credentials from file: {self._store.path}"
            )
            try:
                creds = await self._store.load()
            except CredentialStoreError as e:
                raise AuthenticationRequired(
                    f"{self.ENV_PREFIX} OAuth credentials are unusable: {e.message}"
                ) from e

            if creds is None:
                raise AuthenticationRequired(
                    f"{self.ENV_PREFIX} OAuth credential file not found at '{self._store.path}'. "
                    "Sign in with the gemini CLI first."
                )
            if not creds.get("refresh_token"):
                raise AuthenticationRequired(
                    f"No refresh_token found in '{self._store.path}'. Re-authenticate with the gemini CLI."
                )

            self._credentials = creds
            lib_logger.info(
                f"Loaded {self.ENV_PREFIX} OAuth credentials from '{self._store.path}'"
            )
            return creds

    async def ensure_valid_token(self) -> Dict[str, Any]:
        """Returns the in-memory credential, refreshing it first when it is about to expire."""
        creds = await self._load_credentials()
        if not self._is_token_expired(creds):
            return creds
        return await self._refresh_token()

    async def _refresh_token(self) -> Dict[str, Any]:
        async with self._refresh_lock:
            creds = self._credentials
            # Another caller may have refreshed while we waited on the lock
            if not self._is_token_expired(creds):
                return creds

            refresh_token = creds.get("refresh_token")
            if not refresh_token:
                raise AuthenticationRequired("No refresh_token found in credentials.")

            lib_logger.debug(
                f"Refreshing {self.ENV_PREFIX} OAuth token (refresh token {mask_credential(refresh_token)})..."
            )
            new_token_data = await self._request_new_token(creds, refresh_token)

            access_token = new_token_data.get("access_token")
            if not access_token:
                raise RefreshFailed(
                    f"Token endpoint response did not contain an access_token: {list(new_token_data.keys())}"
                )
            creds["access_token"] = access_token
            expires_in = new_token_data.get("expires_in", 3600)
            creds["expiry_date"] = int((time.time() + float(expires_in)) * 1000)

            # Google rotates refresh tokens rarely, but keep the new one if it does
            if new_token_data.get("refresh_token"):
                creds["refresh_token"] = new_token_data["refresh_token"]
            for key in ("token_type", "scope", "id_token"):
                if new_token_data.get(key):
                    creds[key] = new_token_data[key]

            try:
                await self._store.save(creds)
            except CredentialStoreError as e:
                raise RefreshFailed(
                    f"Refreshed {self.ENV_PREFIX} token could not be persisted: {e.message}"
                ) from e

            lib_logger.info(f"Successfully refreshed {self.ENV_PREFIX} OAuth token.")
            return creds

    async def _request_new_token(
        self, creds: Dict[str, Any], refresh_token: str
    ) -> Dict[str, Any]:
        last_error: Optional[Exception] = None

        async with self._http_client() as client:
            for attempt in range(self.MAX_REFRESH_ATTEMPTS):
                is_last = attempt == self.MAX_REFRESH_ATTEMPTS - 1
                wait_time = self.REFRESH_BACKOFF_BASE_SECONDS * 2**attempt
                try:
                    response = await client.post(
                        self.TOKEN_URI,
                        data={
                            "client_id": self._client_id(creds),
                            "client_secret": self._client_secret(creds),
                            "refresh_token": refresh_token,
                            "grant_type": "refresh_token",
                        },
                        timeout=30.0,
                    )
                    response.raise_for_status()
                    return response.json()

                except httpx.HTTPStatusError as e:
                    last_error = e
                    status_code = e.response.status_code

                    if status_code == 429:
                        retry_after = e.response.headers.get("Retry-After", "")
                        if retry_after.isdigit():
                            wait_time = int(retry_after)
                        lib_logger.warning(
                            f"Rate limited by token endpoint (HTTP 429), retry after {wait_time}s"
                        )
                    elif 500 <= status_code < 600:
                        lib_logger.warning(
                            f"Token endpoint error (HTTP {status_code}), retry {attempt + 1}/{self.MAX_REFRESH_ATTEMPTS} in {wait_time}s"
                        )
                    else:
                        # invalid_grant and friends: the refresh token is dead
                        lib_logger.warning(
                            f"Refresh token rejected (HTTP {status_code}). Token may have been revoked or expired."
                        )
                        raise RefreshFailed(
                            f"{self.ENV_PREFIX} token refresh rejected (HTTP {status_code}): {e.response.text}. "
                            "Re-authenticate with the gemini CLI."
                        ) from e

                except httpx.RequestError as e:
                    last_error = e
                    lib_logger.warning(
                        f"Network error during refresh: {e}, retry {attempt + 1}/{self.MAX_REFRESH_ATTEMPTS} in {wait_time}s"
                    )

                except ValueError as e:
                    raise RefreshFailed(
                        f"Token endpoint returned invalid JSON: {e}"
                    ) from e

                if not is_last:
                    await asyncio.sleep(wait_time)

        raise RefreshFailed(
            f"{self.ENV_PREFIX} token refresh failed after {self.MAX_REFRESH_ATTEMPTS} attempts: {last_error}"
        ) from last_error

    async def get_auth_header(self) -> Dict[str, str]:
        creds = await self.ensure_valid_token()
        return {"Authorization": f"Bearer {creds['access_token']}"}
