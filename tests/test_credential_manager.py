import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest
from pytest_httpx import HTTPXMock

from gemini_relay.credential_manager import GeminiCredentialManager
from gemini_relay.credential_store import CredentialStore
from gemini_relay.error_handler import (
    AuthenticationRequired,
    DiscoveryFailed,
    DiscoveryMalformed,
    DiscoveryTimeout,
    RefreshFailed,
)

from conftest import CODE_ASSIST, TOKEN_URI, expiry_in

LOAD_URL = f"{CODE_ASSIST}:loadCodeAssist"
ONBOARD_URL = f"{CODE_ASSIST}:onboardUser"


@pytest.fixture
def make_manager(creds_path):
    def _make(**kwargs):
        manager = GeminiCredentialManager(CredentialStore(creds_path), **kwargs)
        manager.REFRESH_BACKOFF_BASE_SECONDS = 0
        manager.POLL_INTERVAL_SECONDS = 0
        return manager

    return _make


def _form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestTokenLifecycle:
    @pytest.mark.asyncio
    async def test_valid_token_is_used_without_refresh(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds()
        manager = make_manager()

        header = await manager.get_auth_header()

        assert header == {"Authorization": "Bearer ya29.old-token"}
        assert httpx_mock.get_requests() == []

    @pytest.mark.asyncio
    async def test_token_inside_buffer_is_refreshed_and_persisted_once(
        self, write_creds, make_manager, creds_path, monkeypatch, httpx_mock: HTTPXMock
    ):
        write_creds(expiry_date=expiry_in(30), client_id="file-client-id")
        httpx_mock.add_response(
            url=TOKEN_URI,
            method="POST",
            json={"access_token": "ya29.new-token", "expires_in": 3599, "token_type": "Bearer"},
        )
        saved_documents = []
        original_save = CredentialStore.save

        async def counting_save(store, creds):
            saved_documents.append(dict(creds))
            await original_save(store, creds)

        monkeypatch.setattr(CredentialStore, "save", counting_save)
        manager = make_manager(project_id="proj-configured")

        creds = await manager.ensure_authenticated()
        again = await manager.ensure_authenticated()

        assert creds["access_token"] == again["access_token"] == "ya29.new-token"
        assert creds["refresh_token"] == "1//refresh-token"
        assert creds["expiry_date"] > expiry_in(3000)
        assert manager.project_id == "proj-configured"
        assert len(httpx_mock.get_requests()) == 1
        assert len(saved_documents) == 1

        form = _form(httpx_mock.get_requests()[0])
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "1//refresh-token"
        assert form["client_id"] == "file-client-id"

        saved = json.loads(creds_path.read_text())
        assert saved["access_token"] == "ya29.new-token"
        assert saved["client_id"] == "file-client-id"
        assert saved["id_token"] == "header.payload.signature"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_kept(
        self, write_creds, make_manager, creds_path, httpx_mock: HTTPXMock
    ):
        write_creds(access_token=None)
        httpx_mock.add_response(
            url=TOKEN_URI,
            method="POST",
            json={"access_token": "ya29.new", "expires_in": 3600, "refresh_token": "1//rotated"},
        )

        await make_manager().ensure_valid_token()

        assert json.loads(creds_path.read_text())["refresh_token"] == "1//rotated"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds(expiry_date=expiry_in(-10))
        httpx_mock.add_response(
            url=TOKEN_URI, method="POST", json={"access_token": "ya29.shared", "expires_in": 3600}
        )
        manager = make_manager()

        headers = await asyncio.gather(*(manager.get_auth_header() for _ in range(10)))

        assert all(h == {"Authorization": "Bearer ya29.shared"} for h in headers)
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_missing_file_requires_authentication(self, make_manager):
        with pytest.raises(AuthenticationRequired):
            await make_manager().ensure_valid_token()

    @pytest.mark.asyncio
    async def test_missing_refresh_token_requires_authentication(self, write_creds, make_manager):
        write_creds(refresh_token=None)
        with pytest.raises(AuthenticationRequired):
            await make_manager().ensure_valid_token()

    @pytest.mark.asyncio
    async def test_corrupt_file_requires_authentication(self, creds_path, make_manager):
        creds_path.parent.mkdir(parents=True)
        creds_path.write_text("{broken")
        with pytest.raises(AuthenticationRequired):
            await make_manager().ensure_valid_token()

    @pytest.mark.asyncio
    async def test_rejected_refresh_fails_without_retry(
        self, write_creds, make_manager, creds_path, httpx_mock: HTTPXMock
    ):
        original = write_creds(expiry_date=expiry_in(-10))
        httpx_mock.add_response(
            url=TOKEN_URI, method="POST", status_code=400, json={"error": "invalid_grant"}
        )

        with pytest.raises(RefreshFailed) as exc_info:
            await make_manager().ensure_valid_token()

        assert exc_info.value.status_code == 500
        assert len(httpx_mock.get_requests()) == 1
        assert json.loads(creds_path.read_text()) == original

    @pytest.mark.asyncio
    async def test_server_error_is_retried(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds(expiry_date=expiry_in(-10))
        httpx_mock.add_response(url=TOKEN_URI, method="POST", status_code=503)
        httpx_mock.add_response(
            url=TOKEN_URI, method="POST", status_code=429, headers={"Retry-After": "0"}
        )
        httpx_mock.add_response(
            url=TOKEN_URI, method="POST", json={"access_token": "ya29.third", "expires_in": 3600}
        )

        creds = await make_manager().ensure_valid_token()

        assert creds["access_token"] == "ya29.third"
        assert len(httpx_mock.get_requests()) == 3

    @pytest.mark.asyncio
    async def test_network_errors_exhaust_attempts(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds(expiry_date=expiry_in(-10))
        manager = make_manager()
        for _ in range(manager.MAX_REFRESH_ATTEMPTS):
            httpx_mock.add_exception(httpx.ConnectError("unreachable"), url=TOKEN_URI)

        with pytest.raises(RefreshFailed):
            await manager.ensure_valid_token()


class TestProjectDiscovery:
    @pytest.mark.asyncio
    async def test_configured_project_skips_network(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds()
        manager = make_manager(project_id="configured-proj")

        assert await manager.discover_project_id() == "configured-proj"
        assert httpx_mock.get_requests() == []

    @pytest.mark.asyncio
    async def test_existing_project_is_discovered_once(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds()
        httpx_mock.add_response(
            url=LOAD_URL, method="POST", json={"cloudaicompanionProject": "proj-existing"}
        )
        manager = make_manager()

        first, second = await asyncio.gather(
            manager.discover_project_id(), manager.discover_project_id()
        )
        third = await manager.discover_project_id()

        assert first == second == third == "proj-existing"
        assert manager.project_id == "proj-existing"
        requests = httpx_mock.get_requests()
        assert len(requests) == 1
        assert requests[0].headers["Authorization"] == "Bearer ya29.old-token"
        assert json.loads(requests[0].content)["metadata"]["pluginType"] == "GEMINI"

    @pytest.mark.asyncio
    async def test_project_object_form(self, write_creds, make_manager, httpx_mock: HTTPXMock):
        write_creds()
        httpx_mock.add_response(
            url=LOAD_URL, method="POST", json={"cloudaicompanionProject": {"id": "proj-obj"}}
        )
        assert await make_manager().discover_project_id() == "proj-obj"

    @pytest.mark.asyncio
    async def test_onboarding_polls_until_done(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds()
        httpx_mock.add_response(
            url=LOAD_URL,
            method="POST",
            json={
                "allowedTiers": [
                    {"id": "free-tier"},
                    {"id": "standard-tier", "isDefault": True},
                ]
            },
        )
        httpx_mock.add_response(url=ONBOARD_URL, method="POST", json={"done": False})
        httpx_mock.add_response(url=ONBOARD_URL, method="POST", json={"done": False})
        httpx_mock.add_response(
            url=ONBOARD_URL,
            method="POST",
            json={"done": True, "response": {"cloudaicompanionProject": {"id": "proj-new"}}},
        )
        manager = make_manager()

        assert await manager.discover_project_id() == "proj-new"

        onboard_requests = [r for r in httpx_mock.get_requests() if r.url == ONBOARD_URL]
        assert len(onboard_requests) == 3
        assert json.loads(onboard_requests[0].content)["tierId"] == "standard-tier"

    @pytest.mark.asyncio
    async def test_onboarding_timeout_caches_nothing(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds()
        manager = make_manager()
        manager.MAX_POLL_ATTEMPTS = 2
        httpx_mock.add_response(url=LOAD_URL, method="POST", json={})
        for _ in range(3):
            httpx_mock.add_response(url=ONBOARD_URL, method="POST", json={"done": False})

        with pytest.raises(DiscoveryTimeout):
            await manager.discover_project_id()

        assert manager.project_id is None

    @pytest.mark.asyncio
    async def test_onboarding_without_project_is_malformed(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds()
        httpx_mock.add_response(url=LOAD_URL, method="POST", json={})
        httpx_mock.add_response(url=ONBOARD_URL, method="POST", json={"done": True, "response": {}})
        manager = make_manager()

        with pytest.raises(DiscoveryMalformed):
            await manager.discover_project_id()
        assert manager.project_id is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [["unexpected"], "oops", 42])
    async def test_non_object_load_response_is_malformed(
        self, write_creds, make_manager, httpx_mock: HTTPXMock, body
    ):
        write_creds()
        httpx_mock.add_response(url=LOAD_URL, method="POST", json=body)
        manager = make_manager()

        with pytest.raises(DiscoveryMalformed):
            await manager.discover_project_id()
        assert manager.project_id is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operation",
        [
            {"done": True, "response": "no-project"},
            {"done": True, "response": {"cloudaicompanionProject": "not-an-object"}},
            {"done": True, "response": {"cloudaicompanionProject": {"id": 7}}},
            ["done"],
        ],
    )
    async def test_unusable_onboard_operation_is_malformed(
        self, write_creds, make_manager, httpx_mock: HTTPXMock, operation
    ):
        write_creds()
        httpx_mock.add_response(
            url=LOAD_URL, method="POST", json={"allowedTiers": ["standard-tier", None]}
        )
        httpx_mock.add_response(url=ONBOARD_URL, method="POST", json=operation)

        with pytest.raises(DiscoveryMalformed):
            await make_manager().discover_project_id()

        onboard_request = [r for r in httpx_mock.get_requests() if r.url == ONBOARD_URL][0]
        assert json.loads(onboard_request.content)["tierId"] == "free-tier"

    @pytest.mark.asyncio
    async def test_ensure_authenticated_tolerates_malformed_discovery(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds()
        httpx_mock.add_response(url=LOAD_URL, method="POST", json="oops")
        manager = make_manager()

        creds = await manager.ensure_authenticated()

        assert creds["access_token"] == "ya29.old-token"
        assert manager.project_id is None

    @pytest.mark.asyncio
    async def test_http_error_is_discovery_failure(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds()
        httpx_mock.add_response(url=LOAD_URL, method="POST", status_code=403, text="denied")

        with pytest.raises(DiscoveryFailed):
            await make_manager().discover_project_id()

    @pytest.mark.asyncio
    async def test_ensure_authenticated_tolerates_discovery_failure(
        self, write_creds, make_manager, httpx_mock: HTTPXMock
    ):
        write_creds()
        httpx_mock.add_response(url=LOAD_URL, method="POST", status_code=500)
        manager = make_manager()

        creds = await manager.ensure_authenticated()

        assert creds["access_token"] == "ya29.old-token"
        assert manager.project_id is None

    @pytest.mark.asyncio
    async def test_ensure_authenticated_surfaces_credential_failure(self, make_manager):
        with pytest.raises(AuthenticationRequired):
            await make_manager().ensure_authenticated()
