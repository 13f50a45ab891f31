"""Tests for the Authentication Manager

Tests cover:
- Header strategies (api-key, basic, bearer, custom, aws-sig)
- Missing credentials and unknown systems
- OAuth2 token caching, shared refresh and expiry
- SigV4 signing format and determinism
"""

import asyncio
import base64
import re
from datetime import datetime, timezone

import httpx
import pytest

from flowengine.components.auth import AuthConfig, AuthenticationManager, sign_request
from flowengine.errors import AuthenticationError

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now


class TokenServer:
    """MockTransport handler issuing numbered tokens."""

    def __init__(self, status=200, expires_in=3600):
        self.status = status
        self.expires_in = expires_in
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        await asyncio.sleep(0.01)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "invalid_client"})
        return httpx.Response(200, json={
            "access_token": f"token-{len(self.requests)}",
            "expires_in": self.expires_in,
        })


def oauth_manager(server, clock=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    manager = AuthenticationManager("acme", http_client=client, clock=clock)
    manager.register_auth("directory", {
        "type": "oauth2",
        "credentials": {
            "clientId": "client",
            "clientSecret": "secret",
            "tokenUrl": "https://auth.example.com/token",
            "scope": "users.read",
        },
    })
    return manager


class TestHeaderStrategies:
    @pytest.mark.asyncio
    async def test_api_key(self):
        manager = AuthenticationManager("acme")
        manager.register_auth("crm", {"type": "api-key", "credentials": {"apiKey": "k-123"}})
        assert await manager.get_auth_headers("crm") == {"X-API-Key": "k-123"}

    @pytest.mark.asyncio
    async def test_api_key_custom_header(self):
        manager = AuthenticationManager("acme")
        manager.register_auth("crm", {
            "type": "api-key", "credentials": {"apiKey": "k-123", "headerName": "X-Token"},
        })
        assert await manager.get_auth_headers("crm") == {"X-Token": "k-123"}

    @pytest.mark.asyncio
    async def test_basic(self):
        manager = AuthenticationManager("acme")
        manager.register_auth("legacy", {"type": "basic", "credentials": {"username": "ada", "password": "pw"}})
        headers = await manager.get_auth_headers("legacy")
        assert headers == {"Authorization": "Basic " + base64.b64encode(b"ada:pw").decode()}

    @pytest.mark.asyncio
    async def test_bearer(self):
        manager = AuthenticationManager("acme")
        manager.register_auth("chat", AuthConfig(type="bearer", credentials={"token": "t"}))
        assert await manager.get_auth_headers("chat") == {"Authorization": "Bearer t"}

    @pytest.mark.asyncio
    async def test_custom_headers(self):
        manager = AuthenticationManager("acme")
        manager.register_auth("hook", {"type": "custom", "credentials": {"headers": {"X-Sig": 7}}})
        assert await manager.get_auth_headers("hook") == {"X-Sig": "7"}

    @pytest.mark.asyncio
    async def test_aws_sig(self):
        manager = AuthenticationManager("acme")
        manager.register_auth("aws", {
            "type": "aws-sig",
            "credentials": {"accessKeyId": "AKID", "secretAccessKey": "secret", "sessionToken": "st"},
        })
        headers = await manager.get_auth_headers("aws", method="POST", url="https://iam.amazonaws.com/", body=b"{}")
        assert headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKID/")
        assert headers["X-Amz-Security-Token"] == "st"


class TestErrors:
    @pytest.mark.asyncio
    async def test_unknown_system(self):
        with pytest.raises(AuthenticationError) as exc_info:
            await AuthenticationManager("acme").get_auth_headers("nowhere")
        assert exc_info.value.code == "AUTH_CONFIG_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        manager = AuthenticationManager("acme")
        manager.register_auth("crm", {"type": "api-key", "credentials": {}})

        with pytest.raises(AuthenticationError) as exc_info:
            await manager.get_auth_headers("crm")

        assert exc_info.value.code == "AUTH_MISSING_CREDENTIALS"
        assert exc_info.value.details["missing"] == ["apiKey"]
        assert manager.validate_auth_config("crm") is False

    def test_invalid_type(self):
        with pytest.raises(Exception):
            AuthConfig.model_validate({"type": "kerberos"})

    def test_update_auth_config_merges_credentials(self):
        manager = AuthenticationManager("acme")
        manager.register_auth("crm", {"type": "api-key", "credentials": {"apiKey": "old", "headerName": "X"}})

        updated = manager.update_auth_config("crm", credentials={"apiKey": "new"})

        assert updated.credentials == {"apiKey": "new", "headerName": "X"}
        assert manager.registered_systems() == ["crm"]
        assert manager.validate_auth_config("crm")
        with pytest.raises(AuthenticationError):
            manager.update_auth_config("missing", credentials={})


class TestOAuth2:
    """Client-credentials tokens."""

    @pytest.mark.asyncio
    async def test_token_request(self):
        server = TokenServer()
        manager = oauth_manager(server)

        headers = await manager.get_auth_headers("directory")

        assert headers == {"Authorization": "Bearer token-1"}
        request = server.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://auth.example.com/token"
        assert b"grant_type=client_credentials" in request.content
        assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"client:secret").decode()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        server = TokenServer()
        manager = oauth_manager(server)

        results = await asyncio.gather(*(manager.get_auth_headers("directory") for _ in range(5)))

        assert len(server.requests) == 1
        assert {r["Authorization"] for r in results} == {"Bearer token-1"}

    @pytest.mark.asyncio
    async def test_token_refreshed_after_expiry(self):
        server = TokenServer(expires_in=3600)
        clock = FakeClock()
        manager = oauth_manager(server, clock=clock)

        await manager.get_auth_headers("directory")
        clock.now += 3000
        cached = await manager.get_auth_headers("directory")
        # Expiry is treated as 300s early
        clock.now += 301
        refreshed = await manager.get_auth_headers("directory")

        assert cached == {"Authorization": "Bearer token-1"}
        assert refreshed == {"Authorization": "Bearer token-2"}

    @pytest.mark.asyncio
    async def test_clear_token_cache(self):
        server = TokenServer()
        manager = oauth_manager(server)
        await manager.get_auth_headers("directory")
        manager.clear_token_cache("directory")
        assert await manager.get_auth_headers("directory") == {"Authorization": "Bearer token-2"}

    @pytest.mark.asyncio
    async def test_refresh_failure(self):
        manager = oauth_manager(TokenServer(status=401))
        with pytest.raises(AuthenticationError) as exc_info:
            await manager.get_auth_headers("directory")
        assert exc_info.value.code == "AUTH_TOKEN_REFRESH_FAILED"
        assert exc_info.value.details["status"] == 401

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        manager = AuthenticationManager("acme", http_client=client)
        manager.register_auth("directory", {"type": "oauth2", "credentials": {
            "clientId": "c", "clientSecret": "s", "tokenUrl": "https://auth.example.com/token",
        }})

        with pytest.raises(AuthenticationError) as exc_info:
            await manager.get_auth_headers("directory")
        assert exc_info.value.code == "AUTH_TOKEN_REFRESH_FAILED"


class TestSignRequest:
    """SigV4 signing."""

    def sign(self, **overrides):
        kwargs = dict(
            access_key_id="AKIDEXAMPLE",
            secret_access_key="wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
            region="us-east-1",
            service="iam",
            now=NOW,
        )
        kwargs.update(overrides)
        return sign_request("GET", "https://iam.amazonaws.com/?Version=2010-05-08&Action=ListUsers", **kwargs)

    def test_format(self):
        headers = self.sign()

        assert headers["X-Amz-Date"] == "20240101T120000Z"
        assert re.fullmatch(
            r"AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20240101/us-east-1/iam/aws4_request, "
            r"SignedHeaders=host;x-amz-content-sha256;x-amz-date, Signature=[0-9a-f]{64}",
            headers["Authorization"],
        )
        # sha256 of the empty body
        assert headers["X-Amz-Content-Sha256"] == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_deterministic(self):
        assert self.sign() == self.sign()

    def test_signature_covers_body_and_key(self):
        base = self.sign()["Authorization"]
        assert self.sign(body=b"{}")["Authorization"] != base
        assert self.sign(secret_access_key="other")["Authorization"] != base

    def test_session_token_signed(self):
        headers = self.sign(session_token="session")
        assert headers["X-Amz-Security-Token"] == "session"
        assert "x-amz-security-token" in headers["Authorization"]
