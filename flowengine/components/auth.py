"""Authentication Manager - per-system auth headers for action components.

Strategies: api-key, oauth2 (client credentials), basic, bearer, aws-sig
(Signature Version 4) and custom headers. One manager per tenant is
injected into the Scheduler; it is safe to share between concurrently
running steps. The OAuth2 token cache is guarded by a per-key lock so
concurrent callers share a single refresh.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlsplit

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .. import settings
from ..errors import AuthenticationError

logger = logging.getLogger(__name__)

AuthType = Literal["api-key", "oauth2", "basic", "bearer", "aws-sig", "custom"]


class AuthConfig(BaseModel):
    """Authentication settings for one external system."""
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    type: AuthType
    credentials: Dict[str, Any] = Field(default_factory=dict)
    base_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("baseUrl", "base_url"), serialization_alias="baseUrl"
    )
    timeout: Optional[float] = None


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _uri_encode(value: str, safe: str = "-_.~") -> str:
    return quote(value, safe=safe)


def sign_request(
    method: str,
    url: str,
    *,
    access_key_id: str,
    secret_access_key: str,
    region: str,
    service: str,
    headers: Optional[Dict[str, str]] = None,
    body: bytes = b"",
    session_token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, str]:
    """AWS Signature Version 4 for a single request.

    Returns:
        Headers to add to the request (Authorization, X-Amz-Date,
        X-Amz-Content-Sha256 and, with a session token, X-Amz-Security-Token)
    """
    now = now or datetime.now(timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = now.strftime("%Y%m%d")

    parts = urlsplit(url)
    payload_hash = hashlib.sha256(body).hexdigest()

    signed: Dict[str, str] = {k.lower(): " ".join(str(v).split()) for k, v in (headers or {}).items()}
    signed["host"] = parts.netloc
    signed["x-amz-date"] = amz_date
    signed["x-amz-content-sha256"] = payload_hash
    if session_token:
        signed["x-amz-security-token"] = session_token

    canonical_uri = _uri_encode(parts.path or "/", safe="/-_.~")
    query = sorted(parse_qsl(parts.query, keep_blank_values=True))
    canonical_query = "&".join(f"{_uri_encode(k)}={_uri_encode(v)}" for k, v in query)
    header_names = sorted(signed)
    canonical_headers = "".join(f"{name}:{signed[name]}\n" for name in header_names)
    signed_headers = ";".join(header_names)

    canonical_request = "\n".join([
        method.upper(),
        canonical_uri,
        canonical_query,
        canonical_headers,
        signed_headers,
        payload_hash,
    ])

    credential_scope = f"{date_stamp}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join([
        "AWS4-HMAC-SHA256",
        amz_date,
        credential_scope,
        hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
    ])

    k_date = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    k_signing = _hmac(k_service, "aws4_request")
    signature = hmac.new(k_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    result = {
        "Authorization": (
            f"AWS4-HMAC-SHA256 Credential={access_key_id}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        ),
        "X-Amz-Date": amz_date,
        "X-Amz-Content-Sha256": payload_hash,
    }
    if session_token:
        result["X-Amz-Security-Token"] = session_token
    return result


_REQUIRED_CREDENTIALS: Dict[str, Tuple[str, ...]] = {
    "api-key": ("apiKey",),
    "oauth2": ("clientId", "clientSecret", "tokenUrl"),
    "basic": ("username", "password"),
    "bearer": ("token",),
    "aws-sig": ("accessKeyId", "secretAccessKey"),
    "custom": ("headers",),
}


class AuthenticationManager:
    """
    Produces auth headers for registered systems.

    Args:
        tenant_id: Tenant the credentials belong to (part of cache keys)
        http_client: Optional shared httpx client for token requests
        clock: Wall clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        tenant_id: str,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.tenant_id = tenant_id
        self._http_client = http_client
        self._clock = clock or time.time
        self._configs: Dict[str, AuthConfig] = {}
        self._token_cache: Dict[str, Tuple[str, float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def register_auth(self, system: str, config: AuthConfig | Dict[str, Any]) -> None:
        if not isinstance(config, AuthConfig):
            config = AuthConfig.model_validate(config)
        self._configs[system] = config
        logger.info(f"Registered auth config: tenant={self.tenant_id}, system={system}, type={config.type}")

    def registered_systems(self) -> List[str]:
        return list(self._configs)

    def validate_auth_config(self, system: str) -> bool:
        """Check the credentials required by the system's strategy are present."""
        config = self._configs.get(system)
        if config is None:
            return False
        required = _REQUIRED_CREDENTIALS.get(config.type, ())
        return all(config.credentials.get(key) for key in required)

    def update_auth_config(self, system: str, **changes: Any) -> AuthConfig:
        """Merge changes into an existing config; credentials are merged key by key."""
        existing = self._configs.get(system)
        if existing is None:
            raise AuthenticationError(
                f"No authentication config found for system: {system}", code="AUTH_CONFIG_NOT_FOUND"
            )
        data = existing.model_dump()
        if "credentials" in changes:
            data["credentials"] = {**existing.credentials, **changes.pop("credentials")}
        data.update(changes)
        updated = AuthConfig.model_validate(data)
        self._configs[system] = updated
        self.clear_token_cache(system)
        return updated

    def clear_token_cache(self, system: str) -> None:
        self._token_cache.pop(self._cache_key(system), None)
        logger.info(f"Cleared token cache: tenant={self.tenant_id}, system={system}")

    def _cache_key(self, system: str) -> str:
        return f"{self.tenant_id}:{system}:oauth2"

    async def get_auth_headers(
        self,
        system: str,
        *,
        method: str = "GET",
        url: Optional[str] = None,
        body: bytes = b"",
    ) -> Dict[str, str]:
        """Get authentication headers for a system.

        ``method``/``url``/``body`` are only used by request-signing strategies.

        Raises:
            AuthenticationError: Unknown system, missing credentials or token failure
        """
        config = self._configs.get(system)
        if config is None:
            raise AuthenticationError(
                f"No authentication config found for system: {system}",
                code="AUTH_CONFIG_NOT_FOUND",
                details={"system": system, "tenant_id": self.tenant_id},
            )

        missing = [key for key in _REQUIRED_CREDENTIALS[config.type] if not config.credentials.get(key)]
        if missing:
            raise AuthenticationError(
                f"{config.type} credentials not configured for {system}: missing {missing}",
                code="AUTH_MISSING_CREDENTIALS",
                details={"system": system, "auth_type": config.type, "missing": missing},
            )

        creds = config.credentials
        if config.type == "api-key":
            return {creds.get("headerName", "X-API-Key"): str(creds["apiKey"])}
        if config.type == "oauth2":
            token = await self._get_oauth2_token(system, config)
            return {"Authorization": f"Bearer {token}"}
        if config.type == "basic":
            basic = _b64(f"{creds['username']}:{creds['password']}")
            return {"Authorization": f"Basic {basic}"}
        if config.type == "bearer":
            return {"Authorization": f"Bearer {creds['token']}"}
        if config.type == "aws-sig":
            service = creds.get("service", "iam")
            target = url or config.base_url or f"https://{service}.amazonaws.com/"
            return sign_request(
                method,
                target,
                access_key_id=creds["accessKeyId"],
                secret_access_key=creds["secretAccessKey"],
                region=creds.get("region", "us-east-1"),
                service=service,
                body=body,
                session_token=creds.get("sessionToken"),
            )
        if not isinstance(creds["headers"], dict):
            raise AuthenticationError(
                f"Custom headers for {system} must be an object", code="AUTH_MISSING_CREDENTIALS"
            )
        return {str(k): str(v) for k, v in creds["headers"].items()}

    async def _get_oauth2_token(self, system: str, config: AuthConfig) -> str:
        key = self._cache_key(system)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._token_cache.get(key)
            if cached and cached[1] > self._clock():
                return cached[0]

            token, expires_in = await self._request_token(system, config)
            expires_at = self._clock() + expires_in - settings.OAUTH_TOKEN_EXPIRY_SKEW_S
            self._token_cache[key] = (token, expires_at)
            logger.info(f"Refreshed OAuth2 token: tenant={self.tenant_id}, system={system}")
            return token

    async def _request_token(self, system: str, config: AuthConfig) -> Tuple[str, float]:
        creds = config.credentials
        basic = _b64(f"{creds['clientId']}:{creds['clientSecret']}")
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Authorization": f"Basic {basic}",
        }
        data = {"grant_type": "client_credentials", "scope": creds.get("scope", "")}

        try:
            if self._http_client is not None:
                response = await self._http_client.post(creds["tokenUrl"], headers=headers, data=data)
            else:
                async with httpx.AsyncClient(timeout=config.timeout or settings.HTTP_TIMEOUT) as client:
                    response = await client.post(creds["tokenUrl"], headers=headers, data=data)
        except httpx.HTTPError as e:
            raise AuthenticationError(
                f"OAuth2 token request failed for {system}: {e}",
                code="AUTH_TOKEN_REFRESH_FAILED",
                details={"system": system},
            ) from e

        if response.status_code != 200:
            raise AuthenticationError(
                f"Failed to refresh OAuth2 token for {system}: HTTP {response.status_code}",
                code="AUTH_TOKEN_REFRESH_FAILED",
                details={"system": system, "status": response.status_code},
            )

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise AuthenticationError(
                f"OAuth2 token response for {system} has no access_token",
                code="AUTH_TOKEN_REFRESH_FAILED",
                details={"system": system},
            )
        expires_in = float(payload.get("expires_in") or creds.get("expires_in") or 3600)
        return token, expires_in
