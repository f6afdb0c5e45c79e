"""Tests for request signing, gateway credentials and token exchange."""

import base64
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest
from Crypto.Hash import SHA256
from Crypto.Signature import pkcs1_15

from grouppay.engine.retry import AuthError, ConfigurationError
from grouppay.providers.auth import AccessToken, TokenCache, build_token_form, fetch_access_token
from grouppay.providers.base import GatewayCredentials
from grouppay.providers.signing import (
    canonical_string,
    load_private_key,
    register_canonical_string,
    sign,
)

TOKEN_URL = "https://sso.test/oauth/token"


def _verify(rsa_key, data: str, signature: str) -> None:
    pkcs1_15.new(rsa_key.publickey()).verify(SHA256.new(data.encode("utf-8")), base64.b64decode(signature))


class TestCanonicalStrings:
    def test_generic(self):
        assert canonical_string("post", "/GroupPayment/DoPayment", "key", '{"a": 1}') == (
            'POST#/GroupPayment/DoPayment#key#{"a": 1}'
        )

    def test_register(self):
        assert register_canonical_string("/GroupPayment/GroupPaymentRegister", "key", "0101", 3, 3000) == (
            "POST#/GroupPayment/GroupPaymentRegister#key#0101#3#3000"
        )


class TestSign:
    def test_signature_verifies_with_public_key(self, rsa_key, private_key_pem):
        signature = sign("POST#/path#key#{}", private_key_pem)
        _verify(rsa_key, "POST#/path#key#{}", signature)

    def test_key_without_header_lines(self, rsa_key, private_key_pem):
        bare = "".join(line for line in private_key_pem.splitlines() if not line.startswith("-----"))
        signature = sign("payload", bare)
        _verify(rsa_key, "payload", signature)

    def test_key_with_windows_line_breaks(self, rsa_key, private_key_pem):
        signature = sign("payload", private_key_pem.replace("\n", "\r\n"))
        _verify(rsa_key, "payload", signature)

    def test_tampered_data_fails_verification(self, rsa_key, private_key_pem):
        signature = sign("payload", private_key_pem)
        with pytest.raises(ValueError):
            _verify(rsa_key, "payload2", signature)

    @pytest.mark.parametrize("pem", ["", "   ", "not-base64!!", base64.b64encode(b"garbage").decode()])
    def test_invalid_key(self, pem):
        with pytest.raises(ConfigurationError):
            load_private_key(pem)


class TestGatewayCredentials:
    def test_keys_match_case_and_underscore_insensitively(self):
        creds = GatewayCredentials.from_json(json.dumps({
            "ClientId": "c1",
            "client_secret": "s1",
            "APIKEY": "k1",
            "customerNumber": 12345,
            "Branch_Code": "101",
            "organizationcode": "ORG",
            "Unrelated": "ignored",
        }))
        assert creds.client_id == "c1"
        assert creds.client_secret == "s1"
        assert creds.api_key == "k1"
        assert creds.customer_number == "12345"
        assert creds.branch_code == "101"
        assert creds.organization_code == "ORG"

    @pytest.mark.parametrize("blob", [None, "", "{broken", "[1, 2]"])
    def test_unusable_metadata(self, blob):
        with pytest.raises(ConfigurationError):
            GatewayCredentials.from_json(blob)

    def test_missing_client_secret(self):
        creds = GatewayCredentials(client_id="c1")
        with pytest.raises(ConfigurationError):
            creds.require_client_credentials()


class TestTokenExchange:
    def _client(self, handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    def test_token_form(self):
        form = build_token_form(GatewayCredentials(client_id="c1", client_secret="s1", branch_code="101"))
        assert form["grant_type"] == "client_credentials"
        assert json.loads(form["client_claims"]) == {"branch_code": "101"}

    @pytest.mark.asyncio
    async def test_fetches_token(self, gateway_info):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"access_token": "tok-1", "token_type": "bearer", "expires_in": 3600})

        async with self._client(handler) as client:
            token = await fetch_access_token(client, TOKEN_URL, gateway_info.credentials())

        assert token.access_token == "tok-1"
        assert seen[0]["client_id"] == ["client-1"]
        assert seen[0]["client_secret"] == ["secret-1"]
        assert json.loads(seen[0]["client_claims"][0]) == {"branch_code": "101"}

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, gateway_info):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": "invalid_client", "error_description": "Bad secret"})

        async with self._client(handler) as client:
            with pytest.raises(AuthError) as exc_info:
                await fetch_access_token(client, TOKEN_URL, gateway_info.credentials())

        assert exc_info.value.status_code == 401
        assert "Bad secret" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_token_in_body(self, gateway_info):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"token_type": "bearer"})

        async with self._client(handler) as client:
            with pytest.raises(AuthError):
                await fetch_access_token(client, TOKEN_URL, gateway_info.credentials())

    @pytest.mark.asyncio
    async def test_network_failure(self, gateway_info):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with self._client(handler) as client:
            with pytest.raises(AuthError) as exc_info:
                await fetch_access_token(client, TOKEN_URL, gateway_info.credentials())

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_cache_reuses_token(self, gateway_info):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"access_token": f"tok-{len(calls)}", "expires_in": 3600})

        cache = TokenCache()
        async with self._client(handler) as client:
            first = await fetch_access_token(client, TOKEN_URL, gateway_info.credentials(), cache=cache)
            second = await fetch_access_token(client, TOKEN_URL, gateway_info.credentials(), cache=cache)

        assert first.access_token == second.access_token == "tok-1"
        assert len(calls) == 1

    def test_token_expiry_margin(self):
        now = datetime(2024, 3, 20, tzinfo=timezone.utc)
        token = AccessToken(access_token="t", expires_in=60, obtained_at=now)
        assert token.is_valid(now + timedelta(seconds=29))
        assert not token.is_valid(now + timedelta(seconds=31))
