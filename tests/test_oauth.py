"""Tests for refresh token exchange."""

from urllib.parse import parse_qsl

import httpx
import pytest

from outlook_manager.config import GRAPH_OAUTH_SCOPE, IMAP_OAUTH_SCOPE
from outlook_manager.errors import TokenExchangeError
from outlook_manager.oauth import ScopeProfile, TokenBroker
from outlook_manager.proxies import DIRECT, InMemoryProxyStore, ProxyGateway

TOKEN_URL = "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"


def make_broker(handler) -> TokenBroker:
    gateway = ProxyGateway(InMemoryProxyStore(), transport_factory=lambda: httpx.MockTransport(handler))
    return TokenBroker(gateway, token_url=TOKEN_URL)


class TestTokenBroker:
    """Test TokenBroker.exchange."""

    @pytest.mark.asyncio
    async def test_graph_exchange_detects_mail_scope_and_rotation(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(parse_qsl(request.read().decode()))
            return httpx.Response(200, json={
                "access_token": "at-graph",
                "refresh_token": "rt-rotated",
                "expires_in": "3600",
                "scope": "https://graph.microsoft.com/Mail.ReadWrite https://graph.microsoft.com/User.Read",
            })

        result = await make_broker(handler).exchange("client-1", "rt-old", ScopeProfile.GRAPH_MAIL, DIRECT)

        assert seen == {
            "client_id": "client-1",
            "grant_type": "refresh_token",
            "refresh_token": "rt-old",
            "scope": GRAPH_OAUTH_SCOPE,
        }
        assert result.access_token == "at-graph"
        assert result.refresh_token == "rt-rotated"
        assert result.has_mail_scope is True
        assert result.expires_in == 3600

    @pytest.mark.asyncio
    async def test_graph_exchange_without_mail_scope(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "at", "scope": "https://graph.microsoft.com/User.Read"})

        result = await make_broker(handler).exchange("client-1", "rt", ScopeProfile.GRAPH_MAIL, DIRECT)

        assert result.has_mail_scope is False
        assert result.refresh_token is None

    @pytest.mark.asyncio
    async def test_imap_exchange_uses_imap_scope(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(parse_qsl(request.read().decode()))
            return httpx.Response(200, json={"access_token": "at-imap", "scope": "Mail.Read"})

        result = await make_broker(handler).exchange("client-1", "rt", ScopeProfile.IMAP, DIRECT)

        assert seen["scope"] == IMAP_OAUTH_SCOPE
        assert result.access_token == "at-imap"
        # Mail.Read is only meaningful for Graph tokens
        assert result.has_mail_scope is False

    @pytest.mark.asyncio
    async def test_rejected_grant_carries_status_and_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "AADSTS70000"})

        with pytest.raises(TokenExchangeError) as exc_info:
            await make_broker(handler).exchange("client-1", "rt-expired", ScopeProfile.GRAPH_MAIL, DIRECT)

        assert exc_info.value.status == 400
        assert "invalid_grant" in exc_info.value.body
        assert "400" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_error_becomes_token_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        with pytest.raises(TokenExchangeError) as exc_info:
            await make_broker(handler).exchange("client-1", "rt", ScopeProfile.IMAP, DIRECT)

        assert exc_info.value.status is None
        assert "connection refused" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_missing_access_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"token_type": "Bearer"})

        with pytest.raises(TokenExchangeError):
            await make_broker(handler).exchange("client-1", "rt", ScopeProfile.IMAP, DIRECT)

    @pytest.mark.asyncio
    async def test_non_json_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>maintenance</html>")

        with pytest.raises(TokenExchangeError):
            await make_broker(handler).exchange("client-1", "rt", ScopeProfile.GRAPH_MAIL, DIRECT)
