"""
OAuth2令牌管理

用refresh_token向微软令牌端点换取access_token，支持Graph和IMAP两种scope。
服务端可能同时下发新的refresh_token（轮换），由调用方负责立即持久化。
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from .config import (
    GRAPH_OAUTH_SCOPE,
    HTTP_TIMEOUT_SECONDS,
    IMAP_OAUTH_SCOPE,
    MAIL_READ_SCOPE_MARKER,
    TOKEN_URL,
)
from .errors import TokenExchangeError
from .models import TokenResult
from .proxies import Egress, ProxyGateway

logger = logging.getLogger(__name__)


class ScopeProfile(str, Enum):
    GRAPH_MAIL = "graph"
    IMAP = "imap"

    @property
    def scope(self) -> str:
        if self is ScopeProfile.GRAPH_MAIL:
            return GRAPH_OAUTH_SCOPE
        return IMAP_OAUTH_SCOPE


def safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def describe_token_error(response: httpx.Response) -> str:
    """从令牌端点错误响应中提取 error / error_description"""
    try:
        payload = response.json()
    except ValueError:
        return ""
    if not isinstance(payload, dict):
        return ""
    parts = [str(payload[key]) for key in ("error", "error_description") if payload.get(key)]
    return " ".join(parts)


class TokenBroker:
    """refresh_token → access_token 交换，不做任何持久化"""

    def __init__(self, gateway: ProxyGateway, token_url: str = TOKEN_URL, timeout: float = HTTP_TIMEOUT_SECONDS):
        self._gateway = gateway
        self._token_url = token_url
        self._timeout = timeout

    async def exchange(
        self,
        client_id: str,
        refresh_token: str,
        profile: ScopeProfile,
        egress: Optional[Egress] = None
    ) -> TokenResult:
        """
        交换access_token

        Args:
            client_id: OAuth应用ID
            refresh_token: 当前refresh_token
            profile: scope配置（graph / imap）
            egress: 出站方式，为空时使用默认代理

        Returns:
            TokenResult: 交换结果

        Raises:
            TokenExchangeError: 端点返回非2xx、网络错误或响应缺少access_token
        """
        egress = egress or self._gateway.resolve()
        token_request_data = {
            'client_id': client_id,
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
            'scope': profile.scope,
        }

        try:
            async with self._gateway.http_client(egress, self._timeout) as client:
                response = await client.post(self._token_url, data=token_request_data)
        except httpx.HTTPError as e:
            logger.error(f"Request error during {profile.value} token exchange via {egress}: {e}")
            raise TokenExchangeError(f"{profile.value} token request failed", body=str(e)) from e

        if not response.is_success:
            logger.error(
                "HTTP %s error during %s token exchange: %s",
                response.status_code,
                profile.value,
                describe_token_error(response) or response.text[:200]
            )
            raise TokenExchangeError(
                f"{profile.value} token refresh failed",
                status=response.status_code,
                body=response.text
            )

        try:
            token_data: Dict[str, Any] = response.json()
        except ValueError as e:
            raise TokenExchangeError(
                f"{profile.value} token response is not JSON",
                status=response.status_code,
                body=response.text
            ) from e

        access_token = token_data.get('access_token')
        if not access_token:
            raise TokenExchangeError(
                f"{profile.value} token response has no access_token",
                status=response.status_code
            )

        new_refresh_token = token_data.get('refresh_token') or None
        has_mail_scope = False
        if profile is ScopeProfile.GRAPH_MAIL:
            has_mail_scope = MAIL_READ_SCOPE_MARKER in str(token_data.get('scope') or "")

        logger.info(
            f"{profile.value} token refreshed, has_mail_scope: {has_mail_scope}, "
            f"has_new_rt: {bool(new_refresh_token)}, "
            f"rt_changed: {bool(new_refresh_token) and new_refresh_token != refresh_token}"
        )
        return TokenResult(
            access_token=str(access_token),
            refresh_token=str(new_refresh_token) if new_refresh_token else None,
            has_mail_scope=has_mail_scope,
            expires_in=safe_int(token_data.get('expires_in')) or 0,
        )
