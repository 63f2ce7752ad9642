"""
代理出口解析

根据代理ID（或系统默认代理）确定出站方式：直连、SOCKS5、HTTP代理。
HTTP请求通过httpx的proxy参数走代理，IMAP连接通过PySocks建立套接字。
"""

import logging
import socket
import threading
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
import socks

from .config import PROXY_PROBE_TIMEOUT_SECONDS, PROXY_PROBE_URL
from .database import ConnectionFactory
from .models import ProxyDescriptor, ProxyProbeResult

logger = logging.getLogger(__name__)

EGRESS_DIRECT = "direct"
EGRESS_SOCKS5 = "socks5"
EGRESS_HTTP = "http"

PYSOCKS_PROXY_TYPES = {
    EGRESS_SOCKS5: socks.SOCKS5,
    EGRESS_HTTP: socks.HTTP,
}


# ============================================================================
# 代理存储
# ============================================================================

def row_to_proxy(row: Dict[str, Any]) -> ProxyDescriptor:
    return ProxyDescriptor(
        id=row["id"],
        name=row.get("name") or "",
        type=row["type"],
        host=row["host"],
        port=int(row["port"]),
        username=row.get("username") or "",
        password=row.get("password") or "",
        is_default=bool(row.get("is_default")),
    )


class ProxyStore:
    """代理存储接口"""

    def get(self, proxy_id: int) -> Optional[ProxyDescriptor]:
        raise NotImplementedError

    def get_default(self) -> Optional[ProxyDescriptor]:
        raise NotImplementedError


class PostgresProxyStore(ProxyStore):

    def __init__(self, connect: ConnectionFactory):
        self._connect = connect

    def get(self, proxy_id: int) -> Optional[ProxyDescriptor]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM proxies WHERE id = ? LIMIT 1", (proxy_id,)).fetchone()
        return row_to_proxy(row) if row else None

    def get_default(self) -> Optional[ProxyDescriptor]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM proxies WHERE is_default = 1 ORDER BY id LIMIT 1").fetchone()
        return row_to_proxy(row) if row else None


class InMemoryProxyStore(ProxyStore):

    def __init__(self, proxies: Optional[List[ProxyDescriptor]] = None):
        self._proxies: Dict[int, ProxyDescriptor] = {proxy.id: proxy for proxy in proxies or []}
        self._lock = threading.Lock()

    def add(self, proxy: ProxyDescriptor) -> None:
        with self._lock:
            self._proxies[proxy.id] = proxy

    def get(self, proxy_id: int) -> Optional[ProxyDescriptor]:
        with self._lock:
            return self._proxies.get(proxy_id)

    def get_default(self) -> Optional[ProxyDescriptor]:
        with self._lock:
            defaults = [proxy for proxy in self._proxies.values() if proxy.is_default]
        return min(defaults, key=lambda proxy: proxy.id) if defaults else None


# ============================================================================
# 出站方式
# ============================================================================

class Egress:
    """
    一次调用链使用的出站方式

    mode为 direct / socks5 / http 之一，proxy仅在非直连时存在
    """

    def __init__(self, mode: str = EGRESS_DIRECT, proxy: Optional[ProxyDescriptor] = None):
        if mode != EGRESS_DIRECT and proxy is None:
            raise ValueError(f"Egress mode {mode} requires a proxy")
        self.mode = mode
        self.proxy = proxy

    @property
    def is_direct(self) -> bool:
        return self.mode == EGRESS_DIRECT

    def _build_url(self, include_credentials: bool) -> Optional[str]:
        if self.is_direct:
            return None
        url = f"{self.mode}://"
        if self.proxy.has_credentials:
            if include_credentials:
                url += f"{quote(self.proxy.username, safe='')}:{quote(self.proxy.password, safe='')}@"
            else:
                url += "***:***@"
        return url + f"{self.proxy.host}:{self.proxy.port}"

    @property
    def proxy_url(self) -> Optional[str]:
        """代理URL，用户名和密码经过URL编码"""
        return self._build_url(include_credentials=True)

    def http_client_kwargs(self) -> Dict[str, Any]:
        """构造httpx.AsyncClient时需要的代理参数"""
        if self.is_direct:
            return {}
        return {"proxy": self.proxy_url}

    def open_socket(self, host: str, port: int, timeout: float) -> socket.socket:
        """建立到目标主机的TCP连接（必要时经过代理）"""
        if self.is_direct:
            return socket.create_connection((host, port), timeout=timeout)
        # 与proxy_url一致：用户名和密码同时存在才认证
        use_credentials = self.proxy.has_credentials
        return socks.create_connection(
            (host, port),
            timeout=timeout,
            proxy_type=PYSOCKS_PROXY_TYPES[self.mode],
            proxy_addr=self.proxy.host,
            proxy_port=self.proxy.port,
            proxy_username=self.proxy.username if use_credentials else None,
            proxy_password=self.proxy.password if use_credentials else None,
        )

    def __repr__(self) -> str:
        if self.is_direct:
            return "Egress(direct)"
        return f"Egress({self._build_url(include_credentials=False)})"

    __str__ = __repr__


DIRECT = Egress()


class ProxyGateway:
    """根据代理ID或默认代理解析出站方式，解析本身不会失败"""

    def __init__(self, store: ProxyStore, transport_factory: Optional[Callable[[], httpx.AsyncBaseTransport]] = None):
        self._store = store
        self._transport_factory = transport_factory

    def _lookup(self, proxy_id: Optional[int]) -> Optional[ProxyDescriptor]:
        try:
            if proxy_id:
                proxy = self._store.get(proxy_id)
                if proxy is None:
                    logger.warning(f"Proxy {proxy_id} not found, using direct connection")
                return proxy
            return self._store.get_default()
        except Exception as e:
            logger.warning(f"Proxy lookup failed ({proxy_id or 'default'}), using direct connection: {e}")
            return None

    def resolve(self, proxy_id: Optional[int] = None) -> Egress:
        """
        解析出站方式

        Args:
            proxy_id: 代理ID，为空时使用默认代理

        Returns:
            Egress: 直连或代理出站
        """
        proxy = self._lookup(proxy_id)
        if proxy is None:
            return DIRECT
        egress = Egress(EGRESS_SOCKS5 if proxy.type == "socks5" else EGRESS_HTTP, proxy)
        logger.debug(f"Resolved egress {egress}")
        return egress

    def http_client(self, egress: Egress, timeout: float) -> httpx.AsyncClient:
        """按出站方式创建HTTP客户端"""
        kwargs = egress.http_client_kwargs()
        if self._transport_factory is not None:
            kwargs = {"transport": self._transport_factory()}
        return httpx.AsyncClient(timeout=timeout, **kwargs)

    async def probe(self, proxy: ProxyDescriptor) -> ProxyProbeResult:
        """通过代理请求探测地址，返回出口IP和延迟，不抛出异常"""
        egress = Egress(EGRESS_SOCKS5 if proxy.type == "socks5" else EGRESS_HTTP, proxy)
        started = time.monotonic()
        try:
            async with self.http_client(egress, PROXY_PROBE_TIMEOUT_SECONDS) as client:
                response = await client.get(PROXY_PROBE_URL)
                response.raise_for_status()
                origin = str(response.json().get("origin", ""))
        except (httpx.HTTPError, ValueError) as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"Proxy test failed: {proxy.host}:{proxy.port} - {e}")
            return ProxyProbeResult(ip="", latency_ms=latency_ms, status="failed")

        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Proxy test success: {proxy.host}:{proxy.port} -> {origin} ({latency_ms}ms)")
        return ProxyProbeResult(ip=origin, latency_ms=latency_ms, status="active")
