"""
进程级组件装配

进程启动时创建一次全部协作者，之后显式传递，不使用模块级全局实例
"""

import logging
from typing import Optional

import redis

from .accounts import AccountStore, InMemoryAccountStore, PostgresAccountStore
from .cache import InMemoryMailCacheStore, MailCache, PostgresMailCacheStore
from .config import DATABASE_URL, REDIS_SOCKET_TIMEOUT_SECONDS, REDIS_URL
from .database import ConnectionFactory, init_schema
from .graph import GraphProtocolClient
from .imap import ImapProtocolClient
from .oauth import TokenBroker
from .proxies import InMemoryProxyStore, PostgresProxyStore, ProxyGateway, ProxyStore
from .service import MailRetrievalCoordinator

logger = logging.getLogger(__name__)


def init_redis_client(redis_url: str = REDIS_URL) -> Optional[redis.Redis]:
    """连接Redis，不可用时返回None（分页缓存关闭）"""
    if not redis_url:
        logger.warning("REDIS_URL is empty. Redis page cache is disabled.")
        return None

    try:
        client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        )
        client.ping()
        logger.info("Redis cache connected.")
        return client
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable, page cache disabled: {e}")
        return None


class Services:
    """进程内共享的组件集合"""

    def __init__(
        self,
        accounts: AccountStore,
        proxies: ProxyStore,
        cache: MailCache,
        gateway: ProxyGateway,
        coordinator: MailRetrievalCoordinator,
        redis_client: Optional[redis.Redis] = None
    ):
        self.accounts = accounts
        self.proxies = proxies
        self.cache = cache
        self.gateway = gateway
        self.coordinator = coordinator
        self.redis_client = redis_client

    def close(self) -> None:
        if self.redis_client:
            try:
                self.redis_client.close()
            except redis.RedisError as e:
                logger.debug(f"Error closing Redis client: {e}")


def build_services(
    accounts: AccountStore,
    proxies: ProxyStore,
    cache: MailCache,
    gateway: Optional[ProxyGateway] = None,
    imap: Optional[ImapProtocolClient] = None,
    redis_client: Optional[redis.Redis] = None
) -> Services:
    """用给定的存储装配协调器及协议客户端"""
    gateway = gateway or ProxyGateway(proxies)
    coordinator = MailRetrievalCoordinator(
        accounts=accounts,
        cache=cache,
        broker=TokenBroker(gateway),
        graph=GraphProtocolClient(gateway),
        imap=imap or ImapProtocolClient(),
        gateway=gateway,
    )
    return Services(accounts, proxies, cache, gateway, coordinator, redis_client)


def create_services(database_url: str = DATABASE_URL, redis_url: str = REDIS_URL) -> Services:
    """按配置创建组件：DATABASE_URL为空时使用内存存储"""
    redis_client = init_redis_client(redis_url)

    if not database_url:
        logger.warning("DATABASE_URL is empty. Using in-memory storage, data will not survive restarts.")
        return build_services(
            InMemoryAccountStore(),
            InMemoryProxyStore(),
            MailCache(InMemoryMailCacheStore(), redis_client),
            redis_client=redis_client,
        )

    connect = ConnectionFactory(database_url)
    init_schema(connect)
    logger.info("PostgreSQL schema initialization completed")
    return build_services(
        PostgresAccountStore(connect),
        PostgresProxyStore(connect),
        MailCache(PostgresMailCacheStore(connect), redis_client),
        redis_client=redis_client,
    )
