"""
邮件获取协调器

每次取信/删信都是一条线性的决策链：
Graph（需要Mail.Read scope）→ IMAP → 本地缓存（仅取信）→ 失败。
每次令牌交换后立即持久化轮换的refresh_token，之后才调用邮件接口。
"""

import asyncio
import logging
import weakref
from typing import Any, Awaitable, Callable, List, Optional

from .accounts import AccountStore
from .cache import SUMMARY_FIELDS, MailCache
from .config import DEFAULT_FETCH_LIMIT, MAX_FETCH_LIMIT
from .errors import AggregateFailure, MailServiceError, NotFound, ProtocolError
from .graph import GraphProtocolClient
from .imap import ImapProtocolClient, build_xoauth2
from .models import Account, DeletionReport, FetchResult, Folder, MailSummary, TokenResult
from .oauth import ScopeProfile, TokenBroker
from .proxies import Egress, ProxyGateway

logger = logging.getLogger(__name__)

GraphAction = Callable[[str], Awaitable[Any]]
ImapAction = Callable[[str, str], Awaitable[Any]]


class StageResult:
    """单个阶段的结果：成功 / 可回退 / 致命"""

    OK = "ok"
    RETRYABLE = "retryable"
    FATAL = "fatal"

    __slots__ = ("kind", "value", "error", "protocol")

    def __init__(self, kind: str, value: Any = None, error: Optional[Exception] = None, protocol: Optional[str] = None):
        self.kind = kind
        self.value = value
        self.error = error
        self.protocol = protocol

    @classmethod
    def ok(cls, value: Any, protocol: str) -> "StageResult":
        return cls(cls.OK, value=value, protocol=protocol)

    @classmethod
    def retryable(cls, error: Exception) -> "StageResult":
        return cls(cls.RETRYABLE, error=error)

    @classmethod
    def fatal(cls, error: Exception) -> "StageResult":
        return cls(cls.FATAL, error=error)

    @property
    def is_ok(self) -> bool:
        return self.kind == self.OK

    @property
    def is_fatal(self) -> bool:
        return self.kind == self.FATAL

    def __repr__(self) -> str:
        return f"StageResult({self.kind}, protocol={self.protocol}, error={self.error!r})"


class AccountLocks:
    """
    按账户串行化取信/删信，避免并发调用互相覆盖轮换后的refresh_token

    只保存弱引用：没有调用方持有或等待时，锁自动移除
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, account_id: int) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class MailRetrievalCoordinator:
    """
    邮件获取协调器

    所有协作者通过构造函数注入，进程启动时创建一次
    """

    def __init__(
        self,
        accounts: AccountStore,
        cache: MailCache,
        broker: TokenBroker,
        graph: GraphProtocolClient,
        imap: ImapProtocolClient,
        gateway: ProxyGateway
    ):
        self._accounts = accounts
        self._cache = cache
        self._broker = broker
        self._graph = graph
        self._imap = imap
        self._gateway = gateway
        self._locks = AccountLocks()

    # ------------------------------------------------------------------
    # 账户与令牌
    # ------------------------------------------------------------------

    def _load_account(self, account_id: int) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFound(account_id)
        return account

    def _persist_token_refresh(self, account: Account, token: TokenResult) -> None:
        try:
            self._accounts.record_token_refresh(account.id, token.refresh_token)
        except Exception as e:
            # 新token可能已使旧token失效，必须留下记录
            logger.error(
                f"Failed to persist token refresh for {account.email} "
                f"(rotated={bool(token.refresh_token)}): {e}"
            )

    async def _exchange(self, account: Account, profile: ScopeProfile, egress: Egress) -> TokenResult:
        token = await self._broker.exchange(account.client_id, account.refresh_token, profile, egress)
        self._persist_token_refresh(account, token)
        return token

    # ------------------------------------------------------------------
    # 阶段
    # ------------------------------------------------------------------

    async def _graph_stage(self, account: Account, egress: Egress, action: GraphAction) -> StageResult:
        try:
            token = await self._exchange(account, ScopeProfile.GRAPH_MAIL, egress)
            if not token.has_mail_scope:
                logger.warning(f"Graph API no Mail.Read scope for {account.email}, falling back to IMAP")
                return StageResult.retryable(ProtocolError("Graph token was granted without Mail.Read scope"))
            return StageResult.ok(await action(token.access_token), "graph")
        except MailServiceError as e:
            logger.warning(f"Graph API failed for {account.email}: {e}, falling back to IMAP")
            return StageResult.retryable(e)
        except Exception as e:
            logger.exception(f"Unexpected Graph error for {account.email}, falling back to IMAP")
            return StageResult.retryable(e)

    async def _imap_stage(self, account_id: int, egress: Egress, action: ImapAction) -> StageResult:
        # Graph阶段可能已轮换refresh_token，重新读取账户
        try:
            account = self._load_account(account_id)
        except NotFound as e:
            return StageResult.fatal(e)

        try:
            token = await self._exchange(account, ScopeProfile.IMAP, egress)
            auth_string = build_xoauth2(account.email, token.access_token)
            return StageResult.ok(await action(account.email, auth_string), "imap")
        except MailServiceError as e:
            logger.error(f"IMAP also failed for {account.email}: {e}")
            return StageResult.retryable(e)
        except Exception as e:
            logger.exception(f"Unexpected IMAP error for {account.email}")
            return StageResult.retryable(e)

    async def _run_stages(
        self,
        account_id: int,
        egress: Egress,
        graph_action: GraphAction,
        imap_action: ImapAction
    ) -> StageResult:
        """Graph优先，失败后回退IMAP，从不并行"""
        account = self._load_account(account_id)
        outcome = await self._graph_stage(account, egress, graph_action)
        if outcome.is_ok:
            return outcome
        outcome = await self._imap_stage(account_id, egress, imap_action)
        if outcome.is_fatal:
            raise outcome.error
        return outcome

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------

    def _record_success(self, account_id: int, folder: Folder, summaries: List[MailSummary]) -> None:
        try:
            self._cache.upsert(account_id, folder, summaries)
        except Exception as e:
            logger.error(f"Failed to cache {len(summaries)} mails for account {account_id}/{folder.value}: {e}")
        try:
            self._accounts.mark_synced(account_id)
        except Exception as e:
            logger.error(f"Failed to stamp sync time for account {account_id}: {e}")

    def _degraded_result(self, account_id: int, folder: Folder, limit: int, error: Exception) -> FetchResult:
        try:
            self._accounts.mark_error(account_id)
        except Exception as e:
            logger.error(f"Failed to mark account {account_id} as error: {e}")

        try:
            cached = self._cache.get_page(account_id, folder, 1, limit)
        except Exception as e:
            logger.error(f"Failed to read cached mails for account {account_id}/{folder.value}: {e}")
            raise AggregateFailure(error) from e
        if not cached.items:
            raise AggregateFailure(error)

        logger.warning(f"Serving {len(cached.items)} cached mails for account {account_id}/{folder.value}")
        messages = [MailSummary(**item.model_dump(include=SUMMARY_FIELDS)) for item in cached.items]
        # 缓存不记录原始协议，protocol仅作提示
        return FetchResult(messages=messages, total=cached.total, protocol="graph", cached=True)

    async def fetch(
        self,
        account_id: int,
        folder: Folder = Folder.INBOX,
        proxy_id: Optional[int] = None,
        limit: int = DEFAULT_FETCH_LIMIT
    ) -> FetchResult:
        """
        获取最新邮件

        Args:
            account_id: 账户ID
            folder: INBOX 或 Junk
            proxy_id: 代理ID，为空时使用默认代理
            limit: 最多返回的邮件数

        Returns:
            FetchResult: 实时结果或缓存降级结果（cached=True）

        Raises:
            NotFound: 账户不存在
            AggregateFailure: 两种协议都失败且缓存为空
        """
        limit = max(1, min(int(limit), MAX_FETCH_LIMIT))
        async with self._locks.get(account_id):
            egress = self._gateway.resolve(proxy_id)
            outcome = await self._run_stages(
                account_id,
                egress,
                lambda access_token: self._graph.list(access_token, folder, limit, egress),
                lambda email_address, auth_string: self._imap.list(email_address, auth_string, folder, limit, egress),
            )

            if not outcome.is_ok:
                return self._degraded_result(account_id, folder, limit, outcome.error)

            summaries: List[MailSummary] = outcome.value
            self._record_success(account_id, folder, summaries)
            return FetchResult(messages=summaries, total=len(summaries), protocol=outcome.protocol, cached=False)

    async def fetch_latest(
        self,
        account_id: int,
        folder: Folder = Folder.INBOX,
        proxy_id: Optional[int] = None
    ) -> Optional[MailSummary]:
        """获取最新一封邮件，没有邮件时返回None"""
        result = await self.fetch(account_id, folder, proxy_id, limit=1)
        return result.messages[0] if result.messages else None

    async def delete_all(
        self,
        account_id: int,
        folder: Folder = Folder.INBOX,
        proxy_id: Optional[int] = None
    ) -> DeletionReport:
        """
        删除文件夹内全部邮件

        不读取也不清理缓存，调用方需要在返回后自行清空对应缓存

        Raises:
            NotFound: 账户不存在
            AggregateFailure: 两种协议都失败
        """
        async with self._locks.get(account_id):
            egress = self._gateway.resolve(proxy_id)
            outcome = await self._run_stages(
                account_id,
                egress,
                lambda access_token: self._graph.delete_all(access_token, folder, egress),
                lambda email_address, auth_string: self._imap.clear(email_address, auth_string, folder, egress),
            )
            if not outcome.is_ok:
                raise AggregateFailure(outcome.error)
            return outcome.value
