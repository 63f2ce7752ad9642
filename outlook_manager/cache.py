"""
邮件缓存

按 账户+文件夹 持久化已获取的邮件摘要，用于读取缓存和两种协议都失败时的降级返回。
存储层之前可选一层Redis分页缓存，写入或清空时按 账户+文件夹 失效。
"""

import itertools
import logging
import threading
from typing import Dict, List, Optional, Tuple

import redis

from .config import CACHE_EXPIRE_TIME, REDIS_KEY_PREFIX
from .database import ConnectionFactory
from .models import CachedMail, Folder, MailPage, MailSummary

logger = logging.getLogger(__name__)

CACHE_COLUMNS = (
    "account_id, mailbox, mail_id, sender, sender_name, subject, text_content, html_content, mail_date"
)


SUMMARY_FIELDS = set(MailSummary.model_fields)


def row_to_cached_mail(row: Dict) -> CachedMail:
    return CachedMail(
        account_id=row["account_id"],
        mailbox=Folder(row["mailbox"]),
        mail_id=row.get("mail_id") or "",
        sender=row.get("sender") or "",
        sender_name=row.get("sender_name") or "",
        subject=row.get("subject") or "",
        text_content=row.get("text_content") or "",
        html_content=row.get("html_content") or "",
        mail_date=row.get("mail_date") or "",
    )


def normalize_paging(page: int, page_size: int) -> Tuple[int, int]:
    return max(1, int(page)), max(1, int(page_size))


# ============================================================================
# 缓存存储
# ============================================================================

class MailCacheStore:
    """缓存存储接口，同一 账户+文件夹 的写入必须整体生效"""

    def upsert(self, account_id: int, folder: Folder, summaries: List[MailSummary]) -> int:
        raise NotImplementedError

    def get_page(self, account_id: int, folder: Folder, page: int, page_size: int) -> MailPage:
        raise NotImplementedError

    def clear(self, account_id: int, folder: Folder) -> int:
        raise NotImplementedError

    def count_for_account(self, account_id: int, folder: Optional[Folder] = None) -> int:
        raise NotImplementedError

    def count_global(self, folder: Optional[Folder] = None) -> int:
        raise NotImplementedError

    def recent(self, limit: int) -> List[CachedMail]:
        raise NotImplementedError


class PostgresMailCacheStore(MailCacheStore):
    """基于PostgreSQL的缓存存储"""

    UPSERT_SQL = f"""
        INSERT INTO mail_cache ({CACHE_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (account_id, mailbox, mail_id) WHERE mail_id <> '' DO UPDATE SET
            sender = EXCLUDED.sender,
            sender_name = EXCLUDED.sender_name,
            subject = EXCLUDED.subject,
            text_content = EXCLUDED.text_content,
            html_content = EXCLUDED.html_content,
            mail_date = EXCLUDED.mail_date,
            cached_at = CURRENT_TIMESTAMP
    """

    def __init__(self, connect: ConnectionFactory):
        self._connect = connect

    def upsert(self, account_id: int, folder: Folder, summaries: List[MailSummary]) -> int:
        if not summaries:
            return 0
        rows = [
            (
                account_id, folder.value, summary.mail_id, summary.sender, summary.sender_name,
                summary.subject, summary.text_content, summary.html_content, summary.mail_date
            )
            for summary in summaries
        ]
        # 单事务提交，失败时整体回滚
        with self._connect() as conn:
            conn.executemany(self.UPSERT_SQL, rows)
            conn.commit()
        return len(rows)

    def get_page(self, account_id: int, folder: Folder, page: int, page_size: int) -> MailPage:
        page, page_size = normalize_paging(page, page_size)
        with self._connect() as conn:
            total = conn.execute(
                "SELECT COUNT(*) AS c FROM mail_cache WHERE account_id = ? AND mailbox = ?",
                (account_id, folder.value)
            ).fetchone()["c"]
            rows = conn.execute(
                f"""
                SELECT {CACHE_COLUMNS} FROM mail_cache
                WHERE account_id = ? AND mailbox = ?
                ORDER BY mail_date DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (account_id, folder.value, page_size, (page - 1) * page_size)
            ).fetchall()
        return MailPage(items=[row_to_cached_mail(row) for row in rows], total=total, page=page, page_size=page_size)

    def clear(self, account_id: int, folder: Folder) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM mail_cache WHERE account_id = ? AND mailbox = ?",
                (account_id, folder.value)
            )
            conn.commit()
            return cursor.rowcount

    def count_for_account(self, account_id: int, folder: Optional[Folder] = None) -> int:
        sql = "SELECT COUNT(*) AS c FROM mail_cache WHERE account_id = ?"
        params: list = [account_id]
        if folder is not None:
            sql += " AND mailbox = ?"
            params.append(folder.value)
        with self._connect() as conn:
            return conn.execute(sql, params).fetchone()["c"]

    def count_global(self, folder: Optional[Folder] = None) -> int:
        with self._connect() as conn:
            if folder is None:
                return conn.execute("SELECT COUNT(*) AS c FROM mail_cache").fetchone()["c"]
            return conn.execute(
                "SELECT COUNT(*) AS c FROM mail_cache WHERE mailbox = ?", (folder.value,)
            ).fetchone()["c"]

    def recent(self, limit: int) -> List[CachedMail]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {CACHE_COLUMNS} FROM mail_cache ORDER BY mail_date DESC, id DESC LIMIT ?",
                (max(1, limit),)
            ).fetchall()
        return [row_to_cached_mail(row) for row in rows]


class InMemoryMailCacheStore(MailCacheStore):
    """进程内缓存存储，DATABASE_URL为空时使用"""

    def __init__(self):
        self._records: Dict[Tuple[int, Folder], List[Tuple[int, CachedMail]]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def upsert(self, account_id: int, folder: Folder, summaries: List[MailSummary]) -> int:
        key = (account_id, folder)
        with self._lock:
            # 在副本上修改，完成后整体替换
            records = list(self._records.get(key, []))
            positions = {record.mail_id: index for index, (_, record) in enumerate(records) if record.mail_id}
            for summary in summaries:
                record = CachedMail(account_id=account_id, mailbox=folder, **summary.model_dump(include=SUMMARY_FIELDS))
                if record.mail_id and record.mail_id in positions:
                    index = positions[record.mail_id]
                    records[index] = (records[index][0], record)
                    continue
                records.append((next(self._sequence), record))
                if record.mail_id:
                    positions[record.mail_id] = len(records) - 1
            self._records[key] = records
        return len(summaries)

    @staticmethod
    def _ordered(records: List[Tuple[int, CachedMail]]) -> List[CachedMail]:
        return [record for _, record in sorted(records, key=lambda item: (item[1].mail_date, item[0]), reverse=True)]

    def get_page(self, account_id: int, folder: Folder, page: int, page_size: int) -> MailPage:
        page, page_size = normalize_paging(page, page_size)
        with self._lock:
            records = list(self._records.get((account_id, folder), []))
        ordered = self._ordered(records)
        start = (page - 1) * page_size
        return MailPage(items=ordered[start:start + page_size], total=len(ordered), page=page, page_size=page_size)

    def clear(self, account_id: int, folder: Folder) -> int:
        with self._lock:
            return len(self._records.pop((account_id, folder), []))

    def count_for_account(self, account_id: int, folder: Optional[Folder] = None) -> int:
        with self._lock:
            return sum(
                len(records) for (owner, mailbox), records in self._records.items()
                if owner == account_id and (folder is None or mailbox == folder)
            )

    def count_global(self, folder: Optional[Folder] = None) -> int:
        with self._lock:
            return sum(
                len(records) for (_, mailbox), records in self._records.items()
                if folder is None or mailbox == folder
            )

    def recent(self, limit: int) -> List[CachedMail]:
        with self._lock:
            records = [record for bucket in self._records.values() for record in bucket]
        return self._ordered(records)[:max(1, limit)]


# ============================================================================
# 缓存门面（Redis分页缓存 + 存储）
# ============================================================================

class MailCache:
    """
    邮件缓存

    读取分页时优先命中Redis，写入/清空后使对应 账户+文件夹 的分页缓存失效。
    Redis不可用时直接读写存储。
    """

    def __init__(
        self,
        store: MailCacheStore,
        redis_client: Optional[redis.Redis] = None,
        key_prefix: str = REDIS_KEY_PREFIX,
        expire_seconds: int = CACHE_EXPIRE_TIME
    ):
        self.store = store
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._expire_seconds = expire_seconds

    def _page_key(self, account_id: int, folder: Folder, page: int, page_size: int) -> str:
        return f"{self._key_prefix}:mail-cache:{account_id}:{folder.value}:{page}:{page_size}"

    def _invalidate(self, account_id: int, folder: Folder) -> None:
        if not self._redis:
            return
        pattern = f"{self._key_prefix}:mail-cache:{account_id}:{folder.value}:*"
        try:
            matched_keys = list(self._redis.scan_iter(match=pattern))
            if matched_keys:
                self._redis.delete(*matched_keys)
        except redis.RedisError as e:
            logger.warning(f"Failed to invalidate Redis page cache for account {account_id}/{folder.value}: {e}")

    def upsert(self, account_id: int, folder: Folder, summaries: List[MailSummary]) -> int:
        written = self.store.upsert(account_id, folder, summaries)
        self._invalidate(account_id, folder)
        logger.debug(f"Cached {written} mails for account {account_id}/{folder.value}")
        return written

    def get_page(self, account_id: int, folder: Folder, page: int = 1, page_size: int = 50) -> MailPage:
        page, page_size = normalize_paging(page, page_size)
        redis_key = self._page_key(account_id, folder, page, page_size)

        if self._redis:
            try:
                cached_raw = self._redis.get(redis_key)
                if cached_raw:
                    return MailPage.model_validate_json(cached_raw)
            except (redis.RedisError, ValueError) as e:
                logger.warning(f"Redis cache read failed for {redis_key}: {e}")

        result = self.store.get_page(account_id, folder, page, page_size)

        if self._redis:
            try:
                self._redis.setex(redis_key, self._expire_seconds, result.model_dump_json())
            except redis.RedisError as e:
                logger.warning(f"Redis cache write failed for {redis_key}: {e}")
        return result

    def clear(self, account_id: int, folder: Folder) -> int:
        removed = self.store.clear(account_id, folder)
        self._invalidate(account_id, folder)
        logger.info(f"Cleared {removed} cached mails for account {account_id}/{folder.value}")
        return removed

    def count_for_account(self, account_id: int, folder: Optional[Folder] = None) -> int:
        return self.store.count_for_account(account_id, folder)

    def count_global(self, folder: Optional[Folder] = None) -> int:
        return self.store.count_global(folder)

    def recent(self, limit: int = 5) -> List[CachedMail]:
        return self.store.recent(limit)
