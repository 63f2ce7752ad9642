"""
账户存储

取信流程只需要按ID读取账户、回写令牌状态、同步时间和账户状态
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional

from .database import ConnectionFactory
from .models import Account

logger = logging.getLogger(__name__)

ACCOUNT_COLUMNS = "id, email, password, client_id, refresh_token, status, last_synced_at, token_refreshed_at"


def row_to_account(row: Dict[str, Any]) -> Account:
    """数据库行转换为账户对象"""
    return Account(
        id=row["id"],
        email=row["email"],
        password=row.get("password") or "",
        client_id=row["client_id"],
        refresh_token=row["refresh_token"],
        status=row.get("status") or "active",
        last_synced_at=row.get("last_synced_at"),
        token_refreshed_at=row.get("token_refreshed_at"),
    )


class AccountStore:
    """账户存储接口"""

    def get(self, account_id: int) -> Optional[Account]:
        raise NotImplementedError

    def list_all(self) -> List[Account]:
        raise NotImplementedError

    def record_token_refresh(self, account_id: int, refresh_token: Optional[str] = None) -> None:
        """
        记录一次成功的令牌交换

        Args:
            account_id: 账户ID
            refresh_token: 服务端下发的新refresh_token，为空时保留原值
        """
        raise NotImplementedError

    def mark_synced(self, account_id: int) -> None:
        raise NotImplementedError

    def mark_error(self, account_id: int) -> None:
        raise NotImplementedError


class PostgresAccountStore(AccountStore):
    """基于PostgreSQL的账户存储"""

    def __init__(self, connect: ConnectionFactory):
        self._connect = connect

    def get(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = ? LIMIT 1",
                (account_id,)
            ).fetchone()
        return row_to_account(row) if row else None

    def list_all(self) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT {ACCOUNT_COLUMNS} FROM accounts ORDER BY id DESC").fetchall()
        return [row_to_account(row) for row in rows]

    def record_token_refresh(self, account_id: int, refresh_token: Optional[str] = None) -> None:
        assignments = ["token_refreshed_at = ?", "status = 'active'", "updated_at = CURRENT_TIMESTAMP"]
        params: List[Any] = [int(time.time())]
        if refresh_token:
            assignments.insert(0, "refresh_token = ?")
            params.insert(0, refresh_token)

        with self._connect() as conn:
            conn.execute(f"UPDATE accounts SET {', '.join(assignments)} WHERE id = ?", params + [account_id])
            conn.commit()

    def mark_synced(self, account_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE accounts SET last_synced_at = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (int(time.time()), account_id)
            )
            conn.commit()

    def mark_error(self, account_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE accounts SET status = 'error', updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (account_id,)
            )
            conn.commit()


class InMemoryAccountStore(AccountStore):
    """进程内账户存储，DATABASE_URL为空时使用"""

    def __init__(self, accounts: Optional[List[Account]] = None):
        self._accounts: Dict[int, Account] = {}
        self._lock = threading.Lock()
        for account in accounts or []:
            self.add(account)

    def add(self, account: Account) -> None:
        with self._lock:
            self._accounts[account.id] = account.model_copy()

    def get(self, account_id: int) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(account_id)
            return account.model_copy() if account else None

    def list_all(self) -> List[Account]:
        with self._lock:
            return [self._accounts[key].model_copy() for key in sorted(self._accounts, reverse=True)]

    def _update(self, account_id: int, **changes: Any) -> None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                logger.warning(f"Attempted to update unknown account {account_id}")
                return
            self._accounts[account_id] = account.model_copy(update=changes)

    def record_token_refresh(self, account_id: int, refresh_token: Optional[str] = None) -> None:
        changes: Dict[str, Any] = {"token_refreshed_at": int(time.time()), "status": "active"}
        if refresh_token:
            changes["refresh_token"] = refresh_token
        self._update(account_id, **changes)

    def mark_synced(self, account_id: int) -> None:
        self._update(account_id, last_synced_at=int(time.time()))

    def mark_error(self, account_id: int) -> None:
        self._update(account_id, status="error")
