"""
数据模型 (Pydantic Models)

账户、代理、邮件摘要以及取信/删信结果
"""

import time
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .config import TOKEN_STALE_AFTER_SECONDS


class Folder(str, Enum):
    """支持的文件夹（封闭枚举）"""
    INBOX = "INBOX"
    JUNK = "Junk"

    @property
    def graph_name(self) -> str:
        """Graph API中的文件夹名"""
        return "junkemail" if self is Folder.JUNK else "inbox"

    @property
    def imap_name(self) -> str:
        return self.value


AccountStatus = Literal["active", "inactive", "error"]
Protocol = Literal["graph", "imap"]


class Account(BaseModel):
    """邮箱账户"""
    id: int
    email: str
    password: str = Field(default="", repr=False)
    client_id: str
    refresh_token: str = Field(repr=False)
    status: AccountStatus = "active"
    last_synced_at: Optional[int] = None
    token_refreshed_at: Optional[int] = None

    def is_token_stale(self, now: Optional[int] = None, max_age: int = TOKEN_STALE_AFTER_SECONDS) -> bool:
        """最近一次成功换取令牌的时间是否已超过max_age秒"""
        if not self.token_refreshed_at:
            return True
        current_ts = int(time.time()) if now is None else int(now)
        return current_ts - self.token_refreshed_at > max_age


class ProxyDescriptor(BaseModel):
    """出站代理描述（只读）"""
    id: int
    name: str = ""
    type: Literal["socks5", "http"]
    host: str
    port: int
    username: str = ""
    password: str = Field(default="", repr=False)
    is_default: bool = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class TokenResult(BaseModel):
    """令牌交换结果，仅在一次调用链内使用，不缓存"""
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    has_mail_scope: bool = False
    expires_in: int = 0


class MailSummary(BaseModel):
    """邮件摘要"""
    mail_id: str = ""
    sender: str = ""
    sender_name: str = ""
    subject: str = ""
    text_content: str = ""
    html_content: str = ""
    mail_date: str = ""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "mail_id": "AAMkAGI2...",
                "sender": "noreply@example.com",
                "sender_name": "Example",
                "subject": "Welcome",
                "text_content": "Hello",
                "html_content": "<p>Hello</p>",
                "mail_date": "2024-01-01T12:00:00Z"
            }
        }
    )


class CachedMail(MailSummary):
    """缓存中的邮件记录"""
    account_id: int
    mailbox: Folder


class MailPage(BaseModel):
    """分页邮件列表"""
    items: List[CachedMail]
    total: int
    page: int
    page_size: int


class FetchResult(BaseModel):
    """取信结果"""
    messages: List[MailSummary]
    total: int
    protocol: Protocol
    cached: bool


class DeletionReport(BaseModel):
    """删信结果：尝试数与成功数"""
    protocol: Optional[Protocol] = None
    attempted: int = 0
    succeeded: int = 0

    @computed_field
    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded


class ProxyProbeResult(BaseModel):
    """代理连通性测试结果"""
    ip: str = ""
    latency_ms: int
    status: Literal["active", "failed"]
