"""
Outlook邮件管理系统 - 取信与令牌轮换核心

Graph API优先、IMAP回退、本地缓存兜底的邮件获取流程
"""

from .errors import AggregateFailure, NotFound, ParseError, ProtocolError, TokenExchangeError
from .models import DeletionReport, FetchResult, Folder, MailSummary
from .service import MailRetrievalCoordinator

__version__ = "1.0.0"

__all__ = [
    "AggregateFailure",
    "DeletionReport",
    "FetchResult",
    "Folder",
    "MailRetrievalCoordinator",
    "MailSummary",
    "NotFound",
    "ParseError",
    "ProtocolError",
    "TokenExchangeError",
]
