"""邮件服务异常定义"""

from typing import Optional


class MailServiceError(Exception):
    """所有邮件服务异常的基类"""


class NotFound(MailServiceError):
    """账户不存在"""

    def __init__(self, account_id: int):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class _UpstreamError(MailServiceError):
    """携带上游HTTP状态码与响应体的异常"""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        self.status = status
        self.body = body
        detail = message
        if status is not None:
            detail = f"{message}: {status}"
            if body:
                detail += f" - {body[:800]}"
        elif body:
            detail = f"{message}: {body[:800]}"
        super().__init__(detail)


class TokenExchangeError(_UpstreamError):
    """令牌端点拒绝了refresh_token或client_id"""


class ProtocolError(_UpstreamError):
    """Graph HTTP失败或IMAP连接/认证/搜索失败"""


class ParseError(MailServiceError):
    """单封邮件解析失败（仅记录，不中断批次）"""

    def __init__(self, sequence: str, reason: str):
        self.sequence = sequence
        super().__init__(f"Failed to parse message {sequence}: {reason}")


class AggregateFailure(MailServiceError):
    """Graph和IMAP均失败且缓存为空"""

    def __init__(self, last_error: Exception):
        self.last_error = last_error
        super().__init__(f"Both Graph API and IMAP failed: {last_error}")
