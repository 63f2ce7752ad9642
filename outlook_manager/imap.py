"""
IMAP 邮件接口

XOAUTH2认证、获取最新N封邮件并解析、标记删除并清空文件夹。
底层使用阻塞的imaplib会话，在线程中执行，对外暴露协程接口。
"""

import asyncio
import base64
import email
import imaplib
import logging
import re
import ssl
from datetime import timezone
from email.header import decode_header
from email.message import Message
from email.utils import parseaddr, parsedate_to_datetime
from typing import Callable, List, Optional, Tuple

from .config import IMAP_PORT, IMAP_SERVER, IMAP_TIMEOUT_SECONDS
from .errors import ParseError, ProtocolError
from .models import DeletionReport, Folder, MailSummary
from .proxies import DIRECT, Egress

logger = logging.getLogger(__name__)

# 每条 STORE 命令最多携带的序号数量
STORE_CHUNK_SIZE = 500

FETCH_ITEM_PATTERN = re.compile(rb'^(\d+)\s+\(')


def build_xoauth2(email_address: str, access_token: str) -> str:
    """构造SASL XOAUTH2初始响应（base64编码）"""
    auth_string = f"user={email_address}\x01auth=Bearer {access_token}\x01\x01"
    return base64.b64encode(auth_string.encode("utf-8")).decode("ascii")


# ============================================================================
# 邮件解析
# ============================================================================

def decode_header_value(header_value: Optional[str]) -> str:
    """
    解码邮件头字段

    处理各种编码格式的邮件头部信息，如Subject、From等
    """
    if not header_value:
        return ""

    try:
        decoded_parts = decode_header(str(header_value))
    except Exception as e:
        logger.warning(f"Failed to decode header value: {e}")
        return str(header_value)

    decoded_string = ""
    for part, charset in decoded_parts:
        if isinstance(part, bytes):
            try:
                decoded_string += part.decode(charset or 'utf-8', errors='replace')
            except LookupError:
                # 未知编码
                decoded_string += part.decode('utf-8', errors='replace')
        else:
            decoded_string += str(part)
    return decoded_string.strip()


def _decode_part(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or 'utf-8'
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        return payload.decode('utf-8', errors='replace')


def extract_email_content(email_message: Message) -> Tuple[str, str]:
    """
    提取邮件的纯文本和HTML内容

    Returns:
        tuple[str, str]: (纯文本内容, HTML内容)
    """
    body_plain = ""
    body_html = ""

    if email_message.is_multipart():
        for part in email_message.walk():
            if part.is_multipart():
                continue
            # 跳过附件
            if 'attachment' in str(part.get("Content-Disposition", "")).lower():
                continue
            content_type = part.get_content_type()
            if content_type == 'text/plain' and not body_plain:
                body_plain = _decode_part(part)
            elif content_type == 'text/html' and not body_html:
                body_html = _decode_part(part)
    else:
        content = _decode_part(email_message)
        if email_message.get_content_type() == 'text/html':
            body_html = content
        else:
            body_plain = content

    return body_plain.strip(), body_html.strip()


def normalize_mail_date(date_header: Optional[str]) -> str:
    """Date头转换为UTC ISO格式，无法解析时返回空字符串"""
    if not date_header:
        return ""
    try:
        parsed = parsedate_to_datetime(str(date_header))
    except (TypeError, ValueError, IndexError):
        return ""
    if parsed is None:
        return ""
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_message(raw_message: bytes, sequence: str = "?") -> MailSummary:
    """
    解析完整邮件为摘要

    Raises:
        ParseError: 邮件无法解析
    """
    if not isinstance(raw_message, (bytes, bytearray)) or not raw_message.strip():
        raise ParseError(sequence, "empty message body")

    try:
        message = email.message_from_bytes(bytes(raw_message))
        sender_name, sender_address = parseaddr(str(message.get('From', '')))
        body_plain, body_html = extract_email_content(message)
        return MailSummary(
            mail_id=str(message.get('Message-ID', '') or '').strip(),
            sender=sender_address,
            sender_name=decode_header_value(sender_name),
            subject=decode_header_value(message.get('Subject', '')),
            text_content=body_plain,
            html_content=body_html,
            mail_date=normalize_mail_date(message.get('Date')),
        )
    except Exception as e:
        raise ParseError(sequence, str(e)) from e


# ============================================================================
# IMAP 会话
# ============================================================================

class EgressIMAP4_SSL(imaplib.IMAP4_SSL):
    """经由指定出站方式建立TLS连接的IMAP客户端"""

    def __init__(self, host: str, port: int, egress: Egress, timeout: float):
        self._egress = egress
        super().__init__(host, port, ssl_context=ssl.create_default_context(), timeout=timeout)

    def _create_socket(self, timeout):
        sock = self._egress.open_socket(self.host, self.port, timeout)
        return self.ssl_context.wrap_socket(sock, server_hostname=self.host)


ConnectionFactory = Callable[[str, int, Egress, float], imaplib.IMAP4]


class ImapSession:
    """
    单次调用使用的阻塞IMAP会话

    open → select → search → fetch / store → close，
    所有连接、认证、命令失败都转换为ProtocolError
    """

    def __init__(
        self,
        email_address: str,
        auth_string: str,
        egress: Egress = DIRECT,
        host: str = IMAP_SERVER,
        port: int = IMAP_PORT,
        timeout: float = IMAP_TIMEOUT_SECONDS,
        connection_factory: ConnectionFactory = EgressIMAP4_SSL
    ):
        self.email_address = email_address
        self._auth_bytes = base64.b64decode(auth_string)
        self._egress = egress
        self._host = host
        self._port = port
        self._timeout = timeout
        self._connection_factory = connection_factory
        self._client: Optional[imaplib.IMAP4] = None

    @property
    def client(self) -> imaplib.IMAP4:
        if self._client is None:
            raise ProtocolError("IMAP session is not open")
        return self._client

    def open(self) -> "ImapSession":
        try:
            self._client = self._connection_factory(self._host, self._port, self._egress, self._timeout)
        except (imaplib.IMAP4.error, OSError) as e:
            raise ProtocolError(f"IMAP connection to {self._host} failed", body=str(e)) from e

        try:
            # imaplib负责base64编码，这里传原始字节
            self._client.authenticate('XOAUTH2', lambda _: self._auth_bytes)
        except (imaplib.IMAP4.error, OSError) as e:
            self.close()
            raise ProtocolError(f"IMAP XOAUTH2 authentication failed for {self.email_address}", body=str(e)) from e

        logger.info(f"IMAP session opened for {self.email_address} via {self._egress}")
        return self

    def _command(self, description: str, call: Callable[[], Tuple[str, list]]) -> list:
        try:
            status, data = call()
        except (imaplib.IMAP4.error, OSError) as e:
            raise ProtocolError(f"IMAP {description} failed", body=str(e)) from e
        if status != 'OK':
            raise ProtocolError(f"IMAP {description} failed", body=f"{status} {data!r}"[:800])
        return data

    def select(self, folder: Folder, readonly: bool = True) -> None:
        self._command(f"select {folder.imap_name}", lambda: self.client.select(f'"{folder.imap_name}"', readonly=readonly))

    def search_all(self) -> List[bytes]:
        """返回全部邮件序号（升序）"""
        data = self._command("search", lambda: self.client.search(None, "ALL"))
        if not data or not data[0]:
            return []
        return sorted(data[0].split(), key=int)

    def fetch_bodies(self, sequence_numbers: List[bytes]) -> List[Tuple[str, bytes]]:
        """批量获取完整邮件，返回 (序号, 原始内容) 列表"""
        if not sequence_numbers:
            return []
        data = self._command(
            "fetch",
            lambda: self.client.fetch(b','.join(sequence_numbers).decode(), '(BODY.PEEK[])')
        )
        messages = []
        for item in data:
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            match = FETCH_ITEM_PATTERN.match(item[0])
            sequence = match.group(1).decode() if match else "?"
            messages.append((sequence, item[1]))
        return messages

    def flag_deleted(self, sequence_numbers: List[bytes]) -> None:
        for start in range(0, len(sequence_numbers), STORE_CHUNK_SIZE):
            chunk = sequence_numbers[start:start + STORE_CHUNK_SIZE]
            self._command(
                "store",
                lambda: self.client.store(b','.join(chunk).decode(), '+FLAGS', '\\Deleted')
            )

    def expunge(self) -> None:
        self._command("expunge", lambda: self.client.expunge())

    def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            client.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"Error closing IMAP session for {self.email_address}: {e}")

    def __enter__(self) -> "ImapSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


# ============================================================================
# IMAP 协议客户端
# ============================================================================

class ImapProtocolClient:
    """协程接口，每次调用使用独立会话，在工作线程中执行"""

    def __init__(
        self,
        host: str = IMAP_SERVER,
        port: int = IMAP_PORT,
        timeout: float = IMAP_TIMEOUT_SECONDS,
        connection_factory: ConnectionFactory = EgressIMAP4_SSL
    ):
        self._host = host
        self._port = port
        self._timeout = timeout
        self._connection_factory = connection_factory

    def session(self, email_address: str, auth_string: str, egress: Egress = DIRECT) -> ImapSession:
        return ImapSession(
            email_address,
            auth_string,
            egress=egress,
            host=self._host,
            port=self._port,
            timeout=self._timeout,
            connection_factory=self._connection_factory,
        )

    def _list_sync(self, email_address: str, auth_string: str, folder: Folder, limit: int, egress: Egress) -> List[MailSummary]:
        with self.session(email_address, auth_string, egress) as session:
            session.select(folder, readonly=True)
            sequence_numbers = session.search_all()
            if not sequence_numbers or limit <= 0:
                logger.info(f"IMAP folder {folder.imap_name} is empty for {email_address}")
                return []

            newest = sequence_numbers[-limit:]
            fetched = session.fetch_bodies(newest)

        summaries: List[Tuple[int, MailSummary]] = []
        parse_failures = 0
        for sequence, raw_message in fetched:
            try:
                summaries.append((int(sequence) if sequence.isdigit() else 0, parse_message(raw_message, sequence)))
            except ParseError as e:
                parse_failures += 1
                logger.error(f"Error parsing email: {e}")

        summaries.sort(key=lambda item: (item[1].mail_date, item[0]), reverse=True)
        logger.info(
            f"IMAP fetched {len(summaries)} mails from {folder.imap_name} for {email_address}"
            + (f" ({parse_failures} failed to parse)" if parse_failures else "")
        )
        return [summary for _, summary in summaries[:limit]]

    async def list(
        self,
        email_address: str,
        auth_string: str,
        folder: Folder,
        limit: int,
        egress: Egress = DIRECT
    ) -> List[MailSummary]:
        """
        获取文件夹内最新的limit封邮件，按日期倒序

        Raises:
            ProtocolError: 连接、认证、选择文件夹、搜索或获取失败
        """
        return await asyncio.to_thread(self._list_sync, email_address, auth_string, folder, limit, egress)

    def _clear_sync(self, email_address: str, auth_string: str, folder: Folder, egress: Egress) -> DeletionReport:
        with self.session(email_address, auth_string, egress) as session:
            session.select(folder, readonly=False)
            sequence_numbers = session.search_all()
            if not sequence_numbers:
                return DeletionReport(protocol="imap")

            session.flag_deleted(sequence_numbers)
            session.expunge()

        logger.info(f"IMAP cleared {len(sequence_numbers)} mails from {folder.imap_name} for {email_address}")
        return DeletionReport(protocol="imap", attempted=len(sequence_numbers), succeeded=len(sequence_numbers))

    async def clear(self, email_address: str, auth_string: str, folder: Folder, egress: Egress = DIRECT) -> DeletionReport:
        """
        标记文件夹内全部邮件为删除并执行EXPUNGE，空文件夹不发送任何删除命令

        Raises:
            ProtocolError: 任一IMAP命令失败
        """
        return await asyncio.to_thread(self._clear_sync, email_address, auth_string, folder, egress)
