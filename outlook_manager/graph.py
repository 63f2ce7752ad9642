"""
Microsoft Graph 邮件接口

列出文件夹内最新邮件、逐封删除文件夹内全部邮件
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .config import (
    GRAPH_API_BASE,
    GRAPH_DELETE_BATCH_SIZE,
    GRAPH_DELETE_MAX_MESSAGES,
    GRAPH_PAGE_SIZE_MAX,
    HTTP_TIMEOUT_SECONDS,
)
from .errors import ProtocolError
from .models import DeletionReport, Folder, MailSummary
from .proxies import Egress, ProxyGateway

logger = logging.getLogger(__name__)

MESSAGE_SELECT_FIELDS = "id,from,subject,bodyPreview,body,receivedDateTime,createdDateTime"


def graph_item_to_summary(item: Dict[str, Any]) -> MailSummary:
    """Graph消息对象转换为邮件摘要，缺失字段使用空字符串"""
    address = (item.get("from") or {}).get("emailAddress") or {}
    body = item.get("body") or {}
    return MailSummary(
        mail_id=item.get("id") or "",
        sender=address.get("address") or "",
        sender_name=address.get("name") or "",
        subject=item.get("subject") or "",
        text_content=item.get("bodyPreview") or "",
        html_content=body.get("content") or "",
        mail_date=item.get("receivedDateTime") or item.get("createdDateTime") or "",
    )


class GraphProtocolClient:
    """基于Bearer令牌的Graph邮件客户端"""

    def __init__(
        self,
        gateway: ProxyGateway,
        api_base: str = GRAPH_API_BASE,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        delete_batch_size: int = GRAPH_DELETE_BATCH_SIZE
    ):
        self._gateway = gateway
        self._api_base = api_base
        self._timeout = timeout
        self._delete_batch_size = max(1, delete_batch_size)

    @staticmethod
    def _headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}

    async def _list_with_client(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        folder: Folder,
        limit: int
    ) -> List[MailSummary]:
        url: Optional[str] = f"{self._api_base}/me/mailFolders/{folder.graph_name}/messages"
        params: Optional[Dict[str, str]] = {
            "$top": str(min(limit, GRAPH_PAGE_SIZE_MAX)),
            "$orderby": "receivedDateTime desc",
            "$select": MESSAGE_SELECT_FIELDS,
        }
        summaries: List[MailSummary] = []

        while url and len(summaries) < limit:
            try:
                response = await client.get(url, headers=self._headers(access_token), params=params)
            except httpx.HTTPError as e:
                raise ProtocolError("Graph API request failed", body=str(e)) from e

            if not response.is_success:
                raise ProtocolError("Graph API fetch failed", status=response.status_code, body=response.text)

            try:
                payload = response.json()
            except ValueError as e:
                raise ProtocolError("Graph API returned invalid JSON", status=response.status_code) from e
            summaries.extend(graph_item_to_summary(item) for item in payload.get("value") or [])
            # nextLink 已包含全部查询参数
            url = payload.get("@odata.nextLink")
            params = None

        return summaries[:limit]

    async def list(
        self,
        access_token: str,
        folder: Folder,
        limit: int,
        egress: Optional[Egress] = None
    ) -> List[MailSummary]:
        """
        获取文件夹内最新的limit封邮件

        Raises:
            ProtocolError: Graph返回非2xx或网络错误
        """
        egress = egress or self._gateway.resolve()
        async with self._gateway.http_client(egress, self._timeout) as client:
            summaries = await self._list_with_client(client, access_token, folder, limit)
        logger.info(f"Graph API fetched {len(summaries)} mails from {folder.graph_name}")
        return summaries

    async def _delete_one(self, client: httpx.AsyncClient, access_token: str, mail_id: str) -> None:
        url = f"{self._api_base}/me/messages/{quote(mail_id, safe='')}"
        response = await client.delete(url, headers={"Authorization": f"Bearer {access_token}"})
        if not response.is_success:
            raise ProtocolError("Graph API delete failed", status=response.status_code, body=response.text)

    async def delete_all(
        self,
        access_token: str,
        folder: Folder,
        egress: Optional[Egress] = None,
        max_messages: int = GRAPH_DELETE_MAX_MESSAGES
    ) -> DeletionReport:
        """
        删除文件夹内全部邮件

        按批并发删除，每批等待全部请求结束（含失败）后再进入下一批。
        单封删除失败不会中断批次，只体现在返回的统计中。

        Raises:
            ProtocolError: 列出邮件失败
        """
        egress = egress or self._gateway.resolve()
        async with self._gateway.http_client(egress, self._timeout) as client:
            summaries = await self._list_with_client(client, access_token, folder, max_messages)
            mail_ids = [summary.mail_id for summary in summaries if summary.mail_id]
            report = DeletionReport(protocol="graph", attempted=len(mail_ids))

            for start in range(0, len(mail_ids), self._delete_batch_size):
                batch = mail_ids[start:start + self._delete_batch_size]
                results = await asyncio.gather(
                    *(self._delete_one(client, access_token, mail_id) for mail_id in batch),
                    return_exceptions=True
                )
                for mail_id, result in zip(batch, results):
                    if isinstance(result, BaseException):
                        logger.warning(f"Failed to delete Graph message {mail_id[:16]}...: {result}")
                    else:
                        report.succeeded += 1

        logger.info(
            f"Deleted {report.succeeded}/{report.attempted} mails from {folder.graph_name}"
            + (f" ({report.failed} failed)" if report.failed else "")
        )
        return report
