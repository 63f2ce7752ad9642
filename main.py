"""
Outlook邮件管理系统 - 主应用模块

基于FastAPI的取信服务，Graph API优先、IMAP回退、本地缓存兜底
支持多账户、代理出站、refresh_token轮换回写

Author: Outlook Manager Team
Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from outlook_manager import __version__
from outlook_manager.bootstrap import Services, create_services
from outlook_manager.config import DEFAULT_FETCH_LIMIT, HOST, LOG_FORMAT, LOG_LEVEL, MAX_FETCH_LIMIT, PORT
from outlook_manager.errors import AggregateFailure, NotFound
from outlook_manager.models import (
    CachedMail,
    DeletionReport,
    FetchResult,
    Folder,
    MailPage,
    MailSummary,
    ProxyProbeResult,
)

# 日志配置
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)


# ============================================================================
# 请求/响应模型
# ============================================================================

class MailRequest(BaseModel):
    """取信/删信请求模型"""
    account_id: int = Field(..., ge=1)
    mailbox: Folder = Folder.INBOX
    proxy_id: Optional[int] = Field(default=None, ge=1)
    limit: int = Field(default=DEFAULT_FETCH_LIMIT, ge=1, le=MAX_FETCH_LIMIT)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "account_id": 1,
                "mailbox": "INBOX",
                "proxy_id": None,
                "limit": 50
            }
        }
    )


class ClearMailboxResponse(BaseModel):
    """清空邮箱响应模型"""
    report: DeletionReport
    cache_removed: int
    message: str


class CacheStatsResponse(BaseModel):
    """缓存统计响应模型"""
    inbox_total: int
    junk_total: int
    account_total: Optional[int] = None


# ============================================================================
# FastAPI应用和API端点
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI应用生命周期管理

    处理应用启动和关闭时的资源管理
    """
    logger.info("Starting Outlook Email Management System...")
    if getattr(app.state, "services", None) is None:
        app.state.services = create_services()

    yield

    logger.info("Shutting down Outlook Email Management System...")
    app.state.services.close()
    logger.info("Application shutdown complete.")


def get_services(request: Request) -> Services:
    return request.app.state.services


def raise_mail_error(action: str, error: Exception) -> None:
    """将取信异常转换为HTTP错误"""
    if isinstance(error, NotFound):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, AggregateFailure):
        raise HTTPException(status_code=502, detail=f"Failed to {action}: {error}")
    raise error


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Outlook邮件API服务",
        description="Graph API优先、IMAP回退的Outlook取信服务",
        version=__version__,
        lifespan=lifespan
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/mails/fetch", response_model=FetchResult)
    async def fetch_mails(body: MailRequest, request: Request):
        """获取最新邮件（实时或缓存降级）"""
        coordinator = get_services(request).coordinator
        try:
            return await coordinator.fetch(body.account_id, body.mailbox, body.proxy_id, body.limit)
        except (NotFound, AggregateFailure) as e:
            raise_mail_error("fetch mails", e)

    @app.post("/mails/fetch-new", response_model=Optional[MailSummary])
    async def fetch_new_mail(body: MailRequest, request: Request):
        """获取最新一封邮件"""
        coordinator = get_services(request).coordinator
        try:
            return await coordinator.fetch_latest(body.account_id, body.mailbox, body.proxy_id)
        except (NotFound, AggregateFailure) as e:
            raise_mail_error("fetch new mail", e)

    @app.post("/mails/clear", response_model=ClearMailboxResponse)
    async def clear_mailbox(body: MailRequest, request: Request):
        """清空文件夹，完成后清除对应缓存"""
        services = get_services(request)
        try:
            report = await services.coordinator.delete_all(body.account_id, body.mailbox, body.proxy_id)
        except (NotFound, AggregateFailure) as e:
            raise_mail_error("clear mailbox", e)

        cache_removed = services.cache.clear(body.account_id, body.mailbox)
        return ClearMailboxResponse(
            report=report,
            cache_removed=cache_removed,
            message=f"Deleted {report.succeeded}/{report.attempted} mails via {report.protocol or 'none'}"
        )

    @app.get("/mails/cached", response_model=MailPage)
    async def get_cached_mails(
        request: Request,
        account_id: int = Query(..., ge=1),
        mailbox: Folder = Query(Folder.INBOX),
        page: int = Query(1, ge=1),
        page_size: int = Query(DEFAULT_FETCH_LIMIT, ge=1, le=MAX_FETCH_LIMIT)
    ):
        """读取缓存邮件（分页，按日期倒序）"""
        return get_services(request).cache.get_page(account_id, mailbox, page, page_size)

    @app.get("/mails/recent", response_model=List[CachedMail])
    async def get_recent_mails(request: Request, limit: int = Query(5, ge=1, le=100)):
        """所有账户中最新的缓存邮件"""
        return get_services(request).cache.recent(limit)

    @app.get("/mails/stats", response_model=CacheStatsResponse)
    async def get_cache_stats(request: Request, account_id: Optional[int] = Query(None, ge=1)):
        """缓存统计"""
        cache = get_services(request).cache
        return CacheStatsResponse(
            inbox_total=cache.count_global(Folder.INBOX),
            junk_total=cache.count_global(Folder.JUNK),
            account_total=cache.count_for_account(account_id) if account_id else None
        )

    @app.get("/proxies/{proxy_id}/probe", response_model=ProxyProbeResult)
    async def probe_proxy(proxy_id: int, request: Request):
        """测试代理连通性，返回出口IP和延迟"""
        services = get_services(request)
        proxy = services.proxies.get(proxy_id)
        if proxy is None:
            raise HTTPException(status_code=404, detail=f"Proxy {proxy_id} not found")
        return await services.gateway.probe(proxy)

    @app.get("/api")
    async def api_status():
        """API状态检查"""
        return {
            "message": "Outlook邮件API服务正在运行（Graph + IMAP）",
            "version": __version__,
            "endpoints": {
                "fetch_mails": "POST /mails/fetch",
                "fetch_new_mail": "POST /mails/fetch-new",
                "clear_mailbox": "POST /mails/clear",
                "get_cached_mails": "GET /mails/cached",
                "get_recent_mails": "GET /mails/recent",
                "get_cache_stats": "GET /mails/stats",
                "probe_proxy": "GET /proxies/{proxy_id}/probe"
            }
        }

    return app


app = create_app()


# ============================================================================
# 启动配置
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting Outlook Email Management System on {HOST}:{PORT}")
    logger.info(f"Access the API documentation at: http://localhost:{PORT}/docs")

    uvicorn.run(
        app,
        host=HOST,
        port=PORT,
        log_level="info",
        access_log=True
    )
