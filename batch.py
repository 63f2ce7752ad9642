#!/usr/bin/env python3
"""
Outlook邮件批量获取工具

批量获取所有账户的收件箱和垃圾邮件，并保存为JSON格式
与API服务共用同一套取信流程（Graph优先、IMAP回退、缓存兜底）

Author: Outlook Manager Team
Version: 1.0.0
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from outlook_manager.bootstrap import Services, create_services
from outlook_manager.config import (
    BATCH_CONCURRENCY,
    BATCH_OUTPUT_DIR,
    BATCH_OUTPUT_FILE_FORMAT,
    DEFAULT_FETCH_LIMIT,
    LOG_FORMAT,
    LOG_LEVEL,
)
from outlook_manager.errors import MailServiceError
from outlook_manager.models import Account, Folder

# 日志配置
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

BATCH_FOLDERS = (Folder.INBOX, Folder.JUNK)


def output_path(output_dir: str, email_address: str, current_date: str) -> str:
    return os.path.join(output_dir, BATCH_OUTPUT_FILE_FORMAT.format(
        email_id=email_address.replace("@", "_at_"),
        date=current_date
    ))


async def collect_account_mails(services: Services, account: Account, limit: int) -> List[Dict[str, Any]]:
    """获取单个账户所有文件夹的邮件，按日期倒序"""
    email_items: List[Dict[str, Any]] = []

    for folder in BATCH_FOLDERS:
        result = await services.coordinator.fetch(account.id, folder, limit=limit)
        if result.cached:
            logger.warning(f"Live fetch failed for {account.email}/{folder.value}, saved cached copy")
        for message in result.messages:
            item = message.model_dump()
            item.update({
                "email_id": account.email,
                "folder": folder.value,
                "protocol": result.protocol,
                "cached": result.cached
            })
            email_items.append(item)

    email_items.sort(key=lambda x: x["mail_date"], reverse=True)
    return email_items


async def sync_account(
    services: Services,
    account: Account,
    semaphore: asyncio.Semaphore,
    output_dir: str,
    current_date: str,
    limit: int
) -> bool:
    """处理单个账户，失败时记录日志并返回False"""
    async with semaphore:
        try:
            logger.info(f"Processing account: {account.email}")
            emails = await collect_account_mails(services, account, limit)

            output_file = output_path(output_dir, account.email, current_date)
            with open(output_file, 'w', encoding='utf-8') as f:
                json.dump(emails, f, indent=2, ensure_ascii=False)

            logger.info(f"Saved {len(emails)} emails to {output_file}")
            return True
        except (MailServiceError, OSError) as e:
            logger.error(f"Failed to process account {account.email}: {e}")
            return False


async def run_batch(
    services: Services,
    output_dir: str = BATCH_OUTPUT_DIR,
    concurrency: int = BATCH_CONCURRENCY,
    limit: int = DEFAULT_FETCH_LIMIT,
    current_date: Optional[str] = None
) -> Dict[str, int]:
    """
    批量同步所有账户

    Returns:
        Dict[str, int]: 处理统计 {"total", "succeeded", "failed", "skipped"}
    """
    os.makedirs(output_dir, exist_ok=True)
    current_date = current_date or datetime.now().strftime("%Y%m%d")

    accounts = services.accounts.list_all()
    active_accounts = [account for account in accounts if account.status != "inactive"]
    skipped = len(accounts) - len(active_accounts)
    if not active_accounts:
        logger.error("No valid accounts found")
        return {"total": len(accounts), "succeeded": 0, "failed": 0, "skipped": skipped}

    logger.info(f"Processing {len(active_accounts)} accounts (concurrency={concurrency})")
    for account in active_accounts:
        if account.is_token_stale():
            logger.warning(f"Refresh token for {account.email} has not been refreshed recently")

    semaphore = asyncio.Semaphore(max(1, concurrency))
    results = await asyncio.gather(*[
        sync_account(services, account, semaphore, output_dir, current_date, limit)
        for account in active_accounts
    ])

    succeeded = sum(1 for ok in results if ok)
    summary = {
        "total": len(accounts),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "skipped": skipped
    }
    logger.info(f"Batch finished: {summary}")
    return summary


# ============================================================================
# 主函数
# ============================================================================

async def main():
    """主函数"""
    services = create_services()
    try:
        await run_batch(services)
    finally:
        services.close()


if __name__ == "__main__":
    logger.info("Starting batch email retrieval")
    asyncio.run(main())
    logger.info("Batch email retrieval completed")
