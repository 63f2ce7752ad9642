"""Tests for the mail cache store and the Redis page cache."""

from unittest.mock import MagicMock

import pytest
import redis

from outlook_manager.cache import InMemoryMailCacheStore, MailCache
from outlook_manager.models import Folder, MailPage, MailSummary


def summary(mail_id: str, day: int, subject: str = "") -> MailSummary:
    return MailSummary(
        mail_id=mail_id,
        sender="news@example.com",
        subject=subject or f"Mail {mail_id or day}",
        mail_date=f"2024-01-{day:02d}T08:00:00Z",
    )


# =============================================================================
# InMemoryMailCacheStore Tests
# =============================================================================

class TestInMemoryMailCacheStore:
    """Test upsert identity, ordering and paging."""

    @pytest.fixture
    def store(self):
        return InMemoryMailCacheStore()

    def test_upsert_replaces_same_mail_id(self, store):
        store.upsert(1, Folder.INBOX, [summary("a", 1), summary("b", 2)])
        store.upsert(1, Folder.INBOX, [summary("a", 1, subject="Edited")])

        page = store.get_page(1, Folder.INBOX, 1, 10)

        assert page.total == 2
        assert {item.mail_id: item.subject for item in page.items} == {"a": "Edited", "b": "Mail b"}

    def test_records_without_id_are_appended(self, store):
        store.upsert(1, Folder.INBOX, [summary("", 1)])
        store.upsert(1, Folder.INBOX, [summary("", 1)])

        assert store.get_page(1, Folder.INBOX, 1, 10).total == 2

    def test_page_ordered_by_date_descending(self, store):
        store.upsert(1, Folder.INBOX, [summary("a", 3), summary("b", 9), summary("c", 5)])

        page = store.get_page(1, Folder.INBOX, 1, 2)
        second = store.get_page(1, Folder.INBOX, 2, 2)

        assert [item.mail_id for item in page.items] == ["b", "c"]
        assert [item.mail_id for item in second.items] == ["a"]
        assert second.total == 3
        assert second.items[0].account_id == 1
        assert second.items[0].mailbox == Folder.INBOX

    def test_folders_and_accounts_are_isolated(self, store):
        store.upsert(1, Folder.INBOX, [summary("a", 1)])
        store.upsert(1, Folder.JUNK, [summary("a", 1), summary("b", 2)])
        store.upsert(2, Folder.INBOX, [summary("a", 1)])

        assert store.clear(1, Folder.JUNK) == 2
        assert store.get_page(1, Folder.JUNK, 1, 10).total == 0
        assert store.get_page(1, Folder.INBOX, 1, 10).total == 1
        assert store.get_page(2, Folder.INBOX, 1, 10).total == 1

    def test_counts(self, store):
        store.upsert(1, Folder.INBOX, [summary("a", 1), summary("b", 2)])
        store.upsert(1, Folder.JUNK, [summary("c", 3)])
        store.upsert(2, Folder.INBOX, [summary("d", 4)])

        assert store.count_for_account(1) == 3
        assert store.count_for_account(1, Folder.JUNK) == 1
        assert store.count_global() == 4
        assert store.count_global(Folder.INBOX) == 3

    def test_recent_across_accounts(self, store):
        store.upsert(1, Folder.INBOX, [summary("a", 1), summary("b", 7)])
        store.upsert(2, Folder.JUNK, [summary("c", 4)])

        assert [item.mail_id for item in store.recent(2)] == ["b", "c"]


# =============================================================================
# MailCache (Redis page cache) Tests
# =============================================================================

class TestMailCacheRedis:
    """Test Redis page caching and invalidation."""

    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.get.return_value = None
        client.scan_iter.return_value = iter([])
        return client

    def test_miss_reads_store_and_populates_redis(self, redis_client):
        cache = MailCache(InMemoryMailCacheStore(), redis_client, key_prefix="om", expire_seconds=60)
        cache.upsert(1, Folder.INBOX, [summary("a", 1)])

        page = cache.get_page(1, Folder.INBOX, 1, 20)

        assert page.total == 1
        key, ttl, payload = redis_client.setex.call_args.args
        assert key == "om:mail-cache:1:INBOX:1:20"
        assert ttl == 60
        assert MailPage.model_validate_json(payload) == page

    def test_hit_skips_store(self, redis_client):
        store = MagicMock()
        cached_page = MailPage(items=[], total=0, page=1, page_size=20)
        redis_client.get.return_value = cached_page.model_dump_json()

        page = MailCache(store, redis_client).get_page(1, Folder.JUNK, 1, 20)

        assert page == cached_page
        store.get_page.assert_not_called()

    def test_upsert_and_clear_invalidate_pages(self, redis_client):
        redis_client.scan_iter.side_effect = lambda match: iter([f"{match[:-1]}1:20"])
        cache = MailCache(InMemoryMailCacheStore(), redis_client, key_prefix="om")

        cache.upsert(1, Folder.INBOX, [summary("a", 1)])
        cache.clear(1, Folder.INBOX)

        patterns = [call.kwargs["match"] for call in redis_client.scan_iter.call_args_list]
        assert patterns == ["om:mail-cache:1:INBOX:*", "om:mail-cache:1:INBOX:*"]
        redis_client.delete.assert_called_with("om:mail-cache:1:INBOX:1:20")

    def test_redis_errors_fall_back_to_store(self, redis_client):
        redis_client.get.side_effect = redis.ConnectionError("redis down")
        redis_client.setex.side_effect = redis.ConnectionError("redis down")
        cache = MailCache(InMemoryMailCacheStore(), redis_client)
        cache.upsert(1, Folder.INBOX, [summary("a", 1)])

        page = cache.get_page(1, Folder.INBOX)

        assert [item.mail_id for item in page.items] == ["a"]

    def test_without_redis(self):
        cache = MailCache(InMemoryMailCacheStore())
        cache.upsert(3, Folder.JUNK, [summary("x", 2)])

        assert cache.count_for_account(3) == 1
        assert cache.clear(3, Folder.JUNK) == 1
        assert cache.count_global() == 0
