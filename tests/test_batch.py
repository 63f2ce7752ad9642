"""Tests for the bulk sync job."""

import json

import pytest

from batch import output_path, run_batch
from outlook_manager.models import Account

from conftest import graph_message


class TestRunBatch:
    """Test run_batch writes one file per account and keeps going on failures."""

    @pytest.mark.asyncio
    async def test_writes_inbox_and_junk(self, services, microsoft, tmp_path):
        microsoft.messages["inbox"] = [graph_message(2)]
        microsoft.messages["junkemail"] = [graph_message(5)]

        summary = await run_batch(services, output_dir=str(tmp_path), current_date="20240110")

        assert summary == {"total": 1, "succeeded": 1, "failed": 0, "skipped": 0}
        output_file = tmp_path / "alice_at_outlook.com_20240110.json"
        items = json.loads(output_file.read_text(encoding="utf-8"))
        assert [(item["mail_id"], item["folder"]) for item in items] == [("msg-5", "Junk"), ("msg-2", "INBOX")]
        assert items[0]["email_id"] == "alice@outlook.com"
        assert items[0]["protocol"] == "graph"

    @pytest.mark.asyncio
    async def test_failed_account_does_not_stop_batch(self, services, microsoft, tmp_path):
        services.accounts.add(Account(id=2, email="bob@outlook.com", client_id="client-2", refresh_token="rt-bob"))
        services.accounts.add(Account(
            id=3, email="carol@outlook.com", client_id="client-3", refresh_token="rt-carol", status="inactive"
        ))
        microsoft.graph_token_status = 400
        microsoft.imap_token_status = 400

        summary = await run_batch(services, output_dir=str(tmp_path), current_date="20240110")

        assert summary == {"total": 3, "succeeded": 0, "failed": 2, "skipped": 1}
        assert list(tmp_path.iterdir()) == []

    def test_output_path(self):
        assert output_path("out", "bob@example.com", "20240101").endswith("bob_at_example.com_20240101.json")
