"""
Integration tests for the source re-sync job.

Validates:
1. Every active connection of the kind is pulled with its scope and cursor
2. A failing connection does not stop the others
3. Connections are spaced out by the configured delay
"""

from __future__ import annotations

from datetime import UTC, datetime

from brainbits.accounts.models import ConnectionStatus
from brainbits.ingestion.repository import DocumentRepository, ScopeRepository, SyncStateRepository
from brainbits.ingestion.sync_job import sync_all_active_connections
from brainbits.ingestion.types import PullResult

NOW = datetime(2025, 6, 1, 3, 0, tzinfo=UTC)


class FakeAdapter:
    def __init__(self, pages=None, failing=()):
        self.pages = pages or {}
        self.failing = set(failing)
        self.calls = []

    def pull(self, connection, scope, cursor):
        self.calls.append((connection.id, [item["scope_value"] for item in scope], cursor))
        if connection.id in self.failing:
            raise ConnectionError("source unavailable")
        items = self.pages.get(connection.id, [])
        return PullResult(items=items, next_cursor={"after": f"c-{connection.id}"})


def note(external_id, title="Note"):
    return {
        "op": "upsert",
        "externalId": external_id,
        "title": title,
        "contentMarkdown": f"Content of {external_id}",
        "updatedAtSource": "2025-05-30T12:00:00Z",
    }


def test_syncs_every_active_connection(make_user, make_connection):
    make_user("user-1")
    make_user("user-2", email="bob@example.com")
    first = make_connection("user-1", kind="notion", display_name="Work")
    second = make_connection("user-2", kind="notion", display_name="Home")
    make_connection("user-2", kind="obsidian")
    make_connection("user-1", kind="notion", status=ConnectionStatus.REVOKED)
    adapter = FakeAdapter(pages={first.id: [note("a"), note("b")], second.id: [note("c")]})
    sleeps = []

    stats = sync_all_active_connections("notion", adapter, now=NOW, delay_seconds=2.0, sleep_fn=sleeps.append)

    assert stats == {"synced": 2, "failed": 0, "total_documents": 3}
    assert [call[0] for call in adapter.calls] == [first.id, second.id]
    assert sleeps == [2.0]
    assert DocumentRepository.count_active("user-1") == 2
    assert SyncStateRepository.get(first.id)["cursor"] == {"after": f"c-{first.id}"}


def test_stored_cursor_and_scope_are_passed_to_the_adapter(make_user, make_connection):
    make_user("user-1")
    connection = make_connection("user-1", kind="notion")
    ScopeRepository.add(connection.id, "notion_database", "db-123")
    adapter = FakeAdapter()

    sync_all_active_connections("notion", adapter, now=NOW, delay_seconds=0)
    sync_all_active_connections("notion", adapter, now=NOW, delay_seconds=0)

    assert adapter.calls == [
        (connection.id, ["db-123"], None),
        (connection.id, ["db-123"], {"after": f"c-{connection.id}"}),
    ]


def test_failing_connection_is_isolated(make_user, make_connection):
    make_user("user-1")
    broken = make_connection("user-1", kind="notion", display_name="Broken")
    healthy = make_connection("user-1", kind="notion", display_name="Healthy")
    adapter = FakeAdapter(pages={healthy.id: [note("ok")]}, failing=[broken.id])

    stats = sync_all_active_connections("notion", adapter, now=NOW, delay_seconds=0)

    assert stats == {"synced": 1, "failed": 1, "total_documents": 1}
    assert SyncStateRepository.get(broken.id) is None


def test_no_connections(db):
    adapter = FakeAdapter()

    assert sync_all_active_connections("obsidian", adapter, now=NOW) == {
        "synced": 0,
        "failed": 0,
        "total_documents": 0,
    }
    assert adapter.calls == []
