from __future__ import annotations

import json
import sys
import types
from datetime import UTC, datetime

import pytest

from brainbits import cli
from brainbits.digest.repository import DigestRepository
from brainbits.ingestion.pipeline import run_sync_pipeline
from brainbits.ingestion.types import PullResult


@pytest.fixture(autouse=True)
def env_already_loaded(monkeypatch):
    """Keep a developer .env out of CLI runs."""
    monkeypatch.setattr(cli, "ensure_env_loaded", lambda env_path=None: None)


def run(argv, capsys):
    code = cli.main(argv)
    out = capsys.readouterr().out
    return code, json.loads(out) if out.strip() else None


def test_init_db(db, capsys):
    code, result = run(["init-db"], capsys)

    assert code == 0
    assert result == {"db_path": str(db)}


def test_generate_then_send_dry_run(make_user, make_connection, capsys):
    make_user("user-1")
    connection = make_connection("user-1")
    item = {
        "op": "upsert",
        "externalId": "n1",
        "title": "Idea",
        "contentMarkdown": "Something worth remembering",
        "updatedAtSource": "2025-03-01T12:00:00Z",
        "metadata": {"path": "ideas/idea.md"},
    }
    run_sync_pipeline(connection.id, "user-1", [item], datetime(2025, 3, 1, 12, tzinfo=UTC), "obsidian")

    code, generated = run(["generate-digests", "--now", "2025-03-10T06:00:00Z"], capsys)
    assert code == 0
    assert generated == {"scheduled": 1, "errors": []}

    code, sent = run(["send-digests", "--now", "2025-03-10T08:00:00Z", "--dry-run"], capsys)
    assert code == 0
    assert sent == {"sent": 1, "errors": []}
    digest = DigestRepository.latest_for_user("user-1")
    assert digest.payload["dry_run"] is True
    assert digest.payload["provider_message_id"] == f"dry-run-note-digest-{digest.id}"


def test_send_with_nothing_pending(make_user, capsys):
    make_user("user-1")

    code, result = run(["send-digests", "--now", "2025-03-10T08:00:00Z"], capsys)

    assert code == 0
    assert result == {"no_pending": 1, "errors": []}


def test_run_sequences_with_nothing_active(db, capsys):
    code, result = run(["run-sequences", "--now", "2025-03-10T08:00:00Z", "--dry-run"], capsys)

    assert code == 0
    assert result == {"discovered": 0}


def test_sync_connections_loads_adapter_factory(make_user, make_connection, monkeypatch, capsys):
    make_user("user-1")
    make_connection("user-1", kind="notion", display_name="Work")

    class StaticAdapter:
        def pull(self, connection, scope, cursor):
            item = {
                "op": "upsert",
                "externalId": "page-1",
                "title": "Page",
                "contentMarkdown": "Body",
                "updatedAtSource": "2025-03-01T12:00:00Z",
            }
            return PullResult(items=[item])

    module = types.ModuleType("fake_notion_source")
    module.make_adapter = StaticAdapter
    monkeypatch.setitem(sys.modules, "fake_notion_source", module)

    code, result = run(
        ["sync-connections", "--kind", "notion", "--adapter", "fake_notion_source:make_adapter"],
        capsys,
    )

    assert code == 0
    assert result == {"synced": 1, "failed": 0, "total_documents": 1}


def test_job_error_exits_non_zero(db, monkeypatch, capsys):
    def boom(args):
        raise RuntimeError("job failed")

    monkeypatch.setattr(cli, "_cmd_generate_digests", boom)

    code, result = run(["generate-digests"], capsys)

    assert code == 1
    assert result is None


class TestLoadAdapter:
    """Resolving --adapter paths into adapter objects"""

    @pytest.fixture
    def adapters_module(self, monkeypatch):
        class VaultAdapter:
            def pull(self, connection, scope, cursor):
                return PullResult(items=[])

        module = types.ModuleType("fake_vault_source")
        module.VaultAdapter = VaultAdapter
        module.build = lambda: VaultAdapter()
        module.shared = VaultAdapter()
        monkeypatch.setitem(sys.modules, "fake_vault_source", module)
        return module

    def test_class_is_instantiated(self, adapters_module):
        """A class path yields an instance, not the class"""
        adapter = cli.load_adapter("fake_vault_source:VaultAdapter")

        assert isinstance(adapter, adapters_module.VaultAdapter)
        assert adapter.pull(None, [], None).items == []

    def test_factory_function_is_called(self, adapters_module):
        """A plain factory function is called once"""
        adapter = cli.load_adapter("fake_vault_source:build")

        assert isinstance(adapter, adapters_module.VaultAdapter)

    def test_instance_is_used_as_is(self, adapters_module):
        """A ready adapter object is returned unchanged"""
        assert cli.load_adapter("fake_vault_source:shared") is adapters_module.shared

    def test_bad_paths_are_rejected(self):
        """Paths without a module and attribute raise ValueError"""
        with pytest.raises(ValueError):
            cli.load_adapter("no_colon_here")
        with pytest.raises(ValueError):
            cli.load_adapter("module:")


def test_invalid_now_is_a_usage_error(db):
    with pytest.raises(SystemExit):
        cli.main(["generate-digests", "--now", "not-a-date"])
