from __future__ import annotations

from datetime import UTC, datetime

from brainbits.ingestion.scope import (
    PathFilter,
    apply_scope_filter,
    build_external_id,
    glob_to_regex,
    normalize_vault_path,
    title_from_path,
)
from brainbits.ingestion.types import RejectReason
from brainbits.utils.dates import to_iso

NOW = datetime(2025, 2, 1, 9, 0, tzinfo=UTC)


def test_single_star_stays_within_one_segment():
    pattern = glob_to_regex("notes/*.md")
    assert pattern.match("notes/a.md")
    assert not pattern.match("notes/sub/a.md")


def test_double_star_crosses_directories():
    assert glob_to_regex("notes/**").match("notes/sub/deeper/a.md")


def test_question_mark_matches_one_character():
    pattern = glob_to_regex("day-?.md")
    assert pattern.match("day-1.md")
    assert not pattern.match("day-10.md")


def test_regex_characters_are_literal():
    assert glob_to_regex("a+b (1).md").match("a+b (1).md")
    assert not glob_to_regex("a.md").match("abmd")


def test_excludes_win_over_includes():
    path_filter = PathFilter.from_rules(["notes/**", "!notes/private/**"])
    assert path_filter.allows("notes/ideas.md")
    assert not path_filter.allows("notes/private/diary.md")
    assert not path_filter.allows("journal/today.md")


def test_no_include_rules_allows_everything_not_excluded():
    path_filter = PathFilter.from_rules(["!templates/**"])
    assert path_filter.allows("anything/at/all.md")
    assert not path_filter.allows("templates/daily.md")


def test_patterns_match_without_markdown_extension():
    assert PathFilter.from_rules(["inbox/todo"]).allows("inbox/todo.md")


def test_windows_separators_are_normalized():
    assert normalize_vault_path("notes\\sub//a.md") == "notes/sub/a.md"
    assert PathFilter.from_rules(["notes/sub/*"]).allows("notes\\sub\\a.md")


def test_external_id_and_title_from_path():
    assert build_external_id("vault-1", "a\\b.md") == "vault-1::a/b.md"
    assert title_from_path("folder/My Note.md") == "My Note"


def test_apply_scope_filter_splits_passed_and_rejected():
    items = [
        {"op": "upsert", "externalId": "a", "metadata": {"path": "notes\\a.md"}},
        {"op": "upsert", "externalId": "b", "metadata": {"path": "private/b.md"}},
        {"op": "upsert", "externalId": "c", "metadata": {}},
        {"op": "delete", "externalId": "d", "metadata": {"path": "notes/d.md"}},
    ]

    passed, rejected = apply_scope_filter(items, ["notes/**"], NOW)

    assert [item["externalId"] for item in passed] == ["a", "d"]
    assert passed[0]["metadata"]["path"] == "notes/a.md"
    assert passed[0]["title"] == "a"
    assert passed[1]["deletedAtSource"] == to_iso(NOW)
    assert {(r.external_id, r.reason) for r in rejected} == {
        ("b", RejectReason.OUT_OF_SCOPE),
        ("c", RejectReason.MISSING_PATH),
    }


def test_apply_scope_filter_keeps_sent_title_and_does_not_mutate_input():
    raw = {"op": "upsert", "externalId": "a", "title": "Custom", "metadata": {"path": "a.md"}}

    passed, _ = apply_scope_filter([raw], [], NOW)

    assert passed[0]["title"] == "Custom"
    assert passed[0] is not raw
