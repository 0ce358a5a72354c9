"""
Scope filtering for vault-style sources (Obsidian).

Notion items arrive already restricted to the selected databases, so only
path-based sources go through this filter. Rules are glob patterns over
vault-relative paths; a rule starting with "!" excludes, and excludes win.
"""

from __future__ import annotations

import posixpath
import re
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from brainbits.ingestion.types import ItemResult, ItemStatus, RejectReason, raw_external_id
from brainbits.utils.dates import to_iso

_DUPLICATE_SLASHES = re.compile(r"/{2,}")


def normalize_vault_path(path: str) -> str:
    """Forward slashes only, no repeated separators."""
    return _DUPLICATE_SLASHES.sub("/", path.replace("\\", "/"))


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """
    Compile a vault glob.

    "**" matches across directories, "*" within one path segment, "?" a
    single non-separator character. Everything else is literal.
    """
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            if pattern[i : i + 2] == "**":
                parts.append(".*")
                i += 2
                continue
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("^" + "".join(parts) + "$")


def strip_markdown_extension(path: str) -> str:
    return path[:-3] if path.lower().endswith(".md") else path


class PathFilter:
    """Include/exclude glob matcher. No include rules means everything is included."""

    def __init__(self, include: Iterable[str] = (), exclude: Iterable[str] = ()):
        self.include = [glob_to_regex(normalize_vault_path(p)) for p in include if p]
        self.exclude = [glob_to_regex(normalize_vault_path(p)) for p in exclude if p]

    @classmethod
    def from_rules(cls, rules: Iterable[str]) -> PathFilter:
        include: list[str] = []
        exclude: list[str] = []
        for rule in rules:
            rule = rule.strip()
            if rule.startswith("!"):
                exclude.append(rule[1:])
            elif rule:
                include.append(rule)
        return cls(include, exclude)

    def _matches_any(self, patterns: list[re.Pattern[str]], path: str) -> bool:
        candidates = {path, strip_markdown_extension(path)}
        return any(p.match(c) for p in patterns for c in candidates)

    def allows(self, path: str) -> bool:
        normalized = normalize_vault_path(path)
        if self.exclude and self._matches_any(self.exclude, normalized):
            return False
        if not self.include:
            return True
        return self._matches_any(self.include, normalized)


def title_from_path(path: str) -> str:
    return strip_markdown_extension(posixpath.basename(path))


def build_external_id(vault_id: str, path: str) -> str:
    """Stable id for a vault file: "<vault>::<normalized path>"."""
    return f"{vault_id}::{normalize_vault_path(path)}"


def apply_scope_filter(
    items: list[dict[str, Any]],
    rules: Iterable[str],
    fallback_deleted_at: datetime,
) -> tuple[list[dict[str, Any]], list[ItemResult]]:
    """
    Filter raw vault items against scope rules.

    Returns (items to ingest, rejections). Passed items are copies with the
    normalized path in metadata["path"], a title derived from the filename
    when none was sent, and deletedAtSource filled for deletes that lack one.
    """
    path_filter = PathFilter.from_rules(rules)
    passed: list[dict[str, Any]] = []
    rejected: list[ItemResult] = []

    for raw in items:
        external_id = raw_external_id(raw)
        metadata = raw.get("metadata") if isinstance(raw, dict) else None
        path = metadata.get("path") if isinstance(metadata, dict) else None

        if not isinstance(path, str) or not path.strip():
            rejected.append(ItemResult(external_id, ItemStatus.REJECTED, RejectReason.MISSING_PATH))
            continue

        path = normalize_vault_path(path.strip())
        if not path_filter.allows(path):
            rejected.append(ItemResult(external_id, ItemStatus.REJECTED, RejectReason.OUT_OF_SCOPE))
            continue

        item = dict(raw)
        item["metadata"] = {**metadata, "path": path}
        if not item.get("title"):
            item["title"] = title_from_path(path)
        if item.get("op") == "delete" and not (
            item.get("deletedAtSource") or item.get("deleted_at_source")
        ):
            item["deletedAtSource"] = to_iso(fallback_deleted_at)
        passed.append(item)

    return passed, rejected
