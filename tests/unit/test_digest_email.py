from __future__ import annotations

from datetime import UTC, datetime

from cryptography.fernet import Fernet

from brainbits.digest.email import (
    NO_PREVIEW,
    UNTITLED,
    DigestEmailItem,
    build_digest_email,
    build_excerpt,
    strip_markdown,
    to_email_item,
    truncate_text,
)
from brainbits.digest.repository import SnapshotItem
from brainbits.ingestion.content import encode_content


def snapshot_item(content: str, title: str | None = "Note") -> SnapshotItem:
    encoded = encode_content(content)
    return SnapshotItem(
        document_id=1,
        position=1,
        content_hash_at_send="h",
        title=title,
        content_ciphertext=encoded.ciphertext,
        content_alg=encoded.alg,
        current_content_hash="h",
        deleted_at_source=None,
        source_kind="obsidian",
        source_name="Vault",
    )


def test_strip_markdown():
    text = "# Title\n\nSome **bold** [link](http://x) `code`"
    assert strip_markdown(text) == "Title Some bold link"


def test_excerpt_falls_back_to_placeholder():
    assert build_excerpt("") == NO_PREVIEW
    assert build_excerpt("```\nonly code\n```") == NO_PREVIEW


def test_truncate_text():
    assert truncate_text("short", 10) == "short"
    truncated = truncate_text("a" * 700, 640)
    assert len(truncated) == 640
    assert truncated.endswith("...")


def test_source_label():
    assert DigestEmailItem(1, "t", "e", "obsidian", "Vault").source_label == "Obsidian · Vault"
    assert DigestEmailItem(1, "t", "e", "notion").source_label == "Notion"
    assert DigestEmailItem(1, "t", "e").source_label == ""


def test_to_email_item_decodes_content():
    item = to_email_item(snapshot_item("# Hi\nthere", title="  "))

    assert item.title == UNTITLED
    assert item.excerpt == "Hi there"
    assert item.source_label == "Obsidian · Vault"


def test_undecodable_content_gets_placeholder(monkeypatch):
    monkeypatch.setenv("BRAINBITS_ENCRYPTION_KEY", Fernet.generate_key().decode())
    encrypted = snapshot_item("secret")
    monkeypatch.delenv("BRAINBITS_ENCRYPTION_KEY")

    assert to_email_item(encrypted).excerpt == NO_PREVIEW


def test_subject_counts_notes():
    one = [DigestEmailItem(1, "A", "a")]
    two = one + [DigestEmailItem(2, "B", "b")]

    assert build_digest_email(one, "weekly", "http://app.test").subject == "Weekly Brain Bits (1 note)"
    assert build_digest_email(two, "daily", "http://app.test").subject == "Daily Brain Bits (2 notes)"


def test_text_body_lists_items_and_link():
    items = [
        DigestEmailItem(1, "Stoicism", "Focus on what you control.", "obsidian", "Vault"),
        DigestEmailItem(2, "Recipes", "Bread needs time."),
    ]

    email = build_digest_email(items, "monthly", "http://app.test/", user_name="Ada")

    assert email.text.startswith("Hello Ada,\n\n")
    assert "- Stoicism (Obsidian · Vault)\n  Focus on what you control." in email.text
    assert "- Recipes\n  Bread needs time." in email.text
    assert email.text.endswith("View this digest in the app: http://app.test/dash\n")


def test_first_digest_intro():
    items = [DigestEmailItem(1, "A", "a"), DigestEmailItem(2, "B", "b")]

    email = build_digest_email(
        items,
        "weekly",
        "http://app.test",
        is_first_digest=True,
        total_note_count=40,
        source_label="Notion (Work)",
    )

    assert (
        "This is your first Brain Bits digest. We picked 2 of your 40 notes from Notion (Work) to revisit."
        in email.text
    )
    assert "Hello there," in email.text


def test_html_is_escaped_and_dated():
    items = [DigestEmailItem(1, "<script>x</script>", "a & b")]

    email = build_digest_email(
        items, "weekly", "http://app.test", digest_date=datetime(2025, 3, 10, tzinfo=UTC)
    )

    assert "&lt;script&gt;x&lt;/script&gt;" in email.html
    assert "<script>" not in email.html
    assert "a &amp; b" in email.html
    assert "Weekly digest · Mar 10, 2025" in email.html
