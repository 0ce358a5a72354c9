"""
Digest email rendering (subject, plain text and HTML).
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import datetime

from brainbits.config import DIGEST_EXCERPT_MAX_LENGTH
from brainbits.digest.repository import SnapshotItem
from brainbits.ingestion.content import ContentEncodingError, decode_content
from brainbits.observability.logging import get_logger

logger = get_logger(__name__)

NO_PREVIEW = "No preview available."
UNTITLED = "Untitled note"
FOOTER = "Brain Bits · Sent to help you retain what matters."

SOURCE_LABELS = {"obsidian": "Obsidian", "notion": "Notion"}

_MARKDOWN_PATTERNS = [
    (re.compile(r"```.*?```", re.DOTALL), ""),
    (re.compile(r"`[^`]*`"), ""),
    (re.compile(r"!\[[^\]]*\]\([^)]*\)"), ""),
    (re.compile(r"\[([^\]]+)\]\([^)]*\)"), r"\1"),
    (re.compile(r"<[^>]+>"), ""),
    (re.compile(r"[#>*_~`]"), ""),
    (re.compile(r"\s+"), " "),
]


@dataclass(frozen=True)
class DigestEmailItem:
    document_id: int
    title: str
    excerpt: str
    source_kind: str | None = None
    source_name: str | None = None

    @property
    def source_label(self) -> str:
        if not self.source_kind:
            return ""
        kind = SOURCE_LABELS.get(self.source_kind, self.source_kind.title())
        return f"{kind} · {self.source_name}" if self.source_name else kind


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


def strip_markdown(content: str) -> str:
    text = content
    for pattern, replacement in _MARKDOWN_PATTERNS:
        text = pattern.sub(replacement, text)
    return text.strip()


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return f"{text[: max_length - 3].strip()}..."


def build_excerpt(content: str, max_length: int = DIGEST_EXCERPT_MAX_LENGTH) -> str:
    plain = strip_markdown(content)
    if not plain:
        return NO_PREVIEW
    return truncate_text(plain, max_length)


def to_email_item(item: SnapshotItem) -> DigestEmailItem:
    """Decode a snapshot item's content into its display form."""
    try:
        content = decode_content(item.content_ciphertext, item.content_alg)
    except (ContentEncodingError, ValueError) as e:
        logger.warning("Could not decode document %s for digest: %s", item.document_id, e)
        content = ""
    return DigestEmailItem(
        document_id=item.document_id,
        title=(item.title or "").strip() or UNTITLED,
        excerpt=build_excerpt(content),
        source_kind=item.source_kind,
        source_name=item.source_name,
    )


def frequency_label(frequency: str) -> str:
    key = getattr(frequency, "value", frequency)
    if key == "weekly":
        return "Weekly"
    if key == "monthly":
        return "Monthly"
    return "Daily"


def build_digest_email(
    items: list[DigestEmailItem],
    frequency: str,
    frontend_url: str,
    user_name: str | None = None,
    digest_date: datetime | None = None,
    is_first_digest: bool = False,
    total_note_count: int = 0,
    source_label: str | None = None,
) -> RenderedEmail:
    """
    Render one digest.

    The first digest a user receives opens with a short line about how many
    notes were imported and from where.
    """
    count = len(items)
    label = frequency_label(frequency)
    subject = f"{label} Brain Bits ({count} note{'' if count == 1 else 's'})"
    greeting_name = (user_name or "").strip() or "there"
    view_url = f"{frontend_url.rstrip('/')}/dash"

    intro = f"Here is your {label.lower()} selection of notes ({count} total)."
    if is_first_digest:
        origin = f" from {source_label}" if source_label else ""
        intro = (
            f"This is your first Brain Bits digest. We picked {count} of your "
            f"{total_note_count} notes{origin} to revisit."
        )

    text_items = "\n\n".join(
        f"- {item.title}{f' ({item.source_label})' if item.source_label else ''}\n  {item.excerpt}"
        for item in items
    )
    text = f"Hello {greeting_name},\n\n{intro}\n\n{text_items}\n\nView this digest in the app: {view_url}\n"

    date_line = f"{label} digest · {digest_date.strftime('%b %d, %Y')}" if digest_date else f"{label} digest"
    html_items = "".join(_render_html_item(item) for item in items)
    body = f"""<!DOCTYPE html>
<html lang="en">
  <head><meta charset="utf-8" /><title>{html.escape(subject)}</title></head>
  <body style="margin:0;padding:24px;font-family:Arial,sans-serif;color:#1f2937;background:#f5f8ff;">
    <div style="max-width:600px;margin:0 auto;background:#fff;border-radius:16px;padding:32px;">
      <div style="font-size:12px;letter-spacing:0.18em;text-transform:uppercase;color:#6b7280;">{html.escape(date_line)}</div>
      <h1 style="font-size:28px;margin:8px 0;">Hello {html.escape(greeting_name)},</h1>
      <p style="font-size:16px;color:#6b7280;">{html.escape(intro)}</p>
      {html_items}
      <p><a href="{html.escape(view_url, quote=True)}" style="color:#5b9cf0;font-weight:600;">View this digest in the app</a></p>
      <p style="font-size:12px;color:#6b7280;">{html.escape(FOOTER)}</p>
    </div>
  </body>
</html>"""
    return RenderedEmail(subject=subject, text=text, html=body)


def _render_html_item(item: DigestEmailItem) -> str:
    source = (
        f'<div style="font-size:12px;color:#6b7280;text-transform:uppercase;">'
        f"{html.escape(item.source_label)}</div>"
        if item.source_label
        else ""
    )
    return (
        '<div style="border:1px solid #e5e7eb;border-radius:16px;padding:16px;margin-bottom:16px;">'
        f'<div style="font-size:16px;font-weight:600;">{html.escape(item.title)}</div>'
        f'<div style="font-size:15px;color:#6b7280;">{html.escape(item.excerpt)}</div>'
        f"{source}</div>"
    )
