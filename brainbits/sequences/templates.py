"""
Drip sequence email content.

Every step of every sequence has one entry here, keyed by its content id
(e.g. "welcome-2"). Bodies are plain-text templates filled with
SequenceTemplateParams; the HTML part is derived from the text.
"""

from __future__ import annotations

import html
import re
from dataclasses import asdict, dataclass

from brainbits.digest.email import RenderedEmail

CHOOSE_SOURCE_PATH = "/onboarding/choose-source"
PREFERENCES_PATH = "/onboarding/preferences"
SETTINGS_PATH = "/settings"
DASHBOARD_PATH = "/dash"
SURVEY_PATH = "/feedback"
UPGRADE_PATH = "/settings?tab=billing"

SIGNATURE = "- The Brain Bits Team"
FOOTER = "Daily Brain Bits · Sent to help you retain what matters."


@dataclass
class SequenceTemplateParams:
    first_name: str
    frontend_url: str
    source_name: str | None = None
    digest_timing: str | None = None
    notes_per_digest: int = 5
    total_note_count: int = 0
    digest_count: int = 0
    is_pro: bool = False


@dataclass(frozen=True)
class SequenceEmailTemplate:
    subject: str
    preview: str
    body: str


def format_first_name(name: str | None) -> str:
    """First whitespace-separated word of the name, or "there"."""
    parts = (name or "").split()
    return parts[0] if parts else "there"


def format_digest_timing(interval_days: int) -> str:
    if interval_days <= 1:
        return "tomorrow morning"
    if interval_days <= 3:
        return "in a few days"
    if interval_days <= 7:
        return "later this week"
    if interval_days <= 14:
        return "next week"
    return "this month"


def build_frontend_url(frontend_url: str, path: str) -> str:
    base = frontend_url.rstrip("/")
    if not path.startswith("/"):
        return f"{base}/{path}"
    return f"{base}{path}"


SEQUENCE_TEMPLATES: dict[str, SequenceEmailTemplate] = {
    "welcome-1": SequenceEmailTemplate(
        subject="Welcome to Daily Brain Bits - let's connect your notes",
        preview="Your first step: connect Notion or Obsidian",
        body="""Thanks for joining Daily Brain Bits. You're one step away from rediscovering your best notes.

Daily Brain Bits sends you a curated selection of your own notes, surfaced at the right time to help you remember what matters.

Your first step: connect your notes.
Connect Notion or Obsidian: {choose_source_url}

This takes about 2 minutes. Once connected, we'll start preparing your first digest.""",
    ),
    "welcome-2": SequenceEmailTemplate(
        subject="Quick question - Notion or Obsidian?",
        preview="Connect in under 2 minutes",
        body="""A quick follow-up: where do you keep your notes?

Notion - connect via OAuth. We sync the databases and pages you pick.
Obsidian - install our plugin. Your notes stay local, synced on your terms.

Connect your notes: {choose_source_url}

Once connected, you'll receive your first digest within 24 hours.""",
    ),
    "welcome-3": SequenceEmailTemplate(
        subject="Your notes stay yours",
        preview="How we handle your data",
        body="""We noticed you haven't connected your notes yet. Totally understandable. Here's how we handle your data:

For Notion:
- We only access databases and pages you explicitly select
- The connection can be revoked anytime
- We never modify your Notion content

For Obsidian:
- You control exactly which folders get included
- Notes are only synced when the plugin runs

Privacy isn't a feature; it's the foundation.

Connect your notes: {choose_source_url}""",
    ),
    "welcome-4": SequenceEmailTemplate(
        subject="Your notes are waiting, {first_name}",
        preview="One connection, then the magic starts",
        body="""This is my last nudge (promise). You signed up for Daily Brain Bits but haven't connected your notes yet.

Here's what you're missing:
- Rediscover notes you forgot you wrote
- Surface ideas at the right time to remember them
- Build a review habit without the effort

Connect your notes: {choose_source_url}

If Brain Bits isn't right for you, no hard feelings. You can manage email preferences in settings.""",
    ),
    "onboarding-1": SequenceEmailTemplate(
        subject="Your {source_name_or_notes} are syncing",
        preview="First digest coming soon",
        body="""Great news - your {source_name_or_source} is now connected to Daily Brain Bits.

What happens next:
1. We're syncing your notes (this may take a few minutes)
2. We select your first batch of notes
3. You'll receive your first digest {digest_timing_or_soon}

While you wait, you can configure your preferences:
{preferences_url}""",
    ),
    "onboarding-2": SequenceEmailTemplate(
        subject="Your first Brain Bits digest is almost ready",
        preview="Here's what to expect",
        body="""Your first Daily Brain Bits digest is being prepared. Here's what to expect:

- {notes_per_digest} notes selected from your {source_name_or_source}
- Chosen based on age and review history
- Formatted for quick reading and recall

Pro tip: don't just skim it. Take 2 minutes to actually read the notes.

Your first digest will arrive {digest_timing_or_soon}.""",
    ),
    "onboarding-3": SequenceEmailTemplate(
        subject="Did you spot a forgotten gem?",
        preview="Your first digest just landed",
        body="""Your first Daily Brain Bits digest just landed. Did you rediscover anything interesting?

That "oh, I forgot about this!" moment is why we built Brain Bits. Your notes deserve to be remembered, not buried.

View your digest: {dashboard_url}

We'd love to hear what you think. Just reply to this email.""",
    ),
    "onboarding-4": SequenceEmailTemplate(
        subject="Quick settings to improve your digests",
        preview="2 minutes to better Brain Bits",
        body="""You've received a few digests now. Here are some ways to make Brain Bits work better for you:

1. Adjust your timing
Receive digests when you actually have time to read them.

2. Set your frequency
{frequency_note}

3. Add another source
{sources_note}

Open settings: {settings_url}""",
    ),
    "onboarding-5": SequenceEmailTemplate(
        subject="847 notes rediscovered this week",
        preview="Join the Brain Bits community",
        body="""Here's a quick stat: Brain Bits users rediscovered over 847 notes last week. That's 847 ideas that would have stayed buried.

You're part of a community of people who value their ideas enough to revisit them.
Keep reading those digests.""",
    ),
    "onboarding-6": SequenceEmailTemplate(
        subject="Two weeks in - how's DBB working for you?",
        preview="Quick check-in",
        body="""You've been using Daily Brain Bits for two weeks now. How's it going?

Take 10-second survey: {survey_url}

Your feedback helps us improve. And if something's not working, we want to fix it.

P.S. If you have specific feedback, just reply to this email. We read everything.""",
    ),
    "upgrade-1": SequenceEmailTemplate(
        subject="You've rediscovered {total_note_count} notes so far",
        preview="Here's what Pro could add",
        body="""Quick stat: you've received {digest_count} digests containing {total_note_count} notes since joining. That's {total_note_count} ideas that didn't stay buried.

What Pro adds:
- Daily digests: more frequent surfacing means better retention
- Multiple sources: connect both Notion and Obsidian

If weekly digests are working for you, stick with Free. No pressure.

See Pro features: {upgrade_url}""",
    ),
    "upgrade-2": SequenceEmailTemplate(
        subject="What $10/month gets you",
        preview="Honest comparison",
        body="""Here's an honest breakdown of Free vs Pro:

Digest frequency: Free = weekly or monthly, Pro = daily, weekly or monthly
Sources: Free = 1, Pro = unlimited
Note selection: the same for both

If weekly is enough, Free works great. If you want daily reinforcement, Pro is worth it.

Upgrade to Pro: {upgrade_url}""",
    ),
    "upgrade-3": SequenceEmailTemplate(
        subject='"I finally remember what I read"',
        preview="A Pro user's story",
        body="""I wanted to share how one Pro user, Maya, uses Daily Brain Bits.

Maya is a UX researcher with an Obsidian vault of 2,000+ notes and a daily digest at 8am.

"I used to feel guilty about all the notes I'd forgotten. Now I trust that the important ones will resurface."

Try Pro for yourself: {upgrade_url}""",
    ),
    "upgrade-4": SequenceEmailTemplate(
        subject="The #1 reason people don't upgrade (and why it's wrong)",
        preview="You might be overthinking this",
        body="""The most common reason people don't upgrade to Pro: "I don't have time to read daily emails."

Daily digests take 2-3 minutes. The question isn't "do I have time?" It's "do I have 2 minutes at a consistent time?"

Set your preferred send time in settings, and if daily feels like too much you can always switch back to weekly.

Upgrade to Pro: {upgrade_url}""",
    ),
    "upgrade-5": SequenceEmailTemplate(
        subject="This is my last email about Pro",
        preview="No more upgrade emails after this",
        body="""This is my last email about upgrading to Pro. After this, I'll stop asking.

If that's not for you, totally fine. Free is designed to be useful on its own. You'll keep getting your digests.

Upgrade to Pro - $10/month: {upgrade_url}

Either way, thanks for using Daily Brain Bits. Your notes deserve to be remembered.""",
    ),
}

_URL_PATTERN = re.compile(r"(https?://\S+)")


def _template_values(params: SequenceTemplateParams) -> dict[str, object]:
    values: dict[str, object] = asdict(params)
    values.update(
        source_name_or_notes=params.source_name or "notes",
        source_name_or_source=params.source_name or "notes source",
        digest_timing_or_soon=params.digest_timing or "soon",
        choose_source_url=build_frontend_url(params.frontend_url, CHOOSE_SOURCE_PATH),
        preferences_url=build_frontend_url(params.frontend_url, PREFERENCES_PATH),
        settings_url=build_frontend_url(params.frontend_url, SETTINGS_PATH),
        dashboard_url=build_frontend_url(params.frontend_url, DASHBOARD_PATH),
        survey_url=build_frontend_url(params.frontend_url, SURVEY_PATH),
        upgrade_url=build_frontend_url(params.frontend_url, UPGRADE_PATH),
        frequency_note=(
            "Daily, weekly, or monthly - whatever fits your rhythm."
            if params.is_pro
            else "Free plan includes weekly or monthly digests. Upgrade to Pro for daily."
        ),
        sources_note=(
            "Connect both Notion and Obsidian to get the full picture."
            if params.is_pro
            else "Pro users can connect multiple sources. Worth it if you use both."
        ),
    )
    return values


def _text_to_html(text: str, preview: str) -> str:
    paragraphs = []
    for block in text.split("\n\n"):
        escaped = html.escape(block)
        linked = _URL_PATTERN.sub(r'<a href="\1">\1</a>', escaped)
        paragraphs.append(f"<p>{linked.replace(chr(10), '<br />')}</p>")
    return (
        '<!DOCTYPE html><html lang="en"><body style="font-family:Arial,sans-serif;color:#1f2937;">'
        f'<div style="display:none;">{html.escape(preview)}</div>'
        f"{''.join(paragraphs)}"
        f'<p style="font-size:12px;color:#6b7280;">{html.escape(FOOTER)}</p>'
        "</body></html>"
    )


def build_sequence_email(email_id: str, params: SequenceTemplateParams) -> RenderedEmail:
    """
    Render one sequence step.

    Raises:
        KeyError: For an unknown content id
    """
    template = SEQUENCE_TEMPLATES.get(email_id)
    if template is None:
        raise KeyError(f"Unknown sequence email id: {email_id}")

    values = _template_values(params)
    body = template.body.format(**values)
    text = f"Hello {params.first_name},\n\n{body}\n\n{SIGNATURE}\n"
    return RenderedEmail(
        subject=template.subject.format(**values),
        text=text,
        html=_text_to_html(text, template.preview),
    )
