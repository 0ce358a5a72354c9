"""
Per-run context for the sequence runner.

Everything a step needs (user, settings, sources, digest history, plan) is
loaded once per run for the whole batch of active rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from brainbits.accounts.models import IntegrationSummary, User, UserSettings
from brainbits.accounts.repository import ConnectionRepository, UserRepository, UserSettingsRepository
from brainbits.billing.plans import get_paying_user_ids, is_billing_enabled
from brainbits.digest.repository import DigestRepository, DigestStats


@dataclass
class SequenceContext:
    user: User | None
    settings: UserSettings
    integration_summary: IntegrationSummary
    digest_stats: DigestStats
    is_pro: bool
    billing_enabled: bool


@dataclass
class SequenceBatchContext:
    users: dict[str, User] = field(default_factory=dict)
    settings: dict[str, UserSettings] = field(default_factory=dict)
    integrations: dict[str, IntegrationSummary] = field(default_factory=dict)
    digest_stats: dict[str, DigestStats] = field(default_factory=dict)
    paying: set[str] = field(default_factory=set)
    billing_enabled: bool = True

    @classmethod
    def load(cls, user_ids: list[str], paying: set[str] | None = None) -> SequenceBatchContext:
        """Bulk-load everything for user_ids (one query per table)."""
        ids = list(dict.fromkeys(user_ids))
        return cls(
            users=UserRepository.get_many(ids),
            settings=UserSettingsRepository.get_many(ids),
            integrations=ConnectionRepository.summarize_for_users(ids),
            digest_stats=DigestRepository.sent_stats_for_users(ids),
            paying=paying if paying is not None else get_paying_user_ids(ids),
            billing_enabled=is_billing_enabled(),
        )

    def for_user(self, user_id: str) -> SequenceContext:
        return SequenceContext(
            user=self.users.get(user_id),
            settings=self.settings.get(user_id) or UserSettings(user_id=user_id),
            integration_summary=self.integrations.get(user_id) or IntegrationSummary(),
            digest_stats=self.digest_stats.get(user_id) or DigestStats(),
            is_pro=user_id in self.paying,
            billing_enabled=self.billing_enabled,
        )
