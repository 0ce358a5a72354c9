from __future__ import annotations

from brainbits.accounts.models import EmailFrequency
from brainbits.billing.plans import (
    PLANS,
    PlanName,
    clamp_interval_to_limits,
    clamp_notes_per_digest,
    get_paying_user_ids,
    get_plan_limits,
    is_billing_enabled,
    is_paying,
    resolve_effective_frequency,
)

FREE = PLANS[PlanName.FREE]
PRO = PLANS[PlanName.PRO]


class TestPlanLimits:
    """Tests for plan limits and the clamps applied to user settings"""

    def test_plan_limits(self):
        """Pro lifts the single-source limit"""
        assert get_plan_limits(False) is FREE
        assert get_plan_limits(True) is PRO
        assert FREE.max_sources == 1
        assert PRO.max_sources is None

    def test_daily_is_a_paid_feature(self):
        """Free users asking for daily digests get weekly ones"""
        assert resolve_effective_frequency("daily", is_pro=False) == "weekly"
        assert resolve_effective_frequency(EmailFrequency.DAILY, is_pro=False) == "weekly"
        assert resolve_effective_frequency("daily", is_pro=True) == "daily"
        assert resolve_effective_frequency(EmailFrequency.MONTHLY, is_pro=False) == "monthly"

    def test_clamp_notes_per_digest(self):
        assert clamp_notes_per_digest(20, FREE) == 5
        assert clamp_notes_per_digest(20, PRO) == 20
        assert clamp_notes_per_digest(0, PRO) == 1

    def test_clamp_interval_to_limits(self):
        """Missing intervals default to a week, others are clamped to the plan range"""
        assert clamp_interval_to_limits(1, FREE) == 3
        assert clamp_interval_to_limits(1, PRO) == 1
        assert clamp_interval_to_limits(None, FREE) == 7
        assert clamp_interval_to_limits(90, PRO) == 30


class TestPayingUsers:
    """Tests for resolving Pro users from billing_subscriptions"""

    def test_paying_users_come_from_subscriptions(self, make_user, make_subscription):
        """Active and trialing subscriptions count, canceled ones do not"""
        for user_id in ("pro", "trial", "lapsed", "free"):
            make_user(user_id)
        make_subscription("pro", "active")
        make_subscription("trial", "trialing")
        make_subscription("lapsed", "canceled")

        assert is_billing_enabled()
        assert get_paying_user_ids() == {"pro", "trial"}
        assert get_paying_user_ids(["pro", "free"]) == {"pro"}
        assert get_paying_user_ids([]) == set()
        assert is_paying("trial")
        assert not is_paying("lapsed")

    def test_self_hosted_treats_everyone_as_paying(self, make_user, monkeypatch):
        """Self-hosted deployments have no billing"""
        make_user("a")
        make_user("b")
        monkeypatch.setenv("DEPLOYMENT_MODE", "self-hosted")

        assert not is_billing_enabled()
        assert get_paying_user_ids() == {"a", "b"}
        assert get_paying_user_ids(["zed"]) == {"zed"}
