"""
Tests 301-315: Security-Level Gate

Clearance ordering, the default for missing levels, refusal of inactive
accounts, and the audit entries written for granted and denied checks.
"""
import itertools

import pytest

from conftest import audit_entries
from reform_tracker.rbac import SecurityLevel
from reform_tracker.services.authorization import (
    DecisionReason,
    Principal,
    check_security_level,
    evaluate_security_level,
)

LEVELS = ["limited", "standard", "high"]


class TestSecurityLevelGate:

    # ==================================================================
    # Tests 301-305: Ordering
    # ==================================================================

    @pytest.mark.parametrize("held, required", list(itertools.product(LEVELS, LEVELS)))
    def test_301_total_order(self, held, required):
        """Allowed iff the held tier ranks at least the required tier."""
        principal = Principal(id="p", role="member", security_level=held)
        decision = evaluate_security_level(principal, required)
        assert decision.allowed is (LEVELS.index(held) >= LEVELS.index(required))

    @pytest.mark.parametrize("required", LEVELS)
    def test_302_high_passes_every_gate(self, required):
        principal = Principal(id="p", role="viewer", security_level="high")
        assert evaluate_security_level(principal, required).allowed

    def test_303_limited_passes_only_limited(self):
        principal = Principal(id="p", role="sp", security_level="limited")
        assert evaluate_security_level(principal, "limited").allowed
        assert not evaluate_security_level(principal, "standard").allowed
        assert not evaluate_security_level(principal, "high").allowed

    def test_304_missing_level_defaults_to_standard(self):
        principal = Principal(id="p", role="member", security_level=None)
        assert evaluate_security_level(principal, SecurityLevel.STANDARD).allowed
        assert not evaluate_security_level(principal, SecurityLevel.HIGH).allowed

    def test_305_unknown_required_level_rejected(self):
        principal = Principal(id="p", role="member")
        with pytest.raises(ValueError):
            evaluate_security_level(principal, "cosmic")

    # ==================================================================
    # Tests 306-315: Audited decisions
    # ==================================================================

    async def test_306_standard_denied_high_and_audited(self, recorder):
        """standard vs high is denied with one high-severity entry."""
        principal = Principal(id="u-leader", role="team_leader", security_level="standard")
        decision = await check_security_level(principal, "high", recorder=recorder)
        assert not decision.allowed

        entries = await audit_entries(user_id="u-leader")
        assert len(entries) == 1
        entry = entries[0]
        assert entry.action == "security_level_denied"
        assert entry.severity == "high"
        assert entry.resource == "security_check"
        assert entry.details == {"requiredLevel": "high", "userLevel": "standard"}

    async def test_307_granted_is_audited_at_info(self, recorder):
        principal = Principal(id="u-sp", role="sp", security_level="high")
        decision = await check_security_level(principal, "high", recorder=recorder)
        assert decision.allowed

        entries = await audit_entries(user_id="u-sp")
        assert [e.action for e in entries] == ["security_level_granted"]
        assert entries[0].severity == "info"
        assert entries[0].details == {"requiredLevel": "high", "userLevel": "high"}

    async def test_308_missing_level_recorded_as_standard(self, recorder):
        principal = Principal(id="u-member", role="member", security_level=None)
        await check_security_level(principal, "high", recorder=recorder)
        entry = (await audit_entries(user_id="u-member"))[0]
        assert entry.details["userLevel"] == "standard"

    async def test_309_gate_ignores_role(self, recorder):
        """The gate is independent of the permission system."""
        principal = Principal(id="u-sp", role="sp", security_level="standard")
        decision = await check_security_level(principal, "high", recorder=recorder)
        assert not decision.allowed

    @pytest.mark.parametrize("level", LEVELS)
    def test_310_inactive_denied_at_every_tier(self, level):
        principal = Principal(id="p", role="sp", security_level="high", is_active=False)
        decision = evaluate_security_level(principal, level)
        assert not decision.allowed
        assert decision.reason is DecisionReason.ACCOUNT_INACTIVE

    async def test_311_inactive_denial_audited_as_account_inactive(self, recorder):
        principal = Principal(
            id="u-inactive-sp", role="sp", security_level="high", is_active=False
        )
        decision = await check_security_level(principal, "limited", recorder=recorder)
        assert not decision.allowed

        entries = await audit_entries(user_id="u-inactive-sp")
        assert len(entries) == 1
        entry = entries[0]
        assert entry.action == "access_denied"
        assert entry.severity == "medium"
        assert entry.details == {
            "requiredLevel": "limited",
            "userLevel": "high",
            "reason": "account_inactive",
        }
