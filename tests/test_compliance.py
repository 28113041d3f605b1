"""
Compliance registry and transfer gate tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest

from iyield.compliance import (
    ComplianceLevel,
    RestrictionFlag,
    RestrictionReason,
)
from iyield.events import ComplianceChanged, JurisdictionBlocked as JurisdictionBlockedEvent
from iyield.hardening import (
    InvalidDuration,
    JurisdictionBlocked,
    LockupActive,
    NonCompliant,
    RegSRestricted,
    Unauthorized,
    ValidationError,
)

from conftest import ADMIN, DAY, START


class TestComplianceLevel:
    """Ordering and parsing of levels."""

    def test_total_order(self):
        ordered = [
            ComplianceLevel.NONE,
            ComplianceLevel.BASIC,
            ComplianceLevel.STANDARD,
            ComplianceLevel.PREMIUM,
            ComplianceLevel.INSTITUTIONAL,
        ]
        assert sorted(reversed(ordered)) == ordered
        assert ComplianceLevel.BASIC < ComplianceLevel.PREMIUM
        assert ComplianceLevel.INSTITUTIONAL >= ComplianceLevel.INSTITUTIONAL

    def test_parse(self):
        assert ComplianceLevel.parse(" Premium ") is ComplianceLevel.PREMIUM
        assert ComplianceLevel.parse(ComplianceLevel.BASIC) is ComplianceLevel.BASIC
        with pytest.raises(ValidationError):
            ComplianceLevel.parse("platinum")
        with pytest.raises(ValidationError):
            ComplianceLevel.parse(3)


class TestRegistry:
    """Administrative setters and read-time evaluation."""

    def test_unknown_account_is_not_compliant(self, system):
        registry = system.registry
        assert registry.is_compliant("nobody") is False
        assert registry.effective_level("nobody") is ComplianceLevel.NONE
        assert registry.get_record("nobody") is None

    def test_grant_then_expire(self, pool, system, clock):
        pool.onboard("alice", ComplianceLevel.PREMIUM, duration=100)
        assert system.registry.is_compliant("alice")
        assert system.registry.effective_level("alice") is ComplianceLevel.PREMIUM
        clock.advance(99)
        assert system.registry.is_compliant("alice")
        clock.advance(1)
        assert not system.registry.is_compliant("alice")
        assert system.registry.effective_level("alice") is ComplianceLevel.NONE
        # stored record is untouched
        assert system.registry.get_record("alice").level is ComplianceLevel.PREMIUM

    def test_risk_score_ceiling(self, pool, system):
        pool.onboard("alice")
        system.registry.set_risk_score(ADMIN, "alice", 69)
        assert system.registry.is_compliant("alice")
        system.registry.set_risk_score(ADMIN, "alice", 70)
        assert not system.registry.is_compliant("alice")

    def test_risk_score_bounds(self, system):
        with pytest.raises(ValidationError):
            system.registry.set_risk_score(ADMIN, "alice", 101)
        with pytest.raises(ValidationError):
            system.registry.set_risk_score(ADMIN, "alice", -1)

    def test_revoke(self, pool, system):
        pool.onboard("alice")
        system.registry.revoke(ADMIN, "alice")
        record = system.registry.get_record("alice")
        assert not record.active
        assert record.level is ComplianceLevel.NONE
        assert not system.registry.is_compliant("alice")

    @pytest.mark.parametrize("duration", [0, -5, 1.5, True, "30"])
    def test_invalid_duration(self, system, duration):
        with pytest.raises(InvalidDuration):
            system.registry.set_compliant(ADMIN, "alice", ComplianceLevel.BASIC, duration)
        assert system.registry.get_record("alice") is None

    def test_cannot_grant_none(self, system):
        with pytest.raises(ValidationError):
            system.registry.set_compliant(ADMIN, "alice", ComplianceLevel.NONE, DAY)

    def test_non_admin_rejected(self, system):
        with pytest.raises(Unauthorized):
            system.registry.set_compliant("mallory", "mallory", ComplianceLevel.INSTITUTIONAL, DAY)
        with pytest.raises(Unauthorized):
            system.registry.set_jurisdiction("mallory", "alice", "US")
        assert system.registry.get_record("mallory") is None

    @pytest.mark.parametrize("call", [
        lambda r: r.set_compliant("mallory", "alice", ComplianceLevel.BASIC, 0),
        lambda r: r.set_compliant("mallory", "alice", ComplianceLevel.NONE, DAY),
        lambda r: r.set_risk_score("mallory", "alice", 101),
        lambda r: r.set_jurisdiction("mallory", "alice", "u s"),
        lambda r: r.set_rule144_lockup("mallory", "alice", -1),
    ])
    def test_authorization_checked_before_input(self, system, call):
        with pytest.raises(Unauthorized):
            call(system.registry)
        denied = system.audit.get_events(actor="mallory")
        assert [e.outcome for e in denied] == ["denied"]

    def test_jurisdiction_is_normalized(self, system):
        system.registry.set_jurisdiction(ADMIN, "alice", " us ")
        assert system.registry.jurisdiction_of("alice") == "US"
        with pytest.raises(ValidationError):
            system.registry.set_jurisdiction(ADMIN, "alice", "u s")

    def test_changes_emit_events(self, pool, system):
        pool.onboard("alice", ComplianceLevel.BASIC)
        system.registry.set_compliant(ADMIN, "alice", ComplianceLevel.PREMIUM, DAY)
        changes = [e for e in system.bus.history(ComplianceChanged) if e.attribute == "level"]
        assert [(e.old_value, e.new_value) for e in changes] == [
            ("none", "basic"),
            ("basic", "premium"),
        ]
        assert system.audit.get_events(action="set_level", resource_id="alice")

    def test_updated_at_tracks_clock(self, system, clock):
        clock.advance(42)
        system.registry.set_kyc_status(ADMIN, "alice", True)
        assert system.registry.get_record("alice").updated_at == START + 42

    def test_get_record_returns_copy(self, pool, system):
        pool.onboard("alice")
        record = system.registry.get_record("alice")
        record.risk_score = 99
        assert system.registry.get_record("alice").risk_score == 0


class TestProjections:
    """Internal details and external status."""

    def test_details(self, pool, system, clock):
        pool.onboard("alice", ComplianceLevel.STANDARD, duration=10)
        system.registry.set_rule144_lockup(ADMIN, "alice", START + 100)
        details = system.registry.get_compliance_details("alice")
        assert details.compliant and not details.expired and details.lockup_active
        clock.advance(10)
        details = system.registry.get_compliance_details("alice")
        assert details.expired and not details.compliant
        assert details.effective_level is ComplianceLevel.NONE
        assert details.to_dict()["level"] == "standard"

    def test_status(self, pool, system):
        pool.onboard("alice", jurisdiction="GB")
        system.registry.set_accredited_status(ADMIN, "alice", True)
        status = system.registry.get_compliance_status("alice")
        assert status.to_dict() == {
            "kyc_verified": True,
            "accredited": True,
            "jurisdiction": "GB",
            "lockup_until": 0,
            "restricted": False,
        }

    def test_status_restricted_when_reg_s(self, pool, system):
        pool.onboard("alice")
        system.registry.set_reg_s_restriction(ADMIN, "alice", True)
        assert system.registry.get_compliance_status("alice").restricted is True

    def test_status_of_unknown_account(self, system):
        status = system.registry.get_compliance_status("nobody")
        assert status.restricted is True
        assert status.kyc_verified is False


class TestTransferGate:
    """Ordered checks, flags and error kinds."""

    def test_compliant_parties_allowed(self, pool, system):
        pool.onboard("alice")
        pool.onboard("bob")
        decision = system.gate.can_transfer("alice", "bob", 10)
        assert decision.allowed
        assert decision.reason is RestrictionReason.NONE
        assert decision.flags == RestrictionFlag.NONE
        assert system.gate.is_compliant_transfer("alice", "bob")

    def test_sender_non_compliant(self, pool, system):
        pool.onboard("bob")
        decision = system.gate.can_transfer("alice", "bob")
        assert decision.reason is RestrictionReason.SENDER_NON_COMPLIANT
        with pytest.raises(NonCompliant):
            system.gate.require_transfer("alice", "bob")

    def test_recipient_non_compliant(self, pool, system):
        pool.onboard("alice")
        decision = system.gate.can_transfer("alice", "bob")
        assert decision.reason is RestrictionReason.RECIPIENT_NON_COMPLIANT
        assert decision.flags == RestrictionFlag.RECIPIENT_NON_COMPLIANT

    def test_both_non_compliant_sets_both_flags(self, system):
        decision = system.gate.can_transfer("alice", "bob")
        assert decision.reason is RestrictionReason.SENDER_NON_COMPLIANT
        assert decision.reasons == [
            RestrictionReason.SENDER_NON_COMPLIANT,
            RestrictionReason.RECIPIENT_NON_COMPLIANT,
        ]

    def test_blocked_jurisdiction_wins(self, pool, system):
        pool.onboard("alice", jurisdiction="KP")
        system.gate.block_jurisdiction(ADMIN, "kp")
        decision = system.gate.can_transfer("alice", "bob")
        assert decision.reason is RestrictionReason.JURISDICTION_BLOCKED
        assert RestrictionFlag.RECIPIENT_NON_COMPLIANT in decision.flags
        assert decision.to_dict()["flags"] == 1 | 4
        with pytest.raises(JurisdictionBlocked) as exc:
            system.gate.require_transfer("alice", "bob")
        assert exc.value.decision == decision

    def test_block_flips_decision_without_touching_records(self, pool, system):
        pool.onboard("alice", jurisdiction="FR")
        pool.onboard("bob", jurisdiction="US")
        before = system.registry.get_record("bob")
        assert system.gate.can_transfer("alice", "bob").allowed

        system.gate.block_jurisdiction(ADMIN, "US")
        assert system.gate.is_blocked("us")
        assert system.gate.can_transfer("alice", "bob").reason is RestrictionReason.JURISDICTION_BLOCKED
        assert system.registry.get_record("bob") == before
        assert system.registry.is_compliant("bob")

        system.gate.unblock_jurisdiction(ADMIN, "US")
        assert system.gate.can_transfer("alice", "bob").allowed
        assert [e.jurisdiction for e in system.bus.history(JurisdictionBlockedEvent)] == ["US"]

    def test_block_requires_admin(self, system):
        with pytest.raises(Unauthorized):
            system.gate.block_jurisdiction("mallory", "US")
        assert system.gate.blocked_jurisdictions == []

    def test_lockup_blocks_sender(self, pool, system, clock):
        pool.onboard("alice")
        pool.onboard("bob")
        system.registry.set_rule144_lockup(ADMIN, "alice", START + 50)
        decision = system.gate.can_transfer("alice", "bob")
        assert decision.reason is RestrictionReason.LOCKUP_ACTIVE
        assert decision.context["lockup_until"] == START + 50
        with pytest.raises(LockupActive):
            system.gate.require_transfer("alice", "bob")
        # the recipient's lockup does not matter
        assert system.gate.can_transfer("bob", "alice").allowed
        clock.advance(50)
        assert system.gate.can_transfer("alice", "bob").allowed

    def test_institutional_sender_exempt_from_lockup(self, pool, system):
        pool.onboard("fund", ComplianceLevel.INSTITUTIONAL)
        pool.onboard("bob")
        system.registry.set_rule144_lockup(ADMIN, "fund", START + 1000)
        assert system.gate.can_transfer("fund", "bob").allowed

    def test_reg_s_cross_border(self, pool, system):
        pool.onboard("alice", jurisdiction="DE")
        pool.onboard("bob", jurisdiction="US")
        pool.onboard("carol", jurisdiction="DE")
        system.registry.set_reg_s_restriction(ADMIN, "bob", True)
        decision = system.gate.can_transfer("alice", "bob")
        assert decision.reason is RestrictionReason.REG_S_RESTRICTED
        with pytest.raises(RegSRestricted):
            system.gate.require_transfer("alice", "bob")
        assert system.gate.can_transfer("alice", "carol").allowed

    def test_reg_s_same_jurisdiction_allowed(self, pool, system):
        pool.onboard("alice", jurisdiction="US")
        pool.onboard("bob", jurisdiction="US")
        system.registry.set_reg_s_restriction(ADMIN, "alice", True)
        assert system.gate.can_transfer("alice", "bob").allowed

    def test_every_failing_check_flagged(self, pool, system, clock):
        pool.onboard("alice", jurisdiction="DE", duration=10)
        system.registry.set_rule144_lockup(ADMIN, "alice", START + 100)
        system.registry.set_reg_s_restriction(ADMIN, "alice", True)
        system.registry.set_jurisdiction(ADMIN, "bob", "IR")
        system.gate.block_jurisdiction(ADMIN, "IR")
        clock.advance(10)
        decision = system.gate.can_transfer("alice", "bob", 5)
        assert int(decision.flags) == 1 | 2 | 4 | 8 | 16
        assert decision.reason is RestrictionReason.JURISDICTION_BLOCKED
        assert decision.context["amount"] == 5

    def test_admit(self, pool, system):
        assert not system.gate.admit("alice").allowed
        pool.onboard("alice", jurisdiction="CU")
        assert system.gate.admit("alice").allowed
        system.gate.block_jurisdiction(ADMIN, "CU")
        decision = system.gate.admit("alice")
        assert decision.reason is RestrictionReason.JURISDICTION_BLOCKED
        assert isinstance(decision.to_error(), JurisdictionBlocked)

    def test_configured_block_list(self, clock):
        from iyield.config import IYieldConfig
        from iyield.system import IYieldSystem

        cfg = IYieldConfig()
        cfg.compliance.blocked_jurisdictions.set(["kp", "IR"])
        system = IYieldSystem(admins=[ADMIN], config=cfg, clock=clock)
        assert system.gate.blocked_jurisdictions == ["IR", "KP"]
