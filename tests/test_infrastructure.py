"""
Infrastructure tests: configuration, structured logging, the audit chain,
the event bus, access control and input validators.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import io
import json
import logging

import pytest
import yaml

from iyield.access import AccessControl
from iyield.config import ConfigError, ConfigManager, ConfigValidationError, IYieldConfig
from iyield.events import Deposited, EventBus, EventHandlerError, Withdrawn
from iyield.hardening import (
    InvariantChecker,
    InvariantViolation,
    ManualClock,
    Unauthorized,
    ValidationError,
    Validators,
)
from iyield.observability import AuditLogger, Layer, configure_logging, get_logger
from iyield.system import IYieldSystem

from conftest import ADMIN


class TestConfigManager:
    """YAML files, environment binding and validation."""

    def test_defaults(self):
        manager = ConfigManager()
        assert manager.get("oracle.min_attestors") == 2
        assert manager.get("vault.max_ltv_bps") == 8_000
        assert manager.validate() == []

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "iyield.yaml"
        path.write_text(yaml.safe_dump({
            "oracle": {"min_attestors": 3},
            "compliance": {"blocked_jurisdictions": ["KP"]},
            "vault": {"advance_rate_bps": 6_500},
        }))
        manager = ConfigManager()
        manager.load_from_file(path)
        assert manager.get("oracle.min_attestors") == 3
        assert manager.get("compliance.blocked_jurisdictions") == ["KP"]
        assert manager.get("vault.advance_rate_bps") == 6_500

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "iyield.yaml"
        path.write_text("oracle:\n  quorum: 3\n")
        with pytest.raises(ConfigError):
            ConfigManager().load_from_file(path)

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "iyield.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError):
            ConfigManager().load_from_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            ConfigManager().load_from_file(tmp_path / "absent.yaml")

    def test_invalid_value_rejected_on_set(self):
        manager = ConfigManager()
        with pytest.raises(ConfigValidationError):
            manager.set("vault.max_ltv_bps", 10_001)
        with pytest.raises(ConfigError):
            manager.set("vault.leverage", 2)

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("IYIELD_ORACLE_MIN_ATTESTORS", "5")
        monkeypatch.setenv("IYIELD_COMPLIANCE_BLOCKED", "KP,IR")
        manager = ConfigManager()
        manager.set("oracle.min_attestors", 3)
        assert manager.get("oracle.min_attestors") == 5
        assert manager.get("compliance.blocked_jurisdictions") == ["KP", "IR"]

    def test_unparseable_environment_reported(self, monkeypatch):
        monkeypatch.setenv("IYIELD_VAULT_MAX_LTV", "high")
        errors = ConfigManager().validate()
        assert any(e.startswith("vault.max_ltv_bps") for e in errors)

    def test_cross_field_validation(self):
        manager = ConfigManager()
        manager.set("vault.max_ltv_bps", 9_500)
        errors = manager.validate()
        assert errors == ["vault: max_ltv_bps must not exceed liquidation_threshold_bps"]

    def test_system_refuses_invalid_config(self):
        cfg = IYieldConfig()
        cfg.vault.max_ltv_bps.set(9_500)
        with pytest.raises(ConfigValidationError):
            IYieldSystem(admins=[ADMIN], config=cfg)

    def test_system_from_file(self, tmp_path):
        path = tmp_path / "iyield.yaml"
        path.write_text("oracle:\n  min_attestors: 4\n")
        system = IYieldSystem.from_config_file(path, admins=[ADMIN], clock=ManualClock())
        assert system.oracle.get_attestor_threshold() == (4, 0)

    def test_yaml_export(self):
        data = yaml.safe_load(IYieldConfig().to_yaml())
        assert data["vault"]["liquidation_threshold_bps"] == 9_000
        assert data["observability"]["log_format"] == "json"

    def test_schema_export(self):
        schema = ConfigManager().export_schema()
        entry = schema["properties"]["oracle"]["min_attestors"]
        assert entry["env_var"] == "IYIELD_ORACLE_MIN_ATTESTORS"
        assert entry["type"] == "int"

    def test_reload_notifies_watchers(self, tmp_path):
        path = tmp_path / "iyield.yaml"
        path.write_text("oracle:\n  min_attestors: 3\n")
        manager = ConfigManager()
        manager.load_from_file(path)
        seen = []
        manager.watch(lambda cfg: seen.append(cfg.oracle.min_attestors.get()))
        path.write_text("oracle:\n  min_attestors: 4\n")
        manager.reload()
        assert seen == [4]


class TestStructuredLogging:
    """JSON log lines carry layer, operation and context."""

    @pytest.fixture
    def stream(self):
        stream = io.StringIO()
        configure_logging(level="debug", fmt="json", stream=stream)
        yield stream
        root = logging.getLogger("iyield")
        for handler in list(root.handlers):
            root.removeHandler(handler)
        root.setLevel(logging.NOTSET)

    def test_info_line(self, stream):
        get_logger("risk", Layer.VAULT).info("Policies deposited", operation="deposit", account="alice")
        line = json.loads(stream.getvalue().splitlines()[-1])
        assert line["logger"] == "iyield.vault.risk"
        assert line["layer"] == "vault"
        assert line["operation"] == "deposit"
        assert line["context"] == {"account": "alice"}

    def test_rejection_line(self, stream):
        error = Unauthorized("caller lacks the administrative capability", caller="mallory")
        get_logger("consensus", Layer.ORACLE).rejected("add_attestor", error, caller="mallory")
        line = json.loads(stream.getvalue().splitlines()[-1])
        assert line["level"] == "warning"
        assert line["error_code"] == "Unauthorized"
        assert line["context"]["reason"] == "caller lacks the administrative capability"

    def test_component_rejections_are_logged(self, stream, system):
        with pytest.raises(Unauthorized):
            system.oracle.set_min_attestors("mallory", 1)
        lines = [json.loads(l) for l in stream.getvalue().splitlines()]
        assert any(l.get("error_code") == "Unauthorized" for l in lines)


class TestAuditChain:
    """Hash-chained audit events detect tampering."""

    def test_chain_verifies(self):
        audit = AuditLogger(clock=ManualClock())
        audit.log("ops", "add_carrier", "carrier", "C1", rating=800)
        audit.log("ops", "register_policy", "policy", "P1")
        assert audit.verify_chain() == (True, None)
        assert len(audit) == 2
        assert audit.export()[1]["previous_digest"] == audit.export()[0]["digest"]

    def test_tampered_details_detected(self):
        audit = AuditLogger(clock=ManualClock())
        audit.log("ops", "add_carrier", "carrier", "C1", rating=800)
        audit.log("ops", "add_carrier", "carrier", "C2", rating=500)
        audit.get_events()[0].details["rating"] = 1000
        assert audit.verify_chain() == (False, 0)

    def test_removed_event_detected(self):
        audit = AuditLogger(clock=ManualClock())
        for i in range(3):
            audit.log("ops", "grant", "access", f"a{i}")
        del audit._events[1]
        assert audit.verify_chain() == (False, 1)

    def test_query_filters(self):
        audit = AuditLogger(clock=ManualClock())
        audit.log("ops", "grant", "access", "a1")
        audit.log("other", "grant", "access", "a2")
        audit.log("ops", "revoke", "access", "a1")
        assert [e.resource_id for e in audit.get_events(actor="ops")] == ["a1", "a1"]
        assert len(audit.get_events(action="grant", limit=1)) == 1


class TestEventBus:
    """Subscription, ordering and isolation of handler failures."""

    def test_typed_subscription_and_history(self):
        bus = EventBus()
        seen = []

        @bus.subscribe(Deposited)
        def on_deposit(event):
            seen.append(event.account)

        bus.publish(Deposited(account="alice"))
        bus.publish(Withdrawn(account="alice"))
        assert seen == ["alice"]
        assert [e.event_type for e in bus.history()] == ["Deposited", "Withdrawn"]
        assert len(bus.history(Withdrawn)) == 1

    def test_priority_and_filter(self):
        bus = EventBus()
        order = []
        bus.subscribe(Deposited, priority=1)(lambda e: order.append("low"))
        bus.subscribe(Deposited, priority=10)(lambda e: order.append("high"))
        bus.subscribe(filter_func=lambda e: e.event_type == "Withdrawn")(lambda e: order.append("any"))
        bus.publish(Deposited(account="alice"))
        bus.publish(Withdrawn(account="alice"))
        assert order == ["high", "low", "any"]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []

        def handler(event):
            seen.append(event)

        bus.subscribe(Deposited)(handler)
        assert bus.unsubscribe(handler)
        bus.publish(Deposited())
        assert seen == []
        assert not bus.unsubscribe(handler)

    def test_handler_failure_is_isolated(self):
        errors = []
        bus = EventBus(on_error=errors.append)
        seen = []

        @bus.subscribe(Deposited, priority=5)
        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(Deposited)(seen.append)
        bus.publish(Deposited(account="alice"))
        assert len(seen) == 1
        assert isinstance(errors[0], EventHandlerError)
        assert bus.metrics["error_count"] == 1
        assert bus.metrics["published_count"] == 1

    def test_history_limit(self):
        bus = EventBus(history_limit=2)
        for i in range(5):
            bus.publish(Withdrawn(tokens_burned=i))
        assert [e.tokens_burned for e in bus.history()] == [3, 4]

    def test_event_digest_is_content_addressed(self):
        a = Deposited(event_id="e1", account="alice", policy_ids=["P1"])
        b = Deposited(event_id="e1", account="alice", policy_ids=["P1"])
        c = Deposited(event_id="e1", account="bob", policy_ids=["P1"])
        assert a.digest() == b.digest() != c.digest()
        assert json.loads(a.to_json())["event_type"] == "Deposited"


class TestAccessControl:
    """Administrative capability."""

    def test_requires_an_admin(self):
        with pytest.raises(ValueError):
            AccessControl([])

    def test_grant_and_revoke(self):
        access = AccessControl([ADMIN])
        access.grant(ADMIN, "deputy")
        assert access.is_admin("deputy")
        access.revoke("deputy", ADMIN)
        assert access.admins == frozenset({"deputy"})
        with pytest.raises(ValueError):
            access.revoke("deputy", "deputy")

    def test_denials_are_audited(self):
        audit = AuditLogger(clock=ManualClock())
        access = AccessControl([ADMIN], audit=audit)
        with pytest.raises(Unauthorized):
            access.grant("mallory", "mallory")
        denied = audit.get_events(actor="mallory")
        assert denied[0].outcome == "denied"
        assert denied[0].action == "grant_admin"


class TestValidators:
    """Input validation and invariant checks."""

    @pytest.mark.parametrize("value", ["", " ", "-lead", "a b", 7, None, "x" * 129])
    def test_bad_identifiers(self, value):
        assert not Validators.validate_identifier(value, "account").is_valid

    def test_identifier_sanitized(self):
        assert Validators.validate_identifier(" alice ", "account").sanitized_value == "alice"

    def test_digest_lowercased(self):
        result = Validators.validate_digest("AB" * 32)
        assert result.sanitized_value == "ab" * 32
        assert not Validators.validate_digest("ab" * 31).is_valid

    @pytest.mark.parametrize("value", [True, 1.0, "1", -1])
    def test_bad_amounts(self, value):
        assert not Validators.validate_amount(value).is_valid

    def test_error_carries_field(self):
        with pytest.raises(ValidationError) as exc:
            Validators.validate_bps(10_001, "max_ltv_bps").raise_if_invalid()
        assert exc.value.to_dict()["kind"] == "ValidationError"

    def test_invariant_checker(self):
        InvariantChecker.check_sum_matches("ok", {"a": 1, "b": 2}, 3)
        with pytest.raises(InvariantViolation):
            InvariantChecker.check_sum_matches("bad", {"a": 1}, 2)
        with pytest.raises(InvariantViolation):
            InvariantChecker.check_monotonic_increase("ts", 5, 5)

    def test_manual_clock(self):
        clock = ManualClock(start=100)
        assert clock.advance(5) == 105
        clock.set(7)
        assert clock.now() == 7
