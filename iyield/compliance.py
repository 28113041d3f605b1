"""
iYield Compliance Registry and Transfer Compliance Gate

The registry owns one ComplianceRecord per account. The gate turns two records,
the jurisdiction block list and the clock into a TransferDecision that every
token transfer and vault operation must obtain before mutating state.

Compliance levels form a total order:

    NONE < BASIC < STANDARD < PREMIUM < INSTITUTIONAL

Records expire at read time: once `now >= expiry` the account's effective level
is NONE. No timers run.

Gate checks, in order (the first failure is the decision's reason, every
failure sets its flag):

    1. JURISDICTION_BLOCKED      either party's jurisdiction is on the block list
    2. SENDER_NON_COMPLIANT      sender not currently compliant
    3. RECIPIENT_NON_COMPLIANT   recipient not currently compliant
    4. LOCKUP_ACTIVE             sender Rule-144 lockup running (INSTITUTIONAL exempt)
    5. REG_S_RESTRICTED          cross-jurisdiction and either party Reg-S restricted

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from enum import Enum, IntFlag
from typing import Any, Dict, List, Optional, Set, Type

from iyield.access import AccessControl
from iyield.config import ComplianceConfig
from iyield.events import ComplianceChanged, EventBus, JurisdictionBlocked as JurisdictionBlockedEvent
from iyield.events import JurisdictionUnblocked
from iyield.hardening import (
    Clock,
    IYieldError,
    InvalidDuration,
    JurisdictionBlocked,
    LockupActive,
    NonCompliant,
    RegSRestricted,
    SystemClock,
    TransferRestricted,
    ValidationError,
    Validators,
)
from iyield.observability import AuditLogger, Layer, get_logger


# =============================================================================
# COMPLIANCE LEVEL
# =============================================================================

class ComplianceLevel(Enum):
    """
    Ordered compliance tiers.

    Ordering is defined on the variant itself through an explicit rank table,
    never on the string values.
    """

    NONE = "none"
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"
    INSTITUTIONAL = "institutional"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def __lt__(self, other: "ComplianceLevel") -> bool:
        if not isinstance(other, ComplianceLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "ComplianceLevel") -> bool:
        if not isinstance(other, ComplianceLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: "ComplianceLevel") -> bool:
        if not isinstance(other, ComplianceLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: "ComplianceLevel") -> bool:
        if not isinstance(other, ComplianceLevel):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any) -> "ComplianceLevel":
        if isinstance(value, ComplianceLevel):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValidationError("level", "unknown compliance level", value)


_LEVEL_RANK: Dict[ComplianceLevel, int] = {
    ComplianceLevel.NONE: 0,
    ComplianceLevel.BASIC: 1,
    ComplianceLevel.STANDARD: 2,
    ComplianceLevel.PREMIUM: 3,
    ComplianceLevel.INSTITUTIONAL: 4,
}


# =============================================================================
# RECORDS AND PROJECTIONS
# =============================================================================

@dataclass
class ComplianceRecord:
    """Everything the registry knows about one account."""
    account: str
    level: ComplianceLevel = ComplianceLevel.NONE
    expiry: int = 0
    active: bool = False
    jurisdiction: str = ""
    risk_score: int = 0
    kyc_verified: bool = False
    accredited: bool = False
    reg_s_restricted: bool = False
    lockup_until: int = 0
    updated_at: int = 0

    def is_current(self, now: int, risk_score_ceiling: int) -> bool:
        return (
            self.active
            and self.level > ComplianceLevel.NONE
            and now < self.expiry
            and self.risk_score < risk_score_ceiling
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "level": self.level.value,
            "expiry": self.expiry,
            "active": self.active,
            "jurisdiction": self.jurisdiction,
            "risk_score": self.risk_score,
            "kyc_verified": self.kyc_verified,
            "accredited": self.accredited,
            "reg_s_restricted": self.reg_s_restricted,
            "lockup_until": self.lockup_until,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ComplianceDetails:
    """Internal projection: the full record plus its read-time evaluation."""
    record: ComplianceRecord
    effective_level: ComplianceLevel
    compliant: bool
    expired: bool
    lockup_active: bool

    def to_dict(self) -> Dict[str, Any]:
        d = self.record.to_dict()
        d.update({
            "effective_level": self.effective_level.value,
            "compliant": self.compliant,
            "expired": self.expired,
            "lockup_active": self.lockup_active,
        })
        return d


@dataclass(frozen=True)
class ComplianceStatus:
    """External projection exposed to integrators."""
    kyc_verified: bool
    accredited: bool
    jurisdiction: str
    lockup_until: int
    restricted: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kyc_verified": self.kyc_verified,
            "accredited": self.accredited,
            "jurisdiction": self.jurisdiction,
            "lockup_until": self.lockup_until,
            "restricted": self.restricted,
        }


# =============================================================================
# REGISTRY
# =============================================================================

class ComplianceRegistry:
    """Per-account compliance records, mutated only by administrators."""

    def __init__(
        self,
        access: AccessControl,
        clock: Optional[Clock] = None,
        config: Optional[ComplianceConfig] = None,
        bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
    ):
        config = config or ComplianceConfig()
        self._access = access
        self._clock = clock or SystemClock()
        self._bus = bus or EventBus()
        self._audit = audit
        self._log = get_logger("registry", Layer.COMPLIANCE)
        self.risk_score_ceiling: int = config.risk_score_ceiling.get()
        self._records: Dict[str, ComplianceRecord] = {}
        self._lock = threading.RLock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def _admin(self, caller: str, operation: str) -> None:
        try:
            self._access.require_admin(caller, operation)
        except IYieldError as e:
            self._log.rejected(operation, e, caller=caller)
            raise

    def _mutate(self, caller: str, account: str, attribute: str, apply: Any) -> None:
        """Run `apply(record, now)` on a copy and commit it as one change. The caller is already authorized."""
        try:
            Validators.validate_identifier(account, "account").raise_if_invalid()
        except IYieldError as e:
            self._log.rejected(f"set_{attribute}", e, caller=caller, account=account)
            raise
        with self._lock:
            now = self._clock.now()
            current = self._records.get(account) or ComplianceRecord(account=account)
            updated = replace(current)
            apply(updated, now)
            updated.updated_at = now
            old_value = getattr(current, attribute)
            new_value = getattr(updated, attribute)
            self._records[account] = updated
        if isinstance(old_value, Enum):
            old_value, new_value = old_value.value, new_value.value
        self._log.info(
            "Compliance record updated",
            operation=f"set_{attribute}", account=account, attribute=attribute,
        )
        if self._audit:
            self._audit.log(caller, f"set_{attribute}", "compliance", account, old=old_value, new=new_value)
        self._bus.publish(ComplianceChanged(
            occurred_at=now, account=account, attribute=attribute,
            old_value=old_value, new_value=new_value,
        ))

    # -------------------------------------------------------------------------
    # administrative setters
    # -------------------------------------------------------------------------

    def set_compliant(self, caller: str, account: str, level: Any, duration: int) -> None:
        """
        Grant `level` to `account` for `duration` seconds from now.

        Raises:
            InvalidDuration: duration is not a positive integer
            ValidationError: level is NONE or unknown (use revoke to clear)
        """
        self._admin(caller, "set_compliant")
        parsed = ComplianceLevel.parse(level)
        if parsed == ComplianceLevel.NONE:
            raise ValidationError("level", "cannot grant NONE; use revoke", level)
        if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
            error = InvalidDuration("duration must be a positive number of seconds", duration=duration)
            self._log.rejected("set_compliant", error, account=account)
            raise error

        def apply(record: ComplianceRecord, now: int) -> None:
            record.level = parsed
            record.expiry = now + duration
            record.active = True

        self._mutate(caller, account, "level", apply)

    def set_risk_score(self, caller: str, account: str, score: int) -> None:
        self._admin(caller, "set_risk_score")
        Validators.validate_amount(score, "risk_score", max_value=100).raise_if_invalid()

        def apply(record: ComplianceRecord, now: int) -> None:
            record.risk_score = score

        self._mutate(caller, account, "risk_score", apply)

    def set_jurisdiction(self, caller: str, account: str, jurisdiction: str) -> None:
        self._admin(caller, "set_jurisdiction")
        result = Validators.validate_jurisdiction(jurisdiction)
        result.raise_if_invalid()
        code = result.sanitized_value

        def apply(record: ComplianceRecord, now: int) -> None:
            record.jurisdiction = code

        self._mutate(caller, account, "jurisdiction", apply)

    def set_kyc_status(self, caller: str, account: str, verified: bool) -> None:
        self._admin(caller, "set_kyc_status")

        def apply(record: ComplianceRecord, now: int) -> None:
            record.kyc_verified = bool(verified)

        self._mutate(caller, account, "kyc_verified", apply)

    def set_accredited_status(self, caller: str, account: str, accredited: bool) -> None:
        self._admin(caller, "set_accredited_status")

        def apply(record: ComplianceRecord, now: int) -> None:
            record.accredited = bool(accredited)

        self._mutate(caller, account, "accredited", apply)

    def set_reg_s_restriction(self, caller: str, account: str, restricted: bool) -> None:
        self._admin(caller, "set_reg_s_restriction")

        def apply(record: ComplianceRecord, now: int) -> None:
            record.reg_s_restricted = bool(restricted)

        self._mutate(caller, account, "reg_s_restricted", apply)

    def set_rule144_lockup(self, caller: str, account: str, lockup_until: int) -> None:
        self._admin(caller, "set_rule144_lockup")
        Validators.validate_timestamp(lockup_until, "lockup_until").raise_if_invalid()

        def apply(record: ComplianceRecord, now: int) -> None:
            record.lockup_until = lockup_until

        self._mutate(caller, account, "lockup_until", apply)

    def revoke(self, caller: str, account: str) -> None:
        self._admin(caller, "revoke")

        def apply(record: ComplianceRecord, now: int) -> None:
            record.active = False
            record.level = ComplianceLevel.NONE
            record.expiry = now

        self._mutate(caller, account, "level", apply)

    # -------------------------------------------------------------------------
    # queries
    # -------------------------------------------------------------------------

    def get_record(self, account: str) -> Optional[ComplianceRecord]:
        with self._lock:
            record = self._records.get(account)
            return replace(record) if record else None

    def is_compliant(self, account: str) -> bool:
        """Active, unexpired and under the risk ceiling. Never raises."""
        with self._lock:
            record = self._records.get(account)
        if record is None:
            return False
        return record.is_current(self._clock.now(), self.risk_score_ceiling)

    def effective_level(self, account: str) -> ComplianceLevel:
        with self._lock:
            record = self._records.get(account)
        if record is None or not record.is_current(self._clock.now(), self.risk_score_ceiling):
            return ComplianceLevel.NONE
        return record.level

    def lockup_active(self, account: str) -> bool:
        with self._lock:
            record = self._records.get(account)
        return record is not None and record.lockup_until > self._clock.now()

    def jurisdiction_of(self, account: str) -> str:
        with self._lock:
            record = self._records.get(account)
        return record.jurisdiction if record else ""

    def get_compliance_details(self, account: str) -> ComplianceDetails:
        now = self._clock.now()
        with self._lock:
            record = replace(self._records.get(account) or ComplianceRecord(account=account))
        compliant = record.is_current(now, self.risk_score_ceiling)
        return ComplianceDetails(
            record=record,
            effective_level=record.level if compliant else ComplianceLevel.NONE,
            compliant=compliant,
            expired=record.active and now >= record.expiry,
            lockup_active=record.lockup_until > now,
        )

    def get_compliance_status(self, account: str) -> ComplianceStatus:
        details = self.get_compliance_details(account)
        record = details.record
        return ComplianceStatus(
            kyc_verified=record.kyc_verified,
            accredited=record.accredited,
            jurisdiction=record.jurisdiction,
            lockup_until=record.lockup_until,
            restricted=record.reg_s_restricted or not details.compliant,
        )


# =============================================================================
# TRANSFER GATE
# =============================================================================

class RestrictionReason(Enum):
    NONE = "none"
    JURISDICTION_BLOCKED = "jurisdiction_blocked"
    SENDER_NON_COMPLIANT = "sender_non_compliant"
    RECIPIENT_NON_COMPLIANT = "recipient_non_compliant"
    LOCKUP_ACTIVE = "lockup_active"
    REG_S_RESTRICTED = "reg_s_restricted"


class RestrictionFlag(IntFlag):
    NONE = 0
    JURISDICTION_BLOCKED = 1
    SENDER_NON_COMPLIANT = 2
    RECIPIENT_NON_COMPLIANT = 4
    LOCKUP_ACTIVE = 8
    REG_S_RESTRICTED = 16


_ERROR_FOR_REASON: Dict[RestrictionReason, Type[TransferRestricted]] = {
    RestrictionReason.JURISDICTION_BLOCKED: JurisdictionBlocked,
    RestrictionReason.SENDER_NON_COMPLIANT: NonCompliant,
    RestrictionReason.RECIPIENT_NON_COMPLIANT: NonCompliant,
    RestrictionReason.LOCKUP_ACTIVE: LockupActive,
    RestrictionReason.REG_S_RESTRICTED: RegSRestricted,
}


@dataclass(frozen=True)
class TransferDecision:
    allowed: bool
    reason: RestrictionReason = RestrictionReason.NONE
    flags: RestrictionFlag = RestrictionFlag.NONE
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def reasons(self) -> List[RestrictionReason]:
        return [
            RestrictionReason[flag.name]
            for flag in RestrictionFlag
            if flag != RestrictionFlag.NONE and flag in self.flags
        ]

    def to_error(self) -> TransferRestricted:
        error_type = _ERROR_FOR_REASON[self.reason]
        return error_type(self.reason.value, decision=self, **self.context)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "flags": int(self.flags),
            "reasons": [r.value for r in self.reasons],
            "context": dict(self.context),
        }


class TransferComplianceGate:
    """
    Decision function over the registry plus the jurisdiction block list.

    `can_transfer` and `admit` are pure reads and never raise;
    `require_transfer` raises the kind matching the first failing check.
    """

    def __init__(
        self,
        registry: ComplianceRegistry,
        access: AccessControl,
        blocked_jurisdictions: Optional[List[str]] = None,
        bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self._registry = registry
        self._access = access
        self._bus = bus or EventBus()
        self._audit = audit
        self._log = get_logger("gate", Layer.COMPLIANCE)
        self._blocked: Set[str] = set()
        for code in blocked_jurisdictions or []:
            result = Validators.validate_jurisdiction(code)
            result.raise_if_invalid()
            self._blocked.add(result.sanitized_value)
        self._lock = threading.RLock()

    @property
    def registry(self) -> ComplianceRegistry:
        return self._registry

    def is_blocked(self, jurisdiction: str) -> bool:
        if not jurisdiction:
            return False
        with self._lock:
            return jurisdiction.upper() in self._blocked

    @property
    def blocked_jurisdictions(self) -> List[str]:
        with self._lock:
            return sorted(self._blocked)

    def can_transfer(self, sender: str, recipient: str, amount: int = 0) -> TransferDecision:
        registry = self._registry
        now = registry.clock.now()
        sender_record = registry.get_record(sender) or ComplianceRecord(account=sender)
        recipient_record = registry.get_record(recipient) or ComplianceRecord(account=recipient)
        ceiling = registry.risk_score_ceiling

        failures: List[RestrictionReason] = []
        if self.is_blocked(sender_record.jurisdiction) or self.is_blocked(recipient_record.jurisdiction):
            failures.append(RestrictionReason.JURISDICTION_BLOCKED)
        sender_ok = sender_record.is_current(now, ceiling)
        if not sender_ok:
            failures.append(RestrictionReason.SENDER_NON_COMPLIANT)
        if not recipient_record.is_current(now, ceiling):
            failures.append(RestrictionReason.RECIPIENT_NON_COMPLIANT)
        institutional = sender_ok and sender_record.level == ComplianceLevel.INSTITUTIONAL
        if sender_record.lockup_until > now and not institutional:
            failures.append(RestrictionReason.LOCKUP_ACTIVE)
        if (
            sender_record.jurisdiction != recipient_record.jurisdiction
            and (sender_record.reg_s_restricted or recipient_record.reg_s_restricted)
        ):
            failures.append(RestrictionReason.REG_S_RESTRICTED)

        context = {
            "sender": sender,
            "recipient": recipient,
            "amount": amount,
            "sender_jurisdiction": sender_record.jurisdiction,
            "recipient_jurisdiction": recipient_record.jurisdiction,
        }
        if not failures:
            return TransferDecision(allowed=True, context=context)

        flags = RestrictionFlag.NONE
        for failure in failures:
            flags |= RestrictionFlag[failure.name]
        if RestrictionReason.LOCKUP_ACTIVE in failures:
            context["lockup_until"] = sender_record.lockup_until
        return TransferDecision(allowed=False, reason=failures[0], flags=flags, context=context)

    def is_compliant_transfer(self, sender: str, recipient: str, amount: int = 0) -> bool:
        return self.can_transfer(sender, recipient, amount).allowed

    def require_transfer(self, sender: str, recipient: str, amount: int = 0) -> TransferDecision:
        decision = self.can_transfer(sender, recipient, amount)
        if not decision.allowed:
            error = decision.to_error()
            self._log.rejected("transfer", error, sender=sender, recipient=recipient, flags=int(decision.flags))
            raise error
        return decision

    def admit(self, account: str) -> TransferDecision:
        """Single-party admission: jurisdiction not blocked and account compliant."""
        record = self._registry.get_record(account) or ComplianceRecord(account=account)
        context = {"account": account, "jurisdiction": record.jurisdiction}
        failures: List[RestrictionReason] = []
        if self.is_blocked(record.jurisdiction):
            failures.append(RestrictionReason.JURISDICTION_BLOCKED)
        if not self._registry.is_compliant(account):
            failures.append(RestrictionReason.SENDER_NON_COMPLIANT)
        if not failures:
            return TransferDecision(allowed=True, context=context)
        flags = RestrictionFlag.NONE
        for failure in failures:
            flags |= RestrictionFlag[failure.name]
        return TransferDecision(allowed=False, reason=failures[0], flags=flags, context=context)

    def block_jurisdiction(self, caller: str, jurisdiction: str) -> None:
        self._access.require_admin(caller, "block_jurisdiction")
        result = Validators.validate_jurisdiction(jurisdiction)
        result.raise_if_invalid()
        code = result.sanitized_value
        with self._lock:
            self._blocked.add(code)
            now = self._registry.clock.now()
        self._log.info("Jurisdiction blocked", operation="block_jurisdiction", jurisdiction=code)
        if self._audit:
            self._audit.log(caller, "block_jurisdiction", "jurisdiction", code)
        self._bus.publish(JurisdictionBlockedEvent(occurred_at=now, jurisdiction=code))

    def unblock_jurisdiction(self, caller: str, jurisdiction: str) -> None:
        self._access.require_admin(caller, "unblock_jurisdiction")
        result = Validators.validate_jurisdiction(jurisdiction)
        result.raise_if_invalid()
        code = result.sanitized_value
        with self._lock:
            self._blocked.discard(code)
            now = self._registry.clock.now()
        self._log.info("Jurisdiction unblocked", operation="unblock_jurisdiction", jurisdiction=code)
        if self._audit:
            self._audit.log(caller, "unblock_jurisdiction", "jurisdiction", code)
        self._bus.publish(JurisdictionUnblocked(occurred_at=now, jurisdiction=code))
