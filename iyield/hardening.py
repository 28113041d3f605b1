"""
iYield Validation and Hardening Module

Error taxonomy, input validation, time sources and invariant enforcement shared
by every iYield component. It addresses:

1. Typed failure kinds with structured context
2. Input validation with sanitization
3. Injected clocks for lazily evaluated time-based state
4. State invariant enforcement after every mutation

Security Model:
    - All inputs are untrusted until validated
    - All digest comparisons are constant-time
    - All state mutations validate first and commit last
    - Failures carry data, not prose, so callers can match on kind

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hmac
import re
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol


# =============================================================================
# ERROR TYPES
# =============================================================================

class IYieldError(Exception):
    """
    Base exception for every iYield failure.

    `kind` names the failure, `reason` is a short human-readable explanation
    and `context` carries the structured values that caused it.
    """

    kind: str = "IYieldError"

    def __init__(self, reason: str = "", **context: Any):
        self.reason = reason or self.kind
        self.context: Dict[str, Any] = context
        super().__init__(f"{self.kind}: {self.reason}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "reason": self.reason,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, bool)) or value is None:
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if hasattr(value, "value"):
        return value.value
    return str(value)


class ValidationError(IYieldError):
    """Input failed validation."""

    kind = "ValidationError"

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}", field=field, value=value)


class Unauthorized(IYieldError):
    kind = "Unauthorized"


# Oracle

class UnknownAttestor(IYieldError):
    kind = "UnknownAttestor"


class StaleSubmission(IYieldError):
    kind = "StaleSubmission"


class DuplicateSubmission(IYieldError):
    kind = "DuplicateSubmission"


class ConflictingConsensus(IYieldError):
    kind = "ConflictingConsensus"


class StaleOracleData(IYieldError):
    kind = "StaleOracleData"


class MalformedProof(IYieldError):
    kind = "MalformedProof"


class UnknownPolicy(IYieldError):
    kind = "UnknownPolicy"


class UnknownCarrier(IYieldError):
    kind = "UnknownCarrier"


# Compliance

class InvalidDuration(IYieldError):
    kind = "InvalidDuration"


class TransferRestricted(IYieldError):
    """Base for gate denials; carries the full decision when available."""

    kind = "TransferRestricted"

    def __init__(self, reason: str = "", decision: Any = None, **context: Any):
        self.decision = decision
        super().__init__(reason, **context)


class JurisdictionBlocked(TransferRestricted):
    kind = "JurisdictionBlocked"


class NonCompliant(TransferRestricted):
    kind = "NonCompliant"


class LockupActive(TransferRestricted):
    kind = "LockupActive"


class RegSRestricted(TransferRestricted):
    kind = "RegSRestricted"


# Vault and ledger

class CompliancePending(IYieldError):
    kind = "CompliancePending"


class VintageTooYoung(IYieldError):
    kind = "VintageTooYoung"


class ConcentrationExceeded(IYieldError):
    kind = "ConcentrationExceeded"


class CarrierNotEligible(IYieldError):
    kind = "CarrierNotEligible"


class ValuationMismatch(IYieldError):
    kind = "ValuationMismatch"


class EmergencyPaused(IYieldError):
    kind = "EmergencyPaused"


class PositionAtRisk(IYieldError):
    kind = "PositionAtRisk"


class PositionLiquidated(IYieldError):
    kind = "PositionLiquidated"


class NotLiquidatable(IYieldError):
    kind = "NotLiquidatable"


class InsufficientBalance(IYieldError):
    kind = "InsufficientBalance"


class InvariantViolation(Exception):
    """State invariant violated. Indicates a bug, never a caller error."""
    pass


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise the first error if validation failed."""
        if not self.is_valid:
            raise self.errors[0]

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._:\-]{0,127}$')
    DIGEST_PATTERN = re.compile(r'^[0-9a-f]{64}$')
    JURISDICTION_PATTERN = re.compile(r'^[A-Z0-9][A-Z0-9\-]{0,15}$')

    @classmethod
    def validate_identifier(cls, value: Any, field_name: str) -> ValidationResult:
        """Validate an account, policy, carrier or subject identifier."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, "must be a string", value)
            ])
        sanitized = value.strip()
        if not cls.IDENTIFIER_PATTERN.match(sanitized):
            return ValidationResult.failure([
                ValidationError(field_name, "invalid identifier format", value)
            ])
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_digest(cls, value: Any, field_name: str = "digest") -> ValidationResult:
        """Validate a 64-char lowercase hex SHA-256 digest."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, "must be a string", value)
            ])
        sanitized = value.strip().lower()
        if not cls.DIGEST_PATTERN.match(sanitized):
            return ValidationResult.failure([
                ValidationError(field_name, "must be 64 hex characters", value)
            ])
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_jurisdiction(cls, value: Any) -> ValidationResult:
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError("jurisdiction", "must be a string", value)
            ])
        sanitized = value.strip().upper()
        if not cls.JURISDICTION_PATTERN.match(sanitized):
            return ValidationResult.failure([
                ValidationError("jurisdiction", "invalid jurisdiction code", value)
            ])
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_amount(
        cls,
        value: Any,
        field_name: str = "amount",
        allow_zero: bool = True,
        max_value: Optional[int] = None,
    ) -> ValidationResult:
        """
        Validate an integer amount in smallest-unit precision.

        Booleans and floats are rejected; amounts never carry fractions.
        """
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, "must be an integer", value)
            ])
        if value < 0:
            return ValidationResult.failure([
                ValidationError(field_name, "cannot be negative", value)
            ])
        if value == 0 and not allow_zero:
            return ValidationResult.failure([
                ValidationError(field_name, "cannot be zero", value)
            ])
        if max_value is not None and value > max_value:
            return ValidationResult.failure([
                ValidationError(field_name, f"exceeds maximum {max_value}", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_bps(cls, value: Any, field_name: str) -> ValidationResult:
        return cls.validate_amount(value, field_name, allow_zero=True, max_value=10_000)

    @classmethod
    def validate_timestamp(cls, value: Any, field_name: str = "timestamp") -> ValidationResult:
        """Validate a unix timestamp in whole seconds."""
        return cls.validate_amount(value, field_name, allow_zero=True)


# =============================================================================
# TIME SOURCES
# =============================================================================

class Clock(Protocol):
    """Source of the single "current time" every component compares against."""

    def now(self) -> int:
        ...


class SystemClock:
    """Wall-clock time in whole unix seconds."""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """Deterministic clock for tests and replays."""

    def __init__(self, start: int = 1_700_000_000):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def set(self, timestamp: int) -> None:
        with self._lock:
            self._now = timestamp

    def advance(self, seconds: int) -> int:
        with self._lock:
            self._now += seconds
            return self._now


# =============================================================================
# CRYPTOGRAPHIC HELPERS
# =============================================================================

def secure_compare_str(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(a.encode(), b.encode())


# =============================================================================
# INVARIANT ENFORCEMENT
# =============================================================================

class InvariantChecker:
    """Runtime invariant checks for ledger state."""

    @staticmethod
    def check_non_negative(field_name: str, value: Decimal) -> None:
        if value < 0:
            raise InvariantViolation(f"{field_name} cannot be negative: {value}")

    @staticmethod
    def check_sum_matches(
        field_name: str,
        parts: Dict[str, Decimal],
        total: Decimal,
        tolerance: Decimal = Decimal("0.000001"),
    ) -> None:
        """Check that the parts of a partitioned total add up to it."""
        computed = sum(parts.values(), Decimal("0"))
        if abs(computed - total) > tolerance:
            raise InvariantViolation(
                f"{field_name} out of balance: parts sum to {computed}, total is {total}"
            )

    @staticmethod
    def check_monotonic_increase(
        field_name: str,
        old_value: int,
        new_value: int,
    ) -> None:
        if new_value <= old_value:
            raise InvariantViolation(
                f"{field_name} must increase: {old_value} -> {new_value}"
            )
