"""
iYield Vault Risk Engine

Accepts policy deposits into the pool, issues tokens against their confirmed
cash-surrender value, and enforces carrier concentration, policy vintage and
loan-to-value limits.

Position lifecycle:

    ┌────────┐  LTV >= max_ltv   ┌─────────┐  LTV >= threshold  ┌──────────────┐
    │ ACTIVE │ ────────────────► │ AT_RISK │ ─────────────────► │ LIQUIDATABLE │
    └────────┘ ◄──────────────── └─────────┘ ◄───────────────── └──────┬───────┘
                                                                       │ liquidate to zero
                                                                       ▼
                                                                 ┌────────────┐
                                                                 │ LIQUIDATED │
                                                                 └────────────┘

LTV (bps) = tokens × 10000 / attributed CSV value. Status boundaries compare
exact integers; the reported LTV is floored.

A position holds a share of each policy it deposited. Its attributed value is
the sum of share × current confirmed policy value, so confirmed revaluations
flow into every position without bookkeeping. Carrier buckets and the pool
total are re-marked from current values at the start of every state-changing
call and checked against each other after it.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass, field, fields, replace
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from iyield.access import AccessControl
from iyield.compliance import TransferComplianceGate
from iyield.config import VaultConfig
from iyield.events import (
    Deposited,
    EmergencyPauseToggled,
    EventBus,
    Liquidated,
    VaultConfigurationUpdated,
    Withdrawn,
)
from iyield.hardening import (
    CarrierNotEligible,
    Clock,
    CompliancePending,
    ConcentrationExceeded,
    EmergencyPaused,
    IYieldError,
    InsufficientBalance,
    InvariantChecker,
    NotLiquidatable,
    PositionAtRisk,
    PositionLiquidated,
    SystemClock,
    UnknownPolicy,
    ValidationError,
    ValidationResult,
    ValuationMismatch,
    Validators,
    VintageTooYoung,
)
from iyield.observability import AuditLogger, Layer, get_logger
from iyield.oracle import OracleConsensusEngine
from iyield.token import CompliantToken


BPS = 10_000
ZERO = Decimal("0")

# Reported for positions that owe tokens against no remaining value.
LTV_UNBOUNDED = sys.maxsize

# NAV per token is reported to 18 decimal places.
NAV_QUANTUM = Decimal("1e-18")

VAULT_ADDRESS = "iyield-vault"


# =============================================================================
# DATA MODEL
# =============================================================================

class PositionStatus(Enum):
    ACTIVE = "active"
    AT_RISK = "at_risk"
    LIQUIDATABLE = "liquidatable"
    LIQUIDATED = "liquidated"


@dataclass
class VaultConfiguration:
    """Risk limits in force. Changes apply to later operations only."""
    max_carrier_concentration_bps: int = 3000
    min_policy_vintage_seconds: int = 365 * 24 * 60 * 60
    max_ltv_bps: int = 8000
    liquidation_threshold_bps: int = 9000
    advance_rate_bps: int = 7000
    liquidation_penalty_bps: int = 500
    min_carrier_rating: int = 1
    concentration_floor: int = 0
    emergency_paused: bool = False

    @classmethod
    def from_config(cls, config: VaultConfig) -> "VaultConfiguration":
        return cls(
            max_carrier_concentration_bps=config.max_carrier_concentration_bps.get(),
            min_policy_vintage_seconds=config.min_policy_vintage_seconds.get(),
            max_ltv_bps=config.max_ltv_bps.get(),
            liquidation_threshold_bps=config.liquidation_threshold_bps.get(),
            advance_rate_bps=config.advance_rate_bps.get(),
            liquidation_penalty_bps=config.liquidation_penalty_bps.get(),
            min_carrier_rating=config.min_carrier_rating.get(),
            concentration_floor=config.concentration_floor.get(),
        )

    def validate(self) -> ValidationResult:
        errors: List[ValidationError] = []
        for name in (
            "max_carrier_concentration_bps",
            "max_ltv_bps",
            "liquidation_threshold_bps",
            "advance_rate_bps",
            "liquidation_penalty_bps",
        ):
            errors.extend(Validators.validate_bps(getattr(self, name), name).errors)
        for name in ("min_policy_vintage_seconds", "concentration_floor"):
            errors.extend(Validators.validate_amount(getattr(self, name), name).errors)
        errors.extend(
            Validators.validate_amount(
                self.min_carrier_rating, "min_carrier_rating", allow_zero=False, max_value=1000
            ).errors
        )
        if not isinstance(self.emergency_paused, bool):
            errors.append(ValidationError("emergency_paused", "must be a boolean", self.emergency_paused))
        if not errors and self.max_ltv_bps > self.liquidation_threshold_bps:
            errors.append(ValidationError(
                "max_ltv_bps", "must not exceed liquidation_threshold_bps", self.max_ltv_bps
            ))
        return ValidationResult.failure(errors) if errors else ValidationResult.success(self)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class VaultPosition:
    account: str
    tokens: int = 0
    holdings: Dict[str, Decimal] = field(default_factory=dict)
    opened_at: int = 0
    liquidated: bool = False


@dataclass(frozen=True)
class PositionSnapshot:
    """Read-only view of a position valued at current policy values."""
    account: str
    tokens: int
    csv_value: int
    ltv_bps: int
    status: PositionStatus
    holdings: Dict[str, str]
    opened_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "tokens": self.tokens,
            "csv_value": self.csv_value,
            "ltv_bps": self.ltv_bps,
            "status": self.status.value,
            "holdings": dict(self.holdings),
            "opened_at": self.opened_at,
        }


@dataclass(frozen=True)
class LiquidationResult:
    account: str
    liquidator: str
    tokens_seized: int
    csv_released: int
    remaining_tokens: int
    status: PositionStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "liquidator": self.liquidator,
            "tokens_seized": self.tokens_seized,
            "csv_released": self.csv_released,
            "remaining_tokens": self.remaining_tokens,
            "status": self.status.value,
        }


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


# =============================================================================
# RISK ENGINE
# =============================================================================

class VaultRiskEngine:
    """
    Positions, concentration buckets, LTV and liquidation.

    Every state-changing call validates completely before it mints, burns or
    touches a position, so a failure leaves the vault and the ledger as they were.
    """

    def __init__(
        self,
        oracle: OracleConsensusEngine,
        gate: TransferComplianceGate,
        token: CompliantToken,
        access: AccessControl,
        clock: Optional[Clock] = None,
        config: Optional[VaultConfig] = None,
        bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
        address: str = VAULT_ADDRESS,
    ):
        self._oracle = oracle
        self._gate = gate
        self._token = token
        self._access = access
        self._clock = clock or SystemClock()
        self._bus = bus or EventBus()
        self._audit = audit
        self._log = get_logger("risk", Layer.VAULT)
        self.address = address

        self._config = VaultConfiguration.from_config(config or VaultConfig())
        self._config.validate().raise_if_invalid()

        self._positions: Dict[str, VaultPosition] = {}
        self._buckets: Dict[str, Decimal] = {}
        self._total = ZERO
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    def _reject(self, operation: str, error: IYieldError, **context: Any) -> IYieldError:
        self._log.rejected(operation, error, **context)
        return error

    def _record(self, actor: str, action: str, resource_id: str, **details: Any) -> None:
        if self._audit:
            self._audit.log(actor, action, "vault", resource_id, **details)

    def _policy_value(self, policy_id: str) -> int:
        policy = self._oracle.get_policy(policy_id)
        return policy.csv_value if policy else 0

    def _carrier_of(self, policy_id: str) -> str:
        return self._oracle.require_policy(policy_id).carrier_id

    def _position_value(self, position: VaultPosition) -> Decimal:
        return sum(
            (share * self._policy_value(pid) for pid, share in position.holdings.items()),
            ZERO,
        )

    def _marked(self) -> Tuple[Dict[str, Decimal], Decimal]:
        buckets: Dict[str, Decimal] = {}
        for position in self._positions.values():
            for pid, share in position.holdings.items():
                carrier = self._carrier_of(pid)
                buckets[carrier] = buckets.get(carrier, ZERO) + share * self._policy_value(pid)
        return buckets, sum(buckets.values(), ZERO)

    def _remark(self) -> None:
        self._buckets, self._total = self._marked()

    def _held_policies(self) -> Dict[str, str]:
        held: Dict[str, str] = {}
        for position in self._positions.values():
            for pid, share in position.holdings.items():
                if share > 0:
                    held[pid] = position.account
        return held

    def _require_fresh(self, policy_ids: Iterable[str]) -> None:
        for pid in sorted(set(policy_ids)):
            self._oracle.require_fresh(pid)

    def _status_for(self, tokens: int, value: Decimal) -> PositionStatus:
        if tokens == 0:
            return PositionStatus.ACTIVE
        scaled = Decimal(tokens * BPS)
        if value <= 0 or scaled >= self._config.liquidation_threshold_bps * value:
            return PositionStatus.LIQUIDATABLE
        if scaled >= self._config.max_ltv_bps * value:
            return PositionStatus.AT_RISK
        return PositionStatus.ACTIVE

    @staticmethod
    def _ltv_for(tokens: int, value: Decimal) -> int:
        if tokens == 0:
            return 0
        if value <= 0:
            return LTV_UNBOUNDED
        return _floor(Decimal(tokens * BPS) / value)

    def _check_invariants(self) -> None:
        InvariantChecker.check_sum_matches("carrier buckets", self._buckets, self._total)
        attributed = ZERO
        for position in self._positions.values():
            InvariantChecker.check_non_negative(f"tokens of {position.account}", Decimal(position.tokens))
            value = self._position_value(position)
            InvariantChecker.check_non_negative(f"value of {position.account}", value)
            attributed += value
        InvariantChecker.check_sum_matches(
            "pool value", {"positions": attributed}, self._total
        )

    def _admit(self, operation: str, account: str) -> None:
        decision = self._gate.admit(account)
        if not decision.allowed:
            raise self._reject(operation, CompliancePending(
                "account not admitted by the compliance gate",
                account=account, restriction=decision.reason.value, flags=int(decision.flags),
            ))

    # -------------------------------------------------------------------------
    # deposits and withdrawals
    # -------------------------------------------------------------------------

    def deposit(self, caller: str, policy_ids: Sequence[str], csv_values: Sequence[int]) -> int:
        """
        Deposit policies and mint tokens at the advance rate against their value.

        Raises, in check order:
            EmergencyPaused, CompliancePending, ValidationError,
            UnknownPolicy, CarrierNotEligible, VintageTooYoung, StaleOracleData,
            ValuationMismatch, ConcentrationExceeded, PositionAtRisk
        """
        op = "deposit"
        with self._lock:
            now = self._clock.now()
            cfg = self._config
            if cfg.emergency_paused:
                raise self._reject(op, EmergencyPaused("vault is paused"), account=caller)
            self._admit(op, caller)

            policy_ids = list(policy_ids)
            csv_values = list(csv_values)
            try:
                if not policy_ids:
                    raise ValidationError("policy_ids", "at least one policy is required", policy_ids)
                if len(policy_ids) != len(csv_values):
                    raise ValidationError(
                        "csv_values", "length must match policy_ids", (len(policy_ids), len(csv_values))
                    )
                if len(set(policy_ids)) != len(policy_ids):
                    raise ValidationError("policy_ids", "duplicate policy ids", policy_ids)
                for value in csv_values:
                    Validators.validate_amount(value, "csv_values", allow_zero=False).raise_if_invalid()
                held = self._held_policies()
                for pid in policy_ids:
                    policy = self._oracle.get_policy(pid)
                    if policy is not None and policy.holder != caller:
                        raise ValidationError("policy_ids", "policy is not held by the depositor", pid)
                    if pid in held:
                        raise ValidationError("policy_ids", "policy is already deposited", pid)
            except ValidationError as e:
                raise self._reject(op, e, account=caller)

            self._remark()
            projected = dict(self._buckets)
            projected_total = self._total
            deposited_value = 0

            for pid, declared in zip(policy_ids, csv_values):
                policy = self._oracle.get_policy(pid)
                if policy is None or not policy.active:
                    raise self._reject(op, UnknownPolicy("policy is not registered or inactive", policy_id=pid))
                carrier = self._oracle.get_carrier(policy.carrier_id)
                if carrier is None or not carrier.active or carrier.rating < cfg.min_carrier_rating:
                    raise self._reject(op, CarrierNotEligible(
                        "carrier inactive or below minimum rating",
                        policy_id=pid, carrier_id=policy.carrier_id,
                        rating=carrier.rating if carrier else None, min_rating=cfg.min_carrier_rating,
                    ))
                age = now - policy.inception_timestamp
                if age < cfg.min_policy_vintage_seconds:
                    raise self._reject(op, VintageTooYoung(
                        "policy younger than minimum vintage",
                        policy_id=pid, age=age, min_vintage=cfg.min_policy_vintage_seconds,
                    ))
                try:
                    confirmed = self._oracle.require_fresh(pid)
                except IYieldError as e:
                    raise self._reject(op, e, policy_id=pid)
                if declared != confirmed.value:
                    raise self._reject(op, ValuationMismatch(
                        "declared value differs from confirmed valuation",
                        policy_id=pid, declared=declared, confirmed=confirmed.value,
                    ))
                bucket = projected.get(policy.carrier_id, ZERO)
                if projected_total > 0 and projected_total >= cfg.concentration_floor:
                    if (bucket + declared) * BPS > cfg.max_carrier_concentration_bps * projected_total:
                        raise self._reject(op, ConcentrationExceeded(
                            "carrier concentration limit exceeded",
                            carrier_id=policy.carrier_id,
                            bucket=bucket, value=declared, pool_value=projected_total,
                            limit_bps=cfg.max_carrier_concentration_bps,
                        ))
                projected[policy.carrier_id] = bucket + declared
                projected_total += declared
                deposited_value += declared

            existing = self._positions.get(caller)
            if existing is not None and existing.liquidated:
                existing = None
            tokens_issued = deposited_value * cfg.advance_rate_bps // BPS
            if existing is not None:
                try:
                    self._require_fresh(existing.holdings)
                except IYieldError as e:
                    raise self._reject(op, e, account=caller)
                current_value = self._position_value(existing)
                status = self._status_for(existing.tokens, current_value)
                if status != PositionStatus.ACTIVE:
                    raise self._reject(op, PositionAtRisk(
                        "existing position is not active", account=caller, status=status.value,
                    ))
                new_tokens = existing.tokens + tokens_issued
                new_value = current_value + deposited_value
            else:
                new_tokens = tokens_issued
                new_value = Decimal(deposited_value)
            if self._status_for(new_tokens, new_value) != PositionStatus.ACTIVE:
                raise self._reject(op, PositionAtRisk(
                    "resulting position would be at or above max LTV",
                    account=caller, ltv_bps=self._ltv_for(new_tokens, new_value),
                    max_ltv_bps=cfg.max_ltv_bps,
                ))

            # commit
            self._token.mint(self.address, caller, tokens_issued)
            position = existing or VaultPosition(account=caller, opened_at=now)
            position.tokens = new_tokens
            for pid in policy_ids:
                position.holdings[pid] = Decimal(1)
            self._positions[caller] = position
            self._remark()
            self._check_invariants()

        self._log.info(
            "Policies deposited",
            operation=op, account=caller, policies=len(policy_ids),
            csv_value=deposited_value, tokens_issued=tokens_issued,
        )
        self._record(caller, op, caller, policy_ids=policy_ids, csv_value=deposited_value, tokens=tokens_issued)
        self._bus.publish(Deposited(
            occurred_at=now, account=caller, policy_ids=policy_ids,
            csv_value=deposited_value, tokens_issued=tokens_issued,
        ))
        return tokens_issued

    def withdraw(self, caller: str, token_amount: int) -> int:
        """
        Burn `token_amount` of the caller's tokens and release the matching
        share of the position's CSV value. Returns the CSV value released.
        """
        op = "withdraw"
        with self._lock:
            now = self._clock.now()
            if self._config.emergency_paused:
                raise self._reject(op, EmergencyPaused("vault is paused"), account=caller)
            self._admit(op, caller)
            try:
                Validators.validate_amount(token_amount, "token_amount", allow_zero=False).raise_if_invalid()
            except ValidationError as e:
                raise self._reject(op, e, account=caller)

            position = self._positions.get(caller)
            if position is not None and position.liquidated:
                raise self._reject(op, PositionLiquidated("position was liquidated", account=caller))
            tokens = position.tokens if position else 0
            balance = self._token.balance_of(caller)
            if token_amount > tokens or token_amount > balance:
                raise self._reject(op, InsufficientBalance(
                    "not enough position tokens",
                    account=caller, requested=token_amount, position_tokens=tokens, balance=balance,
                ))
            try:
                self._require_fresh(position.holdings)
            except IYieldError as e:
                raise self._reject(op, e, account=caller)

            self._remark()
            value = self._position_value(position)
            released = value * token_amount / tokens
            remaining = tokens - token_amount

            # commit
            self._token.burn(self.address, caller, token_amount)
            if remaining == 0:
                del self._positions[caller]
            else:
                keep = Decimal(remaining) / Decimal(tokens)
                position.holdings = {pid: share * keep for pid, share in position.holdings.items()}
                position.tokens = remaining
            self._remark()
            self._check_invariants()

        csv_returned = _floor(released)
        self._log.info(
            "Tokens withdrawn",
            operation=op, account=caller, tokens_burned=token_amount, csv_returned=csv_returned,
        )
        self._record(caller, op, caller, tokens=token_amount, csv_returned=csv_returned)
        self._bus.publish(Withdrawn(
            occurred_at=now, account=caller, tokens_burned=token_amount, csv_returned=csv_returned,
        ))
        return csv_returned

    def liquidate(self, caller: str, account: str, amount: int) -> LiquidationResult:
        """
        Repay up to `amount` of a liquidatable position's tokens from the
        caller's balance in exchange for its CSV value plus the penalty.

        Available while the vault is paused.
        """
        op = "liquidate"
        with self._lock:
            now = self._clock.now()
            cfg = self._config
            try:
                Validators.validate_amount(amount, "amount", allow_zero=False).raise_if_invalid()
            except ValidationError as e:
                raise self._reject(op, e, account=account)

            position = self._positions.get(account)
            if position is None or position.liquidated:
                raise self._reject(op, NotLiquidatable("no open position", account=account))
            try:
                self._require_fresh(position.holdings)
            except IYieldError as e:
                raise self._reject(op, e, account=account)

            self._remark()
            value = self._position_value(position)
            status = self._status_for(position.tokens, value)
            if status != PositionStatus.LIQUIDATABLE:
                raise self._reject(op, NotLiquidatable(
                    "position is above the liquidation threshold",
                    account=account, status=status.value, ltv_bps=self._ltv_for(position.tokens, value),
                ))

            seized = min(amount, position.tokens)
            balance = self._token.balance_of(caller)
            if balance < seized:
                raise self._reject(op, InsufficientBalance(
                    "liquidator cannot repay the seized tokens",
                    liquidator=caller, balance=balance, required=seized,
                ))
            remaining_tokens = position.tokens - seized

            # commit
            self._token.burn(self.address, caller, seized)
            if remaining_tokens == 0:
                released = value
                position.holdings = {}
                position.tokens = 0
                position.liquidated = True
                result_status = PositionStatus.LIQUIDATED
            else:
                released = min(Decimal(seized) * (BPS + cfg.liquidation_penalty_bps) / BPS, value)
                keep = (value - released) / value if value > 0 else ZERO
                position.holdings = {pid: share * keep for pid, share in position.holdings.items()}
                position.tokens = remaining_tokens
                result_status = self._status_for(remaining_tokens, value - released)
            self._remark()
            self._check_invariants()

        result = LiquidationResult(
            account=account,
            liquidator=caller,
            tokens_seized=seized,
            csv_released=_floor(released),
            remaining_tokens=remaining_tokens,
            status=result_status,
        )
        self._log.warning(
            "Position liquidated",
            operation=op, account=account, liquidator=caller,
            tokens_seized=seized, csv_released=result.csv_released, status=result_status.value,
        )
        self._record(caller, op, account, **result.to_dict())
        self._bus.publish(Liquidated(
            occurred_at=now, account=account, liquidator=caller, tokens_seized=seized,
            csv_released=result.csv_released, resulting_status=result_status.value,
        ))
        return result

    # -------------------------------------------------------------------------
    # risk queries
    # -------------------------------------------------------------------------

    def calculate_ltv(self) -> int:
        """Pool-wide LTV in bps. Raises StaleOracleData if any deposited policy is stale."""
        with self._lock:
            self._require_fresh(self._held_policies())
            tokens = sum(p.tokens for p in self._positions.values())
            value = sum((self._position_value(p) for p in self._positions.values()), ZERO)
        return self._ltv_for(tokens, value)

    def nav_per_token(self) -> Decimal:
        """
        Confirmed CSV value backing each outstanding token, floored to 18 places.

        Zero when no tokens are outstanding. Raises StaleOracleData if any
        deposited policy is stale.
        """
        with self._lock:
            self._require_fresh(self._held_policies())
            tokens = sum(p.tokens for p in self._positions.values())
            value = sum((self._position_value(p) for p in self._positions.values()), ZERO)
        if tokens == 0:
            return ZERO
        return (Decimal(value) / tokens).quantize(NAV_QUANTUM, rounding=ROUND_FLOOR)

    def position_ltv(self, account: str) -> Optional[int]:
        with self._lock:
            position = self._positions.get(account)
            if position is None:
                return None
            if position.liquidated:
                return 0
            self._require_fresh(position.holdings)
            return self._ltv_for(position.tokens, self._position_value(position))

    def position_status(self, account: str) -> Optional[PositionStatus]:
        with self._lock:
            position = self._positions.get(account)
            if position is None:
                return None
            if position.liquidated:
                return PositionStatus.LIQUIDATED
            self._require_fresh(position.holdings)
            return self._status_for(position.tokens, self._position_value(position))

    def check_concentration(self, carrier_id: str, value: int) -> bool:
        """Would adding `value` to the carrier's bucket stay within the limit?"""
        with self._lock:
            buckets, total = self._marked()
            cfg = self._config
        if total == 0 or total < cfg.concentration_floor:
            return True
        return (buckets.get(carrier_id, ZERO) + value) * BPS <= cfg.max_carrier_concentration_bps * total

    def check_vintage(self, policy_id: str) -> bool:
        policy = self._oracle.get_policy(policy_id)
        if policy is None:
            return False
        with self._lock:
            min_vintage = self._config.min_policy_vintage_seconds
        return self._clock.now() - policy.inception_timestamp >= min_vintage

    # -------------------------------------------------------------------------
    # snapshots
    # -------------------------------------------------------------------------

    def get_vault_configuration(self) -> VaultConfiguration:
        with self._lock:
            return replace(self._config)

    def concentration_snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Per-carrier value and share of the pool at current policy values."""
        with self._lock:
            buckets, total = self._marked()
        return {
            carrier: {
                "value": _floor(value),
                "bps": _floor(value * BPS / total) if total > 0 else 0,
            }
            for carrier, value in sorted(buckets.items())
        }

    def get_position(self, account: str) -> Optional[PositionSnapshot]:
        with self._lock:
            position = self._positions.get(account)
            if position is None:
                return None
            value = self._position_value(position)
            if position.liquidated:
                status = PositionStatus.LIQUIDATED
            else:
                status = self._status_for(position.tokens, value)
            return PositionSnapshot(
                account=account,
                tokens=position.tokens,
                csv_value=_floor(value),
                ltv_bps=self._ltv_for(position.tokens, value),
                status=status,
                holdings={pid: str(share) for pid, share in sorted(position.holdings.items())},
                opened_at=position.opened_at,
            )

    def total_pool_value(self) -> int:
        with self._lock:
            _, total = self._marked()
        return _floor(total)

    def total_tokens(self) -> int:
        with self._lock:
            return sum(p.tokens for p in self._positions.values())

    # -------------------------------------------------------------------------
    # administration
    # -------------------------------------------------------------------------

    def update_configuration(self, caller: str, **changes: Any) -> VaultConfiguration:
        """Apply several limit changes at once; all or nothing."""
        try:
            self._access.require_admin(caller, "update_configuration")
        except IYieldError as e:
            raise self._reject("update_configuration", e, caller=caller)
        known = {f.name for f in fields(VaultConfiguration)} - {"emergency_paused"}
        for name in changes:
            if name not in known:
                raise self._reject(
                    "update_configuration", ValidationError(name, "unknown vault parameter", changes[name])
                )
        with self._lock:
            candidate = replace(self._config, **changes)
            result = candidate.validate()
            if not result.is_valid:
                raise self._reject("update_configuration", result.errors[0], caller=caller)
            previous = self._config
            self._config = candidate
            now = self._clock.now()

        for name, new_value in sorted(changes.items()):
            old_value = getattr(previous, name)
            if old_value == new_value:
                continue
            self._log.info("Vault parameter updated", operation="update_configuration", parameter=name)
            self._record(caller, "update_configuration", name, old=old_value, new=new_value)
            self._bus.publish(VaultConfigurationUpdated(
                occurred_at=now, parameter=name, old_value=old_value, new_value=new_value,
            ))
        return replace(candidate)

    def update_concentration_limit(self, caller: str, max_bps: int) -> None:
        self.update_configuration(caller, max_carrier_concentration_bps=max_bps)

    def update_min_vintage(self, caller: str, seconds: int) -> None:
        self.update_configuration(caller, min_policy_vintage_seconds=seconds)

    def update_ltv_limits(self, caller: str, max_ltv_bps: int, liquidation_threshold_bps: int) -> None:
        self.update_configuration(
            caller, max_ltv_bps=max_ltv_bps, liquidation_threshold_bps=liquidation_threshold_bps
        )

    def _set_paused(self, caller: str, paused: bool) -> None:
        action = "emergency_pause" if paused else "emergency_unpause"
        try:
            self._access.require_admin(caller, action)
        except IYieldError as e:
            raise self._reject(action, e, caller=caller)
        with self._lock:
            changed = self._config.emergency_paused != paused
            self._config.emergency_paused = paused
            now = self._clock.now()
        if not changed:
            return
        self._log.warning("Emergency pause toggled", operation=action, paused=paused)
        self._record(caller, action, "emergency_paused", paused=paused)
        self._bus.publish(EmergencyPauseToggled(occurred_at=now, paused=paused, actor=caller, component="vault"))

    def emergency_pause(self, caller: str) -> None:
        self._set_paused(caller, True)

    def emergency_unpause(self, caller: str) -> None:
        self._set_paused(caller, False)

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._config.emergency_paused
